#!/usr/bin/env python3
"""
Key QR Backup Tool - Print an OpenPGP secret key as a set of small QR codes

This tool takes a base64 payload (typically a reduced secret key or a
revocation certificate), splits it into numbered frames that each fit in one
small QR code, verifies every code can be read back, and lays the codes out
on printable PDF pages. Scans of those pages can be fed back in any order to
rebuild the original payload.

REQUIREMENTS:
  Python 3.8+

  Install with:
    pip install .

  System dependencies:
    - zbar (for pyzbar): apt-get install libzbar0 / brew install zbar
    - poppler (for pdf2image): apt-get install poppler-utils / brew install poppler

USAGE:
  Encode a base64 payload:
    python key_qr_backup.py encode secret.b64 -o secret.pdf --title "0xDEADBEEF"

  Encode a binary file (base64-encoded first):
    python key_qr_backup.py encode secret.raw --raw -o secret.pdf

  Decode scanned pages (PDF or images, any order):
    python key_qr_backup.py decode scan1.png scan2.png -o secret.b64

  Inspect which frames a scan contains:
    python key_qr_backup.py info scanned.pdf
"""

import sys
import os
import base64
import binascii
import hashlib
import io
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import click
import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from qrcode.exceptions import DataOverflowError
from PIL import Image
from reportlab.lib.pagesizes import A4, LETTER, LEGAL
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas
import cv2
import numpy as np
from pypdf import PdfReader

# Version and format constants
VERSION = "1.0.0"

# Frame format: [index:3 hex][count:3 hex][data:<=52]
CHUNK_SIZE = 52
HEADER_FIELD_WIDTH = 3
HEADER_SIZE = 2 * HEADER_FIELD_WIDTH
MAX_FRAME_COUNT = 16 ** HEADER_FIELD_WIDTH - 1  # 0xFFF
MAX_FRAME_SIZE = HEADER_SIZE + CHUNK_SIZE

HEX_DIGITS = frozenset(b'0123456789abcdefABCDEF')

# QR version 6 at error correction H holds exactly 58 bytes in binary mode
DEFAULT_QR_VERSION = 6
DEFAULT_ERROR_CORRECTION = 'H'
DEFAULT_BOX_SIZE = 10
DEFAULT_BORDER = 4

# QR Code error correction mapping
ERROR_CORRECTION_LEVELS = {
    'L': ERROR_CORRECT_L,  # ~7% error correction
    'M': ERROR_CORRECT_M,  # ~15% error correction
    'Q': ERROR_CORRECT_Q,  # ~25% error correction
    'H': ERROR_CORRECT_H,  # ~30% error correction (default)
}

# Page size mapping (ReportLab points)
PAGE_SIZES = {
    'A4': A4,
    'LETTER': LETTER,
    'LEGAL': LEGAL,
}

# Layout defaults in millimeters
DEFAULT_DENSITY = 0.8
DEFAULT_MARGIN = 20.0
DEFAULT_SPACING = 8.0
DEFAULT_HEADER_HEIGHT = 32.0

DEFAULT_WORKERS = min(4, os.cpu_count() or 1)


# ============================================================================
# ERRORS
# ============================================================================

class FramingError(ValueError):
    """Base class for every failure of the framing/reassembly pipeline.

    All of these are fatal to the current run. ``index`` names the offending
    frame where one can be identified.
    """

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class InvalidFrameParameters(FramingError):
    """Frame index, count or data length out of range."""


class EmptyPayload(FramingError):
    """Payload has no bytes to frame."""


class PayloadTooLarge(FramingError):
    """Payload needs more frames than the header can count."""


class RenderFailed(FramingError):
    """The QR renderer could not encode the frame bytes."""


class ScanFailed(FramingError):
    """The QR decoder could not read exactly one code from an image."""


class FrameRoundTripFailed(FramingError):
    """A rendered frame did not decode back to the same bytes."""


class MalformedHeader(FramingError):
    """A scanned frame header is too short or not hexadecimal."""


class InvalidIndexSizePair(FramingError):
    """A scanned frame claims an index outside 0..count-1."""


class InconsistentFrameCount(FramingError):
    """Two scanned frames disagree on the total frame count."""


class DuplicateIndex(FramingError):
    """The same frame index was scanned twice."""


class MissingFrames(FramingError):
    """Not every frame index 0..count-1 was recovered."""

    def __init__(self, message: str, missing: Optional[List[int]] = None):
        super().__init__(message)
        self.missing = missing or []


class IntegrityMismatch(FramingError):
    """Reconstructed payload differs from the original."""


# ============================================================================
# FRAME CODEC
# ============================================================================

class Frame(NamedTuple):
    """One numbered slice of the payload."""
    index: int
    count: int
    data: bytes


def calculate_checksum(data: bytes) -> str:
    """Return the SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


def encode_frame(index: int, count: int, data: bytes) -> bytes:
    """Serialize a frame as [index:3 hex][count:3 hex][data].

    Args:
        index: Frame index, 0 <= index < count
        count: Total number of frames, 1 <= count <= MAX_FRAME_COUNT
        data: Frame data, 1 to CHUNK_SIZE bytes

    Returns:
        Exactly HEADER_SIZE + len(data) bytes

    Raises:
        InvalidFrameParameters: If any argument is out of range

    Example:
        >>> encode_frame(1, 3, b"QUJD")
        b'001003QUJD'
    """
    if not 1 <= count <= MAX_FRAME_COUNT:
        raise InvalidFrameParameters(
            f"Frame count {count} outside 1..{MAX_FRAME_COUNT}", index=index)
    if not 0 <= index < count:
        raise InvalidFrameParameters(
            f"Frame index {index} outside 0..{count - 1}", index=index)
    if not 1 <= len(data) <= CHUNK_SIZE:
        raise InvalidFrameParameters(
            f"Frame {index} carries {len(data)} bytes, expected 1..{CHUNK_SIZE}",
            index=index)

    header = f"{index:0{HEADER_FIELD_WIDTH}x}{count:0{HEADER_FIELD_WIDTH}x}"
    return header.encode('ascii') + bytes(data)


def _parse_hex_field(field: bytes) -> Optional[int]:
    # int(x, 16) would also accept '0x', '+', '_' and whitespace
    if len(field) != HEADER_FIELD_WIDTH or not all(b in HEX_DIGITS for b in field):
        return None
    return int(field, 16)


def decode_frame(frame_bytes: bytes) -> Frame:
    """Parse the header of a frame read back from a QR code.

    Only the syntax is checked here; whether index < count holds is left to
    the reassembler.

    Raises:
        MalformedHeader: If the frame is shorter than the header or either
            header field is not hexadecimal
    """
    if len(frame_bytes) < HEADER_SIZE:
        raise MalformedHeader(
            f"Frame is {len(frame_bytes)} bytes, shorter than the {HEADER_SIZE}-byte header")

    index = _parse_hex_field(frame_bytes[:HEADER_FIELD_WIDTH])
    count = _parse_hex_field(frame_bytes[HEADER_FIELD_WIDTH:HEADER_SIZE])
    if index is None or count is None:
        raise MalformedHeader(
            f"Frame header {bytes(frame_bytes[:HEADER_SIZE])!r} is not hexadecimal")

    return Frame(index, count, bytes(frame_bytes[HEADER_SIZE:]))


# ============================================================================
# SPLITTER
# ============================================================================

def split_payload(payload: bytes, chunk_size: int = CHUNK_SIZE) -> List[Frame]:
    """Split a payload into consecutive frames of chunk_size bytes.

    The last frame is shorter when the payload length is not a multiple of
    chunk_size. The result depends only on payload and chunk_size.

    Args:
        payload: Bytes to split (base64 text)
        chunk_size: Data bytes per frame, 1..CHUNK_SIZE

    Returns:
        Frames in index order

    Raises:
        InvalidFrameParameters: If chunk_size is out of range
        EmptyPayload: If payload is empty
        PayloadTooLarge: If more than MAX_FRAME_COUNT frames would be needed

    Example:
        >>> [f.data for f in split_payload(b"abcdefg", chunk_size=3)]
        [b'abc', b'def', b'g']
    """
    if not 1 <= chunk_size <= CHUNK_SIZE:
        raise InvalidFrameParameters(f"Chunk size {chunk_size} outside 1..{CHUNK_SIZE}")
    if not payload:
        raise EmptyPayload("Payload is empty, nothing to encode")

    count = math.ceil(len(payload) / chunk_size)
    if count > MAX_FRAME_COUNT:
        raise PayloadTooLarge(
            f"Payload of {len(payload):,} bytes needs {count:,} frames, "
            f"header allows at most {MAX_FRAME_COUNT:,}")

    return [Frame(index, count, bytes(payload[index * chunk_size:(index + 1) * chunk_size]))
            for index in range(count)]


# ============================================================================
# QR RENDERING AND SCANNING
# ============================================================================

def create_qr_code(frame_bytes: bytes, qr_version: int = DEFAULT_QR_VERSION,
                   error_correction: str = DEFAULT_ERROR_CORRECTION,
                   box_size: int = DEFAULT_BOX_SIZE,
                   border: int = DEFAULT_BORDER) -> Image.Image:
    """Generate QR code image from frame bytes.

    The version is fixed so that a frame larger than the symbol capacity
    fails instead of producing a bigger code.

    Args:
        frame_bytes: Serialized frame
        qr_version: QR code version (1-40)
        error_correction: Error correction level
        box_size: Size of each QR code box in pixels
        border: Border size in boxes

    Returns:
        PIL Image of QR code

    Raises:
        RenderFailed: If the data does not fit the QR version
    """
    qr = qrcode.QRCode(
        version=qr_version,
        error_correction=ERROR_CORRECTION_LEVELS[error_correction],
        box_size=box_size,
        border=border,
    )
    qr.add_data(frame_bytes)
    try:
        qr.make(fit=False)
    except DataOverflowError as e:
        raise RenderFailed(
            f"{len(frame_bytes)} bytes do not fit QR version {qr_version}-{error_correction}: {e}")

    return qr.make_image(fill_color="black", back_color="white")


def qr_image_to_array(image: Image.Image) -> np.ndarray:
    """Convert a PIL image to an OpenCV (BGR) array."""
    img_array = np.array(image.convert('RGB'))
    return cv2.cvtColor(img_array, cv2.COLOR_RGB2BGR)


def decode_qr_codes_from_image(image: np.ndarray) -> List[bytes]:
    """Find and decode all QR codes in an image.

    Args:
        image: OpenCV image (numpy array)

    Returns:
        Raw payload of every QR code found, in detection order
    """
    from pyzbar import pyzbar
    from pyzbar.pyzbar import ZBarSymbol

    # Convert to grayscale for better detection
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    decoded_objects = pyzbar.decode(image, symbols=[ZBarSymbol.QRCODE])
    return [obj.data for obj in decoded_objects]


def scan_qr_code(image: Any) -> bytes:
    """Decode the single QR code in an image.

    Args:
        image: PIL image or OpenCV array holding one QR code

    Returns:
        Bytes stored in the code

    Raises:
        ScanFailed: If no code, or more than one, is found
    """
    if not isinstance(image, np.ndarray):
        image = qr_image_to_array(image)

    results = decode_qr_codes_from_image(image)
    if len(results) != 1:
        raise ScanFailed(f"Expected one QR code in image, found {len(results)}")
    return results[0]


def scan_pages(images: List[np.ndarray], workers: int = DEFAULT_WORKERS) -> List[bytes]:
    """Decode every QR code on every page.

    Pages are scanned independently; the returned list is assembled only
    after all pages are done. Order follows page order, which carries no
    meaning for reassembly.
    """
    if workers > 1 and len(images) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            per_page = list(executor.map(decode_qr_codes_from_image, images))
    else:
        per_page = [decode_qr_codes_from_image(image) for image in images]

    return [frame_bytes for page in per_page for frame_bytes in page]


# ============================================================================
# SELF-CHECK
# ============================================================================

Renderer = Callable[[bytes], Any]
Scanner = Callable[[Any], bytes]


def self_check_frame(frame: Frame, renderer: Renderer, scanner: Scanner) -> Any:
    """Render a frame, scan it back and compare the bytes.

    Returns:
        The rendered image, only if it decodes to the exact frame bytes

    Raises:
        FrameRoundTripFailed: On mismatch or on any renderer/scanner failure
    """
    frame_bytes = encode_frame(frame.index, frame.count, frame.data)
    try:
        image = renderer(frame_bytes)
        recovered = scanner(image)
    except Exception as e:
        raise FrameRoundTripFailed(
            f"Frame {frame.index} failed QR round trip: {e}", index=frame.index) from e

    if recovered != frame_bytes:
        raise FrameRoundTripFailed(
            f"Frame {frame.index} decoded to different bytes: "
            f"expected {frame_bytes!r}, got {recovered!r}", index=frame.index)

    return image


def verify_frames(frames: List[Frame], renderer: Optional[Renderer] = None,
                  scanner: Optional[Scanner] = None,
                  workers: int = 1,
                  qr_version: int = DEFAULT_QR_VERSION,
                  error_correction: str = DEFAULT_ERROR_CORRECTION) -> List[Any]:
    """Self-check every frame and return the verified images in index order.

    With workers > 1 the frames are checked concurrently. Results are
    collected in index order, so the error raised is always the one for the
    lowest failing index regardless of which task finished first.

    Args:
        frames: Frames from split_payload
        renderer: Callable bytes -> image (default: create_qr_code)
        scanner: Callable image -> bytes (default: scan_qr_code)
        workers: Number of worker threads
        qr_version, error_correction: Passed to the default renderer

    Raises:
        FrameRoundTripFailed: For the lowest-index frame that failed
    """
    if renderer is None:
        def renderer(frame_bytes):
            return create_qr_code(frame_bytes, qr_version, error_correction)
    if scanner is None:
        scanner = scan_qr_code

    if workers <= 1 or len(frames) <= 1:
        return [self_check_frame(frame, renderer, scanner) for frame in frames]

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(self_check_frame, frame, renderer, scanner)
                   for frame in frames]
        images = []
        try:
            for future in futures:
                images.append(future.result())
        except Exception:
            for future in futures:
                future.cancel()
            raise

    return images


# ============================================================================
# REASSEMBLY
# ============================================================================

def reassemble_frames(frame_binaries: Iterable[bytes]) -> Tuple[bytes, Dict[str, Any]]:
    """Validate an unordered batch of scanned frames and rebuild the payload.

    Validates, in one pass over the batch:
    - Every header parses (MalformedHeader)
    - index < count (InvalidIndexSizePair)
    - All frames agree on count (InconsistentFrameCount)
    - No index appears twice (DuplicateIndex)
    and afterwards that every index 0..count-1 is present (MissingFrames).

    Data is concatenated in index order, never in scan order.

    Args:
        frame_binaries: Raw bytes read from each QR code, any order

    Returns:
        Tuple of (payload, report_dict)
    """
    frame_table: Dict[int, bytes] = {}
    expected_count = None
    received = 0
    scan_order = []

    for position, frame_bytes in enumerate(frame_binaries, 1):
        try:
            frame = decode_frame(frame_bytes)
        except MalformedHeader as e:
            raise MalformedHeader(f"Scanned code {position}: {e}") from e

        if frame.index >= frame.count:
            raise InvalidIndexSizePair(
                f"Frame index {frame.index} is not below its count {frame.count}",
                index=frame.index)

        if expected_count is None:
            expected_count = frame.count
        elif frame.count != expected_count:
            raise InconsistentFrameCount(
                f"Frame {frame.index} reports {frame.count} frames, "
                f"earlier frames reported {expected_count}. "
                f"All codes must come from the same backup.", index=frame.index)

        if frame.index in frame_table:
            raise DuplicateIndex(f"Frame {frame.index} scanned more than once",
                                 index=frame.index)

        frame_table[frame.index] = frame.data
        received += 1
        scan_order.append(frame.index)

    if not expected_count:
        raise MissingFrames("No frames found")

    missing = [i for i in range(expected_count) if i not in frame_table]
    if received != expected_count or missing:
        raise MissingFrames(
            f"Missing {len(missing)} of {expected_count} frames: {missing}",
            missing=missing)

    payload = b''.join(frame_table[i] for i in range(expected_count))

    report = {
        'total_frames': expected_count,
        'found_frames': received,
        'scan_order': scan_order,
        'reordered': scan_order != sorted(scan_order),
        'payload_size': len(payload),
        'sha256': calculate_checksum(payload),
    }
    return payload, report


# ============================================================================
# INTEGRITY CHECK
# ============================================================================

def verify_integrity(original: bytes, reconstructed: bytes) -> None:
    """Require the reconstructed payload to equal the original byte for byte.

    Raises:
        IntegrityMismatch: On any difference
    """
    if original == reconstructed:
        return

    offset = next((i for i, (a, b) in enumerate(zip(original, reconstructed)) if a != b),
                  min(len(original), len(reconstructed)))
    raise IntegrityMismatch(
        f"Reconstructed payload differs from original at byte {offset}. "
        f"Original: {len(original):,} bytes (SHA-256 {calculate_checksum(original)}), "
        f"reconstructed: {len(reconstructed):,} bytes "
        f"(SHA-256 {calculate_checksum(reconstructed)})")


# ============================================================================
# PAGE LAYOUT
# ============================================================================

def get_qr_modules(qr_version: int) -> int:
    """Get the number of modules (pixels) per side for a QR code version."""
    # QR code formula: modules = 4 * version + 17
    return 4 * qr_version + 17


def calculate_qr_physical_size(qr_version: int, module_size_mm: float,
                               border: int = DEFAULT_BORDER) -> float:
    """Calculate the printed size of a QR code including its quiet zone, in mm."""
    total_modules = get_qr_modules(qr_version) + 2 * border
    return total_modules * module_size_mm


def calculate_grid_layout(page_width_mm: float, page_height_mm: float,
                          qr_size_mm: float, margin_mm: float, spacing_mm: float,
                          header_height_mm: float) -> Tuple[int, int]:
    """Calculate grid layout (rows, columns) for QR codes.

    Args:
        page_width_mm: Page width in millimeters
        page_height_mm: Page height in millimeters
        qr_size_mm: QR code size in millimeters
        margin_mm: Page margin in millimeters
        spacing_mm: Spacing between QR codes in millimeters
        header_height_mm: Header height in millimeters (0 if no header)

    Returns:
        Tuple of (rows, columns)
    """
    available_width = page_width_mm - 2 * margin_mm
    available_height = page_height_mm - 2 * margin_mm - header_height_mm

    # The last code in a row or column needs no trailing spacing
    cols = max(1, int((available_width + spacing_mm) / (qr_size_mm + spacing_mm)))
    rows = max(1, int((available_height + spacing_mm) / (qr_size_mm + spacing_mm)))

    return (rows, cols)


def generate_pdf(qr_images: List[Image.Image], output_path: str, title: str,
                 page_size: str = 'LETTER',
                 margin_mm: float = DEFAULT_MARGIN,
                 spacing_mm: float = DEFAULT_SPACING,
                 qrs_per_page: Tuple[int, int] = (4, 4),
                 qr_size_mm: float = 39.2,
                 header_height_mm: float = DEFAULT_HEADER_HEIGHT,
                 payload_sha256: Optional[str] = None) -> int:
    """Lay out frame QR codes on PDF pages, in frame order.

    Each code is labelled with its frame number so a missing one can be
    spotted by eye.

    Returns:
        Number of PDF pages written
    """
    page_width, page_height = PAGE_SIZES[page_size]
    margin = margin_mm * mm
    spacing = spacing_mm * mm
    qr_size = qr_size_mm * mm
    header_height = header_height_mm * mm

    rows, cols = qrs_per_page
    qrs_on_page = rows * cols
    total_frames = len(qr_images)
    total_pdf_pages = max(1, (total_frames + qrs_on_page - 1) // qrs_on_page)

    grid_width = cols * qr_size + (cols - 1) * spacing
    horizontal_offset = (page_width - 2 * margin - grid_width) / 2

    c = pdf_canvas.Canvas(output_path, pagesize=(page_width, page_height))
    c.setTitle(title)

    for page_idx in range(total_pdf_pages):
        start_idx = page_idx * qrs_on_page
        end_idx = min(start_idx + qrs_on_page, total_frames)

        if header_height_mm > 0:
            c.setFont("Helvetica-Bold", 14)
            c.drawString(margin, page_height - margin - 5*mm, "Key QR Backup")

            c.setFont("Helvetica", 10)
            c.drawString(margin, page_height - margin - 12*mm, f"Title: {title}")
            c.drawString(margin, page_height - margin - 18*mm,
                         f"Page {page_idx + 1} of {total_pdf_pages}, "
                         f"frames {start_idx + 1}-{end_idx} of {total_frames}")
            if payload_sha256:
                c.setFont("Courier", 7)
                c.drawString(margin, page_height - margin - 23*mm, f"SHA-256: {payload_sha256}")

            c.line(margin, page_height - margin - 26*mm,
                   page_width - margin, page_height - margin - 26*mm)

        for local_idx, qr_idx in enumerate(range(start_idx, end_idx)):
            row = local_idx // cols
            col = local_idx % cols

            x = margin + horizontal_offset + col * (qr_size + spacing)
            y = page_height - header_height - margin - (row + 1) * qr_size - row * spacing

            img_buffer = io.BytesIO()
            qr_images[qr_idx].save(img_buffer, format='PNG')
            img_buffer.seek(0)
            c.drawImage(ImageReader(img_buffer), x, y, width=qr_size, height=qr_size)

            c.setFont("Helvetica", 7)
            c.drawCentredString(x + qr_size / 2, y - 8, f"FRAME {qr_idx + 1}/{total_frames}")

        c.showPage()

    c.save()
    return total_pdf_pages


def pdf_to_images(pdf_path: str, dpi: int = 300) -> List[np.ndarray]:
    """Convert PDF pages to OpenCV images."""
    from pdf2image import convert_from_path

    pil_images = convert_from_path(pdf_path, dpi=dpi)
    return [qr_image_to_array(pil_img) for pil_img in pil_images]


def load_images(paths: Iterable[str]) -> List[np.ndarray]:
    """Load scanned pages from PDF or image files.

    Raises:
        ScanFailed: If an image file cannot be read
    """
    images = []
    for path in paths:
        if path.lower().endswith('.pdf'):
            images.extend(pdf_to_images(path))
            continue
        image = cv2.imread(path)
        if image is None:
            raise ScanFailed(f"Cannot read image file: {path}")
        images.append(image)
    return images


def count_pdf_pages(pdf_path: str) -> int:
    """Get the number of pages in a PDF."""
    return len(PdfReader(pdf_path).pages)


# ============================================================================
# PIPELINES
# ============================================================================

def encode_payload(payload: bytes, output_path: str, title: str,
                   error_correction: str = DEFAULT_ERROR_CORRECTION,
                   density: float = DEFAULT_DENSITY,
                   page_size: str = 'LETTER',
                   workers: int = DEFAULT_WORKERS,
                   verify_output: bool = True) -> Dict[str, Any]:
    """Split, self-check and print a payload, then optionally read it back.

    With verify_output the written PDF is rasterized, scanned, reassembled
    and compared to the payload; the PDF is deleted if that fails.

    Returns:
        Report dict (frames, pages, grid, sha256, verified)
    """
    frames = split_payload(payload)
    sha256 = calculate_checksum(payload)
    click.echo(f"Payload: {len(payload):,} bytes, {len(frames)} frame(s) of up to {CHUNK_SIZE} bytes")

    click.echo("Checking that every QR code reads back...")
    qr_images = verify_frames(frames, workers=workers,
                              error_correction=error_correction)

    qr_size = calculate_qr_physical_size(DEFAULT_QR_VERSION, density)
    page_width, page_height = PAGE_SIZES[page_size]
    rows, cols = calculate_grid_layout(page_width / mm, page_height / mm, qr_size,
                                       DEFAULT_MARGIN, DEFAULT_SPACING, DEFAULT_HEADER_HEIGHT)
    click.echo(f"Grid Layout: {rows} rows x {cols} columns = {rows * cols} QR codes per page")

    click.echo("Writing PDF...")
    try:
        generate_pdf(qr_images, output_path, title, page_size=page_size,
                     qrs_per_page=(rows, cols), qr_size_mm=qr_size,
                     payload_sha256=sha256)
        pages = count_pdf_pages(output_path)

        report = {
            'frames': len(frames),
            'pages': pages,
            'grid': (rows, cols),
            'sha256': sha256,
            'verified': False,
        }

        if verify_output:
            click.echo("Verifying PDF by scanning it back...")
            recovered, _ = decode_pages(pdf_to_images(output_path), workers=workers)
            verify_integrity(payload, recovered)
            report['verified'] = True
    except BaseException:
        # Never leave a partial or unverified PDF behind
        if os.path.exists(output_path):
            os.remove(output_path)
        raise

    return report


def decode_pages(images: List[np.ndarray],
                 workers: int = DEFAULT_WORKERS) -> Tuple[bytes, Dict[str, Any]]:
    """Scan page images and reassemble the payload they carry."""
    frame_binaries = scan_pages(images, workers=workers)
    payload, report = reassemble_frames(frame_binaries)
    report['pages'] = len(images)
    return payload, report


# ============================================================================
# CLI COMMANDS
# ============================================================================

@click.group()
@click.version_option(version=VERSION)
def cli():
    """Key QR Backup - Print a secret key as small, verifiable QR codes.

    Splits a base64 payload into numbered frames, one per QR code, and
    rebuilds it from scans of the printed pages in any order.
    """
    pass


@cli.command()
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(), default=None,
              help='Output PDF path (default: <input_file>.qr.pdf)')
@click.option('--title', type=str, default=None,
              help='Title for page headers, e.g. key id (default: filename)')
@click.option('--raw', is_flag=True,
              help='Input is binary; base64-encode it before framing')
@click.option('--error-correction', type=click.Choice(['L', 'M', 'Q', 'H']),
              default=DEFAULT_ERROR_CORRECTION,
              help='QR error correction level [default: H]')
@click.option('--density', type=float, default=DEFAULT_DENSITY,
              help='QR module size in mm (smaller = denser). [default: 0.8]')
@click.option('--page-size', type=click.Choice(sorted(PAGE_SIZES)), default='LETTER',
              help='Page size [default: LETTER]')
@click.option('--workers', type=click.IntRange(min=1), default=DEFAULT_WORKERS,
              help='Threads used to check and scan QR codes')
@click.option('--no-verify', is_flag=True,
              help='Skip scanning the finished PDF back (no poppler needed)')
def encode(input_file, output, title, raw, error_correction, density, page_size,
           workers, no_verify):
    """Encode a base64 payload into a QR code PDF.

    Example:
        key_qr_backup encode secret.b64 -o secret.pdf --title 0xDEADBEEF
    """
    try:
        with open(input_file, 'rb') as f:
            payload = f.read()
        if raw:
            payload = base64.b64encode(payload)

        if output is None:
            output = input_file + '.qr.pdf'
        if title is None:
            title = os.path.basename(input_file)

        if density < 0.8:
            click.echo(f"\nWARNING: Density {density}mm is below recommended minimum (0.8mm).", err=True)
            click.echo("         Small codes may not scan reliably after printing.\n", err=True)

        click.echo(f"\nEncoding: {input_file}")
        click.echo(f"QR Configuration: Version {DEFAULT_QR_VERSION}, "
                   f"Error Correction {error_correction}, Density {density}mm")

        report = encode_payload(payload, output, title,
                                error_correction=error_correction,
                                density=density, page_size=page_size,
                                workers=workers, verify_output=not no_verify)

        click.echo(f"\nOutput: {output} ({report['frames']} QR codes on {report['pages']} page(s))")
        if report['verified']:
            click.echo("Verification: PASS (PDF scanned back to identical payload)")
        else:
            click.echo("Verification: Skipped")
        click.echo(f"Payload SHA-256: {report['sha256']}")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('inputs', nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(), required=True,
              help='Output file path (required)')
@click.option('--raw', is_flag=True,
              help='base64-decode the payload before writing')
@click.option('--force', is_flag=True,
              help='Overwrite existing output file')
@click.option('--workers', type=click.IntRange(min=1), default=DEFAULT_WORKERS,
              help='Threads used to scan pages')
def decode(inputs, output, raw, force, workers):
    """Rebuild a payload from scanned PDFs or images, in any order.

    Example:
        key_qr_backup decode page1.png page2.png -o secret.b64
    """
    try:
        if os.path.exists(output) and not force:
            click.echo(f"\nError: Output file '{output}' already exists. Use --force to overwrite.", err=True)
            sys.exit(1)

        click.echo(f"\nDecoding: {', '.join(inputs)}")
        images = load_images(inputs)
        click.echo(f"Found {len(images)} page(s)")

        click.echo("Reading QR codes...")
        payload, report = decode_pages(images, workers=workers)
        click.echo(f"Recovered {report['found_frames']} of {report['total_frames']} frames")
        if report['reordered']:
            click.echo("Frames were scanned out of order - reordered by index")

        if raw:
            payload = base64.b64decode(payload, validate=True)

        with open(output, 'wb') as f:
            f.write(payload)

        click.echo(f"\nRecovered: {output} ({len(payload):,} bytes)")
        click.echo(f"Payload SHA-256: {report['sha256']}")

    except binascii.Error as e:
        click.echo(f"\nError: Payload is not valid base64: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('inputs', nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False))
def info(inputs):
    """List the frames found in scanned pages without rebuilding.

    Example:
        key_qr_backup info scanned.pdf
    """
    try:
        images = load_images(inputs)
        frame_binaries = scan_pages(images)

        indices = []
        counts = set()
        malformed = 0
        for frame_bytes in frame_binaries:
            try:
                frame = decode_frame(frame_bytes)
            except MalformedHeader:
                malformed += 1
                continue
            indices.append(frame.index)
            counts.add(frame.count)

        click.echo(f"\n{'='*60}")
        click.echo("KEY QR BACKUP FRAMES")
        click.echo(f"{'='*60}")
        click.echo(f"Pages:               {len(images)}")
        click.echo(f"QR Codes Found:      {len(frame_binaries)}")
        click.echo(f"Malformed Codes:     {malformed}")
        click.echo(f"Declared Count(s):   {sorted(counts) if counts else 'N/A'}")
        click.echo(f"Frame Indices:       {sorted(indices)}")
        if len(counts) == 1:
            total = counts.pop()
            missing = sorted(set(range(total)) - set(indices))
            click.echo(f"Missing Indices:     {missing if missing else 'None'}")
        click.echo(f"{'='*60}\n")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
