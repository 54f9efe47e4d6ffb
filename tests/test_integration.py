"""
Integration tests for the full encode -> print -> scan -> decode cycle

These render real QR codes, write real PDFs and rasterize them again, so
they need the zbar and poppler native libraries.
"""

import os
import sys
import base64
import tempfile

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import key_qr_backup as kqb
from tests.pdf_helpers import (requires_zbar, requires_poppler, reverse_pdf_pages,
                               shuffle_pdf_pages, merge_pdfs, get_pdf_page_count)


# ~2.1 KB of base64, 42 frames, 4 letter pages at 12 codes per page
KEY_PAYLOAD = base64.b64encode(bytes((i * 37 + 11) % 256 for i in range(1600)))


def encode_to_pdf(tmpdir, payload=KEY_PAYLOAD, name='backup.pdf', verify_output=False):
    pdf_path = os.path.join(tmpdir, name)
    report = kqb.encode_payload(payload, pdf_path, title='Test Key',
                                verify_output=verify_output, workers=2)
    return pdf_path, report


def decode_pdf(pdf_path):
    return kqb.decode_pages(kqb.pdf_to_images(pdf_path), workers=2)


@requires_zbar
@requires_poppler
class TestFullCycle:
    """Test complete encode-decode workflow"""

    def test_encode_decode_key_payload(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, report = encode_to_pdf(tmpdir, verify_output=True)

            assert os.path.exists(pdf_path)
            assert report['verified'] is True
            assert report['frames'] == len(kqb.split_payload(KEY_PAYLOAD))
            assert report['pages'] == get_pdf_page_count(pdf_path)
            assert report['sha256'] == kqb.calculate_checksum(KEY_PAYLOAD)

            payload, decode_report = decode_pdf(pdf_path)

            assert payload == KEY_PAYLOAD
            assert decode_report['pages'] == report['pages']
            assert decode_report['sha256'] == report['sha256']

    def test_single_frame_payload(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, report = encode_to_pdf(tmpdir, payload=b"QQ==", verify_output=True)

            assert report['frames'] == 1
            assert report['pages'] == 1
            assert decode_pdf(pdf_path)[0] == b"QQ=="

    def test_empty_payload_writes_nothing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path = os.path.join(tmpdir, 'empty.pdf')

            with pytest.raises(kqb.EmptyPayload):
                kqb.encode_payload(b"", pdf_path, title='Empty')
            assert not os.path.exists(pdf_path)

    def test_decode_from_png_scans(self):
        """Pages saved as separate image files decode the same"""
        import cv2

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _ = encode_to_pdf(tmpdir)

            paths = []
            for i, image in enumerate(kqb.pdf_to_images(pdf_path)):
                path = os.path.join(tmpdir, f'scan_{i}.png')
                cv2.imwrite(path, image)
                paths.append(path)

            images = kqb.load_images(list(reversed(paths)))
            payload, _ = kqb.decode_pages(images)
            assert payload == KEY_PAYLOAD


def render_without_scanning(frames, **kwargs):
    """verify_frames stand-in that only renders, so no zbar is needed"""
    return [kqb.create_qr_code(kqb.encode_frame(*frame)) for frame in frames]


class TestReadBackFailure:
    """A PDF that fails its read-back check is removed"""

    def test_tampered_read_back_removes_pdf(self, monkeypatch):
        monkeypatch.setattr(kqb, 'verify_frames', render_without_scanning)
        monkeypatch.setattr(kqb, 'pdf_to_images', lambda path, dpi=300: [])
        monkeypatch.setattr(kqb, 'decode_pages',
                            lambda images, workers=1: (KEY_PAYLOAD[:-1] + b"#", {}))

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path = os.path.join(tmpdir, 'tampered.pdf')

            with pytest.raises(kqb.IntegrityMismatch):
                kqb.encode_payload(KEY_PAYLOAD, pdf_path, title='Tampered')
            assert not os.path.exists(pdf_path)

    def test_rasterizer_error_removes_pdf(self, monkeypatch):
        def no_poppler(path, dpi=300):
            raise RuntimeError("Unable to get page count. Is poppler installed and in PATH?")

        monkeypatch.setattr(kqb, 'verify_frames', render_without_scanning)
        monkeypatch.setattr(kqb, 'pdf_to_images', no_poppler)

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path = os.path.join(tmpdir, 'unverified.pdf')

            with pytest.raises(RuntimeError, match="poppler"):
                kqb.encode_payload(b"QUJD" * 40, pdf_path, title='Unverified')
            assert not os.path.exists(pdf_path)

    def test_pdf_writer_error_removes_partial_file(self, monkeypatch):
        def half_written(qr_images, output_path, title, **kwargs):
            with open(output_path, 'wb') as f:
                f.write(b"%PDF-1.4\n")
            raise OSError("No space left on device")

        monkeypatch.setattr(kqb, 'verify_frames', render_without_scanning)
        monkeypatch.setattr(kqb, 'generate_pdf', half_written)

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path = os.path.join(tmpdir, 'partial.pdf')

            with pytest.raises(OSError):
                kqb.encode_payload(b"QUJD" * 40, pdf_path, title='Partial')
            assert not os.path.exists(pdf_path)

    def test_unverified_pdf_kept_when_check_skipped(self, monkeypatch):
        monkeypatch.setattr(kqb, 'verify_frames', render_without_scanning)

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path = os.path.join(tmpdir, 'skipped.pdf')
            report = kqb.encode_payload(b"QUJD" * 40, pdf_path, title='Skipped',
                                        verify_output=False)

            assert os.path.exists(pdf_path)
            assert report['verified'] is False
            assert report['pages'] == get_pdf_page_count(pdf_path)


@requires_zbar
@requires_poppler
class TestOrderIndependence:
    """Pages come back from the scanner in any order"""

    def test_reversed_pages(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, report = encode_to_pdf(tmpdir)
            reversed_pdf = os.path.join(tmpdir, 'reversed.pdf')
            reverse_pdf_pages(pdf_path, reversed_pdf)

            payload, decode_report = decode_pdf(reversed_pdf)

            assert payload == KEY_PAYLOAD
            assert decode_report['reordered'] is True

    def test_shuffled_pages(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, report = encode_to_pdf(tmpdir)
            num_pages = get_pdf_page_count(pdf_path)
            assert num_pages >= 3

            shuffled_pdf = os.path.join(tmpdir, 'shuffled.pdf')
            order = list(range(1, num_pages)) + [0]
            shuffle_pdf_pages(pdf_path, shuffled_pdf, order)

            payload, _ = decode_pdf(shuffled_pdf)
            assert payload == KEY_PAYLOAD


@requires_zbar
@requires_poppler
class TestDamagedSets:
    """Incomplete or mixed page sets are rejected"""

    def test_missing_page(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _ = encode_to_pdf(tmpdir)
            num_pages = get_pdf_page_count(pdf_path)

            partial_pdf = os.path.join(tmpdir, 'partial.pdf')
            shuffle_pdf_pages(pdf_path, partial_pdf, list(range(num_pages - 1)))

            with pytest.raises(kqb.MissingFrames) as exc_info:
                decode_pdf(partial_pdf)
            assert exc_info.value.missing

    def test_page_scanned_twice(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _ = encode_to_pdf(tmpdir)
            num_pages = get_pdf_page_count(pdf_path)

            doubled_pdf = os.path.join(tmpdir, 'doubled.pdf')
            shuffle_pdf_pages(pdf_path, doubled_pdf, list(range(num_pages)) + [1])

            with pytest.raises(kqb.DuplicateIndex):
                decode_pdf(doubled_pdf)

    def test_pages_from_two_backups(self):
        """Backups with different frame counts cannot be mixed"""
        with tempfile.TemporaryDirectory() as tmpdir:
            first_pdf, _ = encode_to_pdf(tmpdir, name='first.pdf')
            second_pdf, _ = encode_to_pdf(tmpdir, payload=KEY_PAYLOAD[:500], name='second.pdf')

            mixed_pdf = os.path.join(tmpdir, 'mixed.pdf')
            merge_pdfs([second_pdf, first_pdf], mixed_pdf)

            with pytest.raises(kqb.InconsistentFrameCount):
                decode_pdf(mixed_pdf)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
