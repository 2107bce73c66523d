"""Tests for QR code rendering."""

import base64

import pytest

from qrpass.qr import QrGenerator

SCAN_URL = "http://192.168.1.100:8780/scan/3f2a9c4be1d04f7a8b6c5d4e3f2a1b0c"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


@pytest.fixture
def qr_generator():
    """Create a QR generator for a scan URL."""
    return QrGenerator(SCAN_URL)


class TestQrGeneratorTerminal:
    """Tests for terminal output."""

    def test_terminal_output_not_empty(self, qr_generator):
        """Terminal output is not empty."""
        assert len(qr_generator.to_terminal()) > 0

    def test_terminal_output_is_multiline(self, qr_generator):
        """Terminal output is a block of rows."""
        assert len(qr_generator.to_terminal().splitlines()) > 10

    def test_longer_payload_grows_code(self):
        """Larger payloads need a bigger code."""
        small = QrGenerator("x").to_terminal()
        large = QrGenerator("x" * 200).to_terminal()
        assert len(large.splitlines()) > len(small.splitlines())


class TestQrGeneratorImages:
    """Tests for PNG and data URL output."""

    def test_to_png_writes_png(self, qr_generator, tmp_path):
        """PNG file starts with the PNG signature."""
        path = tmp_path / "qr.png"
        qr_generator.to_png(str(path))

        assert path.read_bytes().startswith(PNG_MAGIC)

    def test_data_url_is_base64_png(self, qr_generator):
        """Data URL wraps a base64 PNG."""
        url = qr_generator.to_data_url()

        assert url.startswith("data:image/png;base64,")
        decoded = base64.b64decode(url.split(",", 1)[1])
        assert decoded.startswith(PNG_MAGIC)


class TestQrGeneratorHtml:
    """Tests for browser output."""

    def test_html_embeds_image(self, qr_generator):
        html = qr_generator.to_html()

        assert html.startswith("<!DOCTYPE html>")
        assert "data:image/png;base64," in html
        assert SCAN_URL in html

    def test_html_escapes_title(self, qr_generator):
        """Titles are escaped."""
        html = qr_generator.to_html("<script>alert(1)</script>")

        assert "<script>" not in html
        assert "&lt;script&gt;" in html
