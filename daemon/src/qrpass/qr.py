"""QR code rendering.

Renders a QR code payload (the scan URL for pairing, or a pass's own
data) for display in terminal, browser, as a PNG file or as a data URL.
"""

import base64
import html
import io

import qrcode
from qrcode.main import QRCode


class QrGenerator:
    """Generate QR codes for a text payload.

    Example:
        qr = QrGenerator("https://vault.example.com/scan/3f2a...")
        print(qr.to_terminal())
    """

    def __init__(
        self,
        data: str,
        error_correction: int = qrcode.constants.ERROR_CORRECT_M,
    ):
        """Initialize QR generator.

        Args:
            data: Text to encode.
            error_correction: qrcode error correction level.
        """
        self.data = data
        self.error_correction = error_correction

    def _create_qr(self) -> QRCode:
        """Create QR code object.

        Returns:
            QRCode instance with payload data.
        """
        qr = qrcode.QRCode(
            version=None,  # Auto-size
            error_correction=self.error_correction,
            box_size=10,
            border=4,
        )
        qr.add_data(self.data)
        qr.make(fit=True)
        return qr

    def _png_bytes(self) -> bytes:
        qr = self._create_qr()
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def to_terminal(self) -> str:
        """Generate ASCII art for terminal display.

        Returns:
            String with QR code using Unicode block characters.
        """
        qr = self._create_qr()

        output = io.StringIO()
        qr.print_ascii(out=output, invert=True)
        return output.getvalue()

    def to_png(self, path: str) -> None:
        """Save QR code as PNG file.

        Args:
            path: Path to save PNG file.
        """
        with open(path, "wb") as f:
            f.write(self._png_bytes())

    def to_data_url(self) -> str:
        """PNG image as a data URL, for embedding in records and pages."""
        img_b64 = base64.b64encode(self._png_bytes()).decode("ascii")
        return f"data:image/png;base64,{img_b64}"

    def to_html(self, title: str = "Scan to create your pass") -> str:
        """Generate HTML with embedded QR code.

        Returns:
            Complete HTML document with embedded QR code image.
        """
        safe_title = html.escape(title)
        safe_data = html.escape(self.data)

        return f"""<!DOCTYPE html>
<html>
<head>
    <title>qrpass</title>
    <style>
        body {{
            display: flex;
            flex-direction: column;
            align-items: center;
            justify-content: center;
            height: 100vh;
            margin: 0;
            background: #1a1a1a;
            color: #fff;
            font-family: system-ui, sans-serif;
        }}
        h1 {{ margin-bottom: 20px; }}
        img {{ border: 10px solid white; border-radius: 10px; }}
        p {{ margin-top: 20px; color: #888; }}
    </style>
</head>
<body>
    <h1>{safe_title}</h1>
    <img src="{self.to_data_url()}" alt="QR Code">
    <p>{safe_data}</p>
</body>
</html>
"""
