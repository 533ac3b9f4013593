"""QR rendering for enrollment URIs and device challenges."""

from __future__ import annotations

import base64
import io

import qrcode


def render_qr_png_base64(data: str, *, box_size: int = 10, border: int = 4) -> str:
    """Render ``data`` as a PNG QR code and return it base64-encoded.

    Args:
        data: Payload to encode (otpauth URI or challenge JSON).
        box_size: Pixel size of each QR module.
        border: Quiet-zone width in modules.

    Returns:
        Base64 PNG suitable for a ``data:image/png;base64,`` URL.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)
    return base64.b64encode(buffer.read()).decode("utf-8")


__all__: list[str] = ["render_qr_png_base64"]
