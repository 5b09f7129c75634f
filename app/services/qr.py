"""QR rendering of signed location tokens (SVG, no imaging library needed)."""

from __future__ import annotations

from io import BytesIO

import qrcode
import qrcode.image.svg


def render_svg(data: str, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    qr.add_data(data)
    qr.make(fit=True)

    buffer = BytesIO()
    qr.make_image().save(buffer)
    return buffer.getvalue()
