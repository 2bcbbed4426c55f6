"""Scan-code images for printed fabric labels."""

from __future__ import annotations

from io import BytesIO

import qrcode
import qrcode.image.svg

from .errors import ValidationError


def render_scan_code_svg(payload: str) -> bytes:
    """Render ``payload`` as a standalone SVG QR code."""

    if not payload:
        raise ValidationError("Cannot render an empty scan payload")
    svg_factory = qrcode.image.svg.SvgImage
    image = qrcode.make(payload, image_factory=svg_factory)
    buffer = BytesIO()
    image.save(buffer)
    return buffer.getvalue()


__all__ = ["render_scan_code_svg"]
