import io
import re

import qrcode
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_H

MIN_TEXT_LENGTH = 1
MAX_TEXT_LENGTH = 512
MAX_SCALE = 32

_SVG_OPEN_TAG = re.compile(r"<svg(?=[\s>])")
_BLACK_FILL = re.compile(r'fill="(?:black|#000000|#000)"')
_STYLE = "<style>.d{fill:currentColor;fill-opacity:.7}</style>"


def clamp_scale(raw) -> int:
    try:
        scale = int(raw)
    except (TypeError, ValueError):
        return 1
    return min(max(scale, 1), MAX_SCALE)


def make_qr_svg(text: str, scale: int = 1) -> str:
    """Render *text* as a quiet-zone-free QR code SVG tinted with ``currentColor``."""

    code = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        box_size=10 * clamp_scale(scale),
        border=0,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    code.add_data(text)
    code.make(fit=True)

    buffer = io.BytesIO()
    code.make_image().save(buffer)
    svg = buffer.getvalue().decode("utf-8")
    if "<svg" not in svg:
        raise ValueError("Failed to generate QR code SVG")

    svg = _SVG_OPEN_TAG.sub('<svg shape-rendering="crispEdges"', svg, count=1)
    svg = re.sub(r"(<svg[^>]*>)", lambda match: match.group(1) + _STYLE, svg, count=1)
    return _BLACK_FILL.sub('class="d"', svg)
