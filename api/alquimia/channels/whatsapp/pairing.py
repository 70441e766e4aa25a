"""Pairing code rendering."""

import base64
import io

import qrcode


def render_pairing_code(code: str) -> str:
    """Render a pairing code as a PNG data URL the dashboard can show in <img>."""
    image = qrcode.make(code)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
