"""
QR code rendering for pairing payloads.

Transports hand over the raw pairing string; API clients get a PNG data URL
they can show directly in an <img> tag.
"""

import segno

DATA_URL_PREFIX = "data:image/png;base64,"


def render_qr_data_url(payload: str, scale: int = 6, border: int = 4) -> str:
    """
    Render ``payload`` as a QR code and return it as a PNG data URL.

    Payloads that are already PNG data URLs are returned unchanged.

    Raises:
        ValueError: If the payload is empty or too long for a QR code
    """
    if not payload:
        raise ValueError("QR payload must not be empty")
    if payload.startswith(DATA_URL_PREFIX):
        return payload
    qr = segno.make_qr(payload)
    return qr.png_data_uri(scale=scale, border=border)
