"""
QR images for signature strings.

A signature string is long (the 2048-bit signature alone is 342 characters),
so the symbol version is always picked to fit the data. Text past what the
largest version holds at the chosen error level raises
CertificateGenerationError like any other rendering problem.
"""
import base64
from io import BytesIO

import qrcode
from qrcode.exceptions import DataOverflowError

from certsign.errors import CertificateGenerationError


# H survives print damage and smudges, L holds the most text
ERROR_LEVELS = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


def make_qr(data, size_pixels=200, level="H"):
    """Square black-on-white QR image of `size_pixels`, as a PIL image."""
    if level not in ERROR_LEVELS:
        raise CertificateGenerationError(f"Unknown QR error correction level '{level}'")

    qr = qrcode.QRCode(error_correction=ERROR_LEVELS[level], box_size=10, border=2)
    try:
        qr.add_data(data)
        qr.make(fit=True)
    except (DataOverflowError, ValueError) as e:
        # qrcode reports overflow as either, depending on the release
        raise CertificateGenerationError(
            f"{len(data)} characters do not fit in a QR code: {e}"
        ) from e

    img = qr.make_image(fill_color="black", back_color="white")
    return img.resize((size_pixels, size_pixels))


def qr_png(data, size_pixels=200, level="H"):
    buf = BytesIO()
    make_qr(data, size_pixels, level).save(buf, format="PNG")
    return buf.getvalue()


def qr_to_data_url(data, size_pixels=200):
    return "data:image/png;base64," + base64.b64encode(qr_png(data, size_pixels)).decode("ascii")


def safe_filename(value, fallback="certificate"):
    safe = "".join(c if c.isalnum() or c in " _-" else "_" for c in str(value)).strip()
    return safe or fallback


def qr_file_name(first_field, code):
    """Download name for a QR image: <first field>-<code>.png"""
    return f"{safe_filename(first_field)}-{safe_filename(code, 'code')}.png"
