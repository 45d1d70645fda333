import logging
import os
import tempfile
import zipfile

import fitz
import pandas as pd

from certsign.errors import CertSignError, CertificateGenerationError
from certsign.qr_generator import qr_file_name, qr_png, safe_filename


logger = logging.getLogger(__name__)

QR_POSITIONS = ("bottom-right", "bottom-left", "top-right", "top-left")

MANIFEST_NAME = "manifest.csv"


def _qr_rect(page_width, page_height, qr_position, qr_size, margin=20):
    """Rect for the QR code, `margin` points in from the chosen corner."""
    if qr_position == "bottom-right":
        return fitz.Rect(
            page_width - qr_size - margin,
            page_height - qr_size - margin,
            page_width - margin,
            page_height - margin
        )
    elif qr_position == "bottom-left":
        return fitz.Rect(
            margin,
            page_height - qr_size - margin,
            margin + qr_size,
            page_height - margin
        )
    elif qr_position == "top-right":
        return fitz.Rect(
            page_width - qr_size - margin,
            margin,
            page_width - margin,
            margin + qr_size
        )
    else:  # top-left
        return fitz.Rect(
            margin,
            margin,
            margin + qr_size,
            margin + qr_size
        )


def _open_as_pdf(template_path):
    # image templates (PNG/JPG) are converted to a one-page PDF first
    doc = fitz.open(template_path)
    if doc.is_pdf:
        return doc
    pdf_bytes = doc.convert_to_pdf()
    doc.close()
    return fitz.open("pdf", pdf_bytes)


def generate_certificate(template_path, output_path, signature_data, code=None,
                         qr_position="bottom-right", qr_size=120):
    """
    Stamp the QR code for `signature_data` onto the first page of the
    template and save the result as a PDF.

    template_path:   PDF or image file
    signature_data:  the full signed string, fields then signature
    code:            unique code, printed beside the QR code when given
    qr_position:     "bottom-right", "bottom-left", "top-right", "top-left"
    """
    if qr_position not in QR_POSITIONS:
        raise CertificateGenerationError(f"Unknown QR position '{qr_position}'")

    doc = None
    try:
        doc = _open_as_pdf(template_path)
        page = doc[0]

        qr_rect = _qr_rect(page.rect.width, page.rect.height, qr_position, qr_size)
        page.insert_image(qr_rect, stream=qr_png(signature_data, size_pixels=qr_size * 4))

        if code:
            # text below the QR, or above it when the QR sits at the bottom
            if qr_position.startswith("bottom"):
                text_y = qr_rect.y0 - 4
            else:
                text_y = qr_rect.y1 + 10
            page.insert_text(
                (qr_rect.x0, text_y),
                f"Code: {code}",
                fontsize=8,
                fontname="Helvetica",
                color=(0.3, 0.3, 0.3)
            )

        doc.save(output_path)

    except CertificateGenerationError:
        raise
    except Exception as e:
        raise CertificateGenerationError(f"Certificate generation failed: {e}") from e
    finally:
        if doc is not None:
            doc.close()


def write_batch_zip(result, zip_path, template_path=None, qr_position="bottom-right", qr_size=120):
    """
    Package a BatchResult as a ZIP.

    One entry per signed row: the QR code PNG, or a stamped PDF when a
    template is given. manifest.csv lists every row, including failures.
    A row that fails to render is recorded and skipped.

    Returns (written, errors).
    """
    manifest = []
    errors = []
    written = 0
    used_names = set()

    def unique(name):
        base, ext = os.path.splitext(name)
        n = 1
        while name in used_names:
            n += 1
            name = f"{base}_{n}{ext}"
        used_names.add(name)
        return name

    with tempfile.TemporaryDirectory() as workdir, \
            zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:

        for signed in result.signed:
            first = signed.fields[0] if signed.fields else ""
            try:
                if template_path:
                    arcname = unique(f"{safe_filename(first, f'certificate_{signed.row_number}')}-{signed.code}.pdf")
                    out_pdf = os.path.join(workdir, f"{signed.row_number}.pdf")
                    generate_certificate(template_path, out_pdf, signed.signature_data,
                                         code=signed.code, qr_position=qr_position, qr_size=qr_size)
                    zf.write(out_pdf, arcname=arcname)
                    os.remove(out_pdf)
                else:
                    arcname = unique(qr_file_name(first, signed.code))
                    zf.writestr(arcname, qr_png(signed.signature_data))
            except CertSignError as e:
                logger.warning("Row %d: %s", signed.row_number, e)
                errors.append(f"Row {signed.row_number}: {e}")
                manifest.append({"row": signed.row_number, "status": "failed", "file": "",
                                 "signature_data": signed.signature_data, "error": str(e)})
                continue

            written += 1
            manifest.append({"row": signed.row_number, "status": "signed", "file": arcname,
                             "signature_data": signed.signature_data, "error": ""})

        for failure in result.failed:
            errors.append(f"Row {failure.row_number}: {failure.error}")
            manifest.append({"row": failure.row_number, "status": "failed", "file": "",
                             "signature_data": "", "error": failure.error})

        df = pd.DataFrame(manifest, columns=["row", "status", "file", "signature_data", "error"])
        df = df.sort_values("row", kind="stable")
        zf.writestr(MANIFEST_NAME, df.to_csv(index=False))

    logger.info("Wrote %d certificates to %s (%d errors)", written, zip_path, len(errors))
    return written, errors


def write_batch_pdf(result, pdf_path, template_path, qr_position="bottom-right", qr_size=120):
    """
    Stamp every signed row onto the template and merge the results into one
    multi-page PDF, in row order. Rows that fail to render are left out and
    reported, the others are still merged.

    Returns (written, errors). Raises CertificateGenerationError when not a
    single row could be rendered.
    """
    errors = []
    written = 0

    merged = fitz.open()
    try:
        with tempfile.TemporaryDirectory() as workdir:
            for signed in result.signed:
                row_pdf = os.path.join(workdir, f"{signed.row_number}.pdf")
                try:
                    generate_certificate(template_path, row_pdf, signed.signature_data,
                                         code=signed.code, qr_position=qr_position, qr_size=qr_size)
                except CertSignError as e:
                    logger.warning("Row %d: %s", signed.row_number, e)
                    errors.append(f"Row {signed.row_number}: {e}")
                    continue

                row_doc = fitz.open(row_pdf)
                try:
                    merged.insert_pdf(row_doc)
                finally:
                    row_doc.close()
                written += 1

        for failure in result.failed:
            errors.append(f"Row {failure.row_number}: {failure.error}")

        if not written:
            raise CertificateGenerationError(
                "No certificate could be rendered. Errors: " + " | ".join(errors[:3])
            )

        merged.save(pdf_path)
    finally:
        merged.close()

    logger.info("Wrote %d certificate pages to %s (%d errors)", written, pdf_path, len(errors))
    return written, errors
