import io
import logging
import os
import uuid
from datetime import date

from flask import Flask, jsonify, request, send_file

from certsign.batch import LAYOUTS, sign_rows
from certsign.certificate_generator import QR_POSITIONS, write_batch_pdf, write_batch_zip
from certsign.crypto_utils import generate_key_pair, load_private_key, sign_payload
from certsign.data_loader import load_rows
from certsign.errors import CertSignError
from certsign.payload import UniqueCodeGenerator, build_payload, looks_like_code
from certsign.qr_generator import qr_file_name, qr_to_data_url
from certsign.token_codec import decode_signature_string, encode_signature_string, verify_signature_string

app = Flask(__name__)

logger = logging.getLogger(__name__)


# Default RSA modulus for /api/keys
KEY_SIZE = int(os.environ.get('CERTSIGN_KEY_SIZE', '2048'))

# Worker threads used to sign the rows of one upload
MAX_WORKERS = int(os.environ.get('CERTSIGN_MAX_WORKERS', '4'))

# QR size in points when stamped on a certificate template
QR_SIZE = int(os.environ.get('CERTSIGN_QR_SIZE', '120'))

UPLOADS = os.environ.get('CERTSIGN_UPLOADS', 'uploads')
OUTPUT = os.environ.get('CERTSIGN_OUTPUT', 'output')
os.makedirs(UPLOADS, exist_ok=True)
os.makedirs(OUTPUT, exist_ok=True)

# Fresh unique code per certificate; tests swap this for a predictable one
code_generator = UniqueCodeGenerator()


def _json_body():
    # arrays and scalars are treated as an empty body
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _remove(*paths):
    for path in paths:
        if path and os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                logger.warning("Could not remove %s", path)


# ─────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────

@app.route("/")
def index():
    return jsonify({
        "service": "certsign",
        "endpoints": {
            "POST /api/keys": "generate an RSA key pair (PEM)",
            "POST /api/sign": "sign fields, returns the signature string and its QR code",
            "POST /api/verify": "verify a signature string against a public key",
            "POST /api/qrcode": "QR code for a signature string",
            "POST /api/bulk": "sign every row of a CSV/XLSX file, returns a ZIP or one PDF",
        },
    })


@app.route("/api/keys", methods=["POST"])
def keys():
    """Generate a key pair. Nothing is stored; the caller keeps the keys."""
    body = _json_body()
    try:
        modulus_length = int(body.get("modulus_length", KEY_SIZE))
    except (TypeError, ValueError):
        return jsonify({"error": "modulus_length must be a number."}), 400

    try:
        pair = generate_key_pair(modulus_length)
    except CertSignError as e:
        return jsonify({"error": str(e)}), 400

    logger.info("Generated a %d-bit key pair", modulus_length)
    return jsonify({
        "private_key": pair.private_key,
        "public_key": pair.public_key,
    })


@app.route("/api/sign", methods=["POST"])
def sign():
    """
    Sign one certificate.

    Body: { "fields": [...] } or { "data": "..." }, plus "private_key".
    A fresh unique code is appended to the fields before signing.
    """
    body = _json_body()
    fields = body.get("fields")
    if fields is None:
        data = body.get("data", "")
        fields = [data] if data else []
    private_key = body.get("private_key", "")

    if not isinstance(fields, list) or not fields or not all(str(f).strip() for f in fields):
        return jsonify({"error": "Signature data is required."}), 400
    if not private_key:
        return jsonify({"error": "A private key is required."}), 400

    try:
        code = code_generator.next()
        fields = [str(f).strip() for f in fields] + [code]
        payload = build_payload(fields, strict=True)
        signature = sign_payload(payload, private_key)
        signature_data = encode_signature_string(fields, signature)
        qr_code_data_url = qr_to_data_url(signature_data)
    except CertSignError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({
        "signature_data": signature_data,
        "payload": payload,
        "code": code,
        "signature": signature,
        "qr_code_data_url": qr_code_data_url,
        "file_name": qr_file_name(fields[0], code),
    })


@app.route("/api/verify", methods=["POST"])
def verify():
    """
    Verify a signature string.

    Missing input is reported as an error before verifying, so a 200 with
    "valid": false always means the check ran and the signature is bad.
    """
    body = _json_body()
    signature_data = str(body.get("signature_data") or "").strip()
    public_key = str(body.get("public_key") or "")
    fmt = body.get("format", "v1")

    if not signature_data or not public_key:
        return jsonify({"error": "Public key and signature data are required."}), 400
    if fmt not in ("v1", "legacy"):
        return jsonify({"error": f"Unknown signature format '{fmt}'."}), 400

    decoded = decode_signature_string(signature_data)
    if not decoded.fields or not decoded.token:
        return jsonify({"error": "Signature data must look like field:...:signature."}), 400

    valid = verify_signature_string(signature_data, public_key, legacy=(fmt == "legacy"))

    return jsonify({
        "valid": valid,
        "fields": decoded.fields,
    })


@app.route("/api/qrcode", methods=["POST"])
def qrcode_route():
    """
    QR code for a signature string.

    The file name uses the first field and the unique code. Pass "code" when
    it is known; otherwise the last code-shaped field after the first is used,
    which covers both the bulk and the certificate layouts.
    """
    body = _json_body()
    signature_data = str(body.get("signature_data") or "").strip()
    if not signature_data:
        return jsonify({"error": "Signature data is required."}), 400

    decoded = decode_signature_string(signature_data)
    first = decoded.fields[0] if decoded.fields else "qrcode"
    code = str(body.get("code") or "").strip()
    if not code:
        code = next((f for f in reversed(decoded.fields[1:]) if looks_like_code(f)), "code")

    try:
        qr_code_data_url = qr_to_data_url(signature_data)
    except CertSignError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({
        "qr_code_data_url": qr_code_data_url,
        "file_name": qr_file_name(first, code),
    })


@app.route("/api/bulk", methods=["POST"])
def bulk():
    """
    Sign every row of an uploaded data file and return a ZIP, or one
    multi-page PDF of all certificates.

    Form fields:
      data              CSV or XLSX file (required)
      private_key       PEM text (required)
      template          PDF/PNG certificate template (optional, required for PDF output)
      layout            "bulk" (name:content:date:code) or
                        "certificate" (name:code:certificate_name:date)
      certificate_name  default for the certificate layout
      qr_position       corner for the QR code on the template
      output            "zip" (default) or "pdf"
    """
    data_path = tmpl_path = out_path = None
    try:
        logger.info("Bulk signing requested")
        data_file = request.files.get("data")
        template_file = request.files.get("template")
        private_key = request.form.get("private_key", "")
        layout_name = request.form.get("layout", "bulk")
        qr_position = request.form.get("qr_position", "bottom-right")
        output = request.form.get("output", "zip")
        has_template = bool(template_file and template_file.filename)

        if not data_file or not private_key:
            return jsonify({"error": "Both a data file and a private key are required."}), 400
        if layout_name not in LAYOUTS:
            return jsonify({"error": f"Unknown layout '{layout_name}'."}), 400
        if qr_position not in QR_POSITIONS:
            return jsonify({"error": f"Unknown QR position '{qr_position}'."}), 400
        if output not in ("zip", "pdf"):
            return jsonify({"error": f"Unknown output '{output}', use zip or pdf."}), 400
        if output == "pdf" and not has_template:
            return jsonify({"error": "A certificate template is required for PDF output."}), 400

        # A bad key would fail every row; report it once instead
        try:
            load_private_key(private_key)
        except CertSignError as e:
            return jsonify({"error": str(e)}), 400

        sid = uuid.uuid4().hex[:10]
        data_ext = os.path.splitext(data_file.filename or "")[1] or ".csv"
        data_path = os.path.join(UPLOADS, f"{sid}_data{data_ext}")
        data_file.save(data_path)

        if has_template:
            tmpl_ext = os.path.splitext(template_file.filename)[1] or ".pdf"
            tmpl_path = os.path.join(UPLOADS, f"{sid}_template{tmpl_ext}")
            template_file.save(tmpl_path)

        rows = load_rows(data_path)
        logger.info("Loaded %d rows", len(rows))

        defaults = {}
        if layout_name == "certificate":
            defaults = {
                "certificate_name": request.form.get("certificate_name") or "Certificate",
                "date": date.today().isoformat(),
            }

        result = sign_rows(rows, private_key, layout=LAYOUTS[layout_name],
                           code_generator=code_generator, defaults=defaults,
                           max_workers=MAX_WORKERS)

        if not result.signed:
            error_msg = "Failed to sign any rows. Errors: " + " | ".join(result.errors()[:3])
            return jsonify({"error": error_msg}), 400

        out_path = os.path.abspath(os.path.join(OUTPUT, f"certificates_{sid}.{output}"))
        if output == "pdf":
            written, errors = write_batch_pdf(result, out_path, tmpl_path,
                                              qr_position=qr_position, qr_size=QR_SIZE)
            mimetype = "application/pdf"
        else:
            written, errors = write_batch_zip(result, out_path, template_path=tmpl_path,
                                              qr_position=qr_position, qr_size=QR_SIZE)
            mimetype = "application/zip"

        if errors:
            logger.warning("Some rows failed: %s", errors[:5])

        with open(out_path, "rb") as fh:
            archive = io.BytesIO(fh.read())

        response = send_file(archive, mimetype=mimetype, as_attachment=True,
                             download_name=f"certificates.{output}")
        response.headers["X-Certificates-Signed"] = str(written)
        response.headers["X-Certificates-Failed"] = str(len(errors))
        return response

    except (CertSignError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.exception("Bulk signing failed")
        return jsonify({"error": str(e)}), 500
    finally:
        _remove(data_path, tmpl_path, out_path)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5001")), debug=True)
