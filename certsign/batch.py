"""
Batch signing of data-file rows.

Each row becomes one signed certificate string. Rows are independent: a row
that cannot be signed is reported and the rest carry on.
"""
import logging
from concurrent import futures
from dataclasses import dataclass, field
from typing import Dict, List

from certsign.crypto_utils import sign_payload
from certsign.errors import CertSignError, InvalidArgumentError
from certsign.payload import UniqueCodeGenerator, build_payload
from certsign.token_codec import encode_signature_string


logger = logging.getLogger(__name__)

# marks where the unique code sits in a layout
CODE = "{code}"

# name:content:date:code:signature
BULK_LAYOUT = ("name", "content", "date", CODE)

# name:code:certificate_name:date:signature
CERTIFICATE_LAYOUT = ("name", CODE, "certificate_name", "date")

LAYOUTS = {
    "bulk": BULK_LAYOUT,
    "certificate": CERTIFICATE_LAYOUT,
}

# column names accepted for each layout key (lowercase)
COLUMN_ALIASES = {
    "name": ("name", "student", "recipient", "full_name"),
    "content": ("content", "course", "subject", "program", "course_name"),
    "date": ("date", "issue_date", "completion_date", "cert_date"),
    "certificate_name": ("certificate_name", "certificatename", "certificate"),
}

DEFAULT_MAX_WORKERS = 4


@dataclass
class SignedRow:
    row_number: int             # 1-based, as shown to users
    row: Dict[str, str]
    fields: List[str]
    code: str
    signature: str
    signature_data: str         # what goes in the QR code

    @property
    def payload(self):
        return build_payload(self.fields)


@dataclass
class RowFailure:
    row_number: int
    row: Dict[str, str]
    error: str


@dataclass
class BatchResult:
    signed: List[SignedRow] = field(default_factory=list)
    failed: List[RowFailure] = field(default_factory=list)

    @property
    def ok(self):
        return not self.failed

    def errors(self):
        return [f"Row {f.row_number}: {f.error}" for f in self.failed]


def _lookup(row, key):
    # case-insensitive column match, with aliases
    col_lookup = {str(col).strip().lower(): val for col, val in row.items()}

    for alias in COLUMN_ALIASES.get(key, (key,)):
        value = col_lookup.get(alias)
        if value is None:
            continue
        value = str(value).strip()
        if value and value.lower() != "nan":
            return value

    return ""


def sign_row(row, private_key_pem, code, layout=BULK_LAYOUT, defaults=None, row_number=1):
    """
    Build, sign and encode one row.

    `code` fills the CODE slot of the layout. Empty values fall back to
    `defaults`; if still empty the row is rejected with InvalidArgumentError.
    A value containing the delimiter raises FieldFormatError.
    """
    defaults = defaults or {}

    fields = []
    for key in layout:
        if key == CODE:
            fields.append(code)
            continue

        value = _lookup(row, key) or str(defaults.get(key, "")).strip()
        if not value:
            raise InvalidArgumentError(f"Missing value for '{key}'")
        fields.append(value)

    payload = build_payload(fields, strict=True)
    signature = sign_payload(payload, private_key_pem)

    return SignedRow(
        row_number=row_number,
        row=dict(row),
        fields=fields,
        code=code,
        signature=signature,
        signature_data=encode_signature_string(fields, signature),
    )


def sign_rows(rows, private_key_pem, layout=BULK_LAYOUT, code_generator=None,
              defaults=None, max_workers=DEFAULT_MAX_WORKERS):
    """
    Sign every row, collecting successes and failures.

    Codes are drawn in row order before any work is dispatched, so a
    deterministic generator gives each row a predictable code regardless of
    which worker signs it. Results come back ordered by row number.
    """
    code_generator = code_generator or UniqueCodeGenerator()
    rows = list(rows)
    result = BatchResult()

    if not rows:
        return result

    codes = [code_generator.next() for _ in rows]

    with futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        pending = {
            pool.submit(sign_row, row, private_key_pem, code, layout, defaults, idx + 1): (idx, row)
            for idx, (row, code) in enumerate(zip(rows, codes))
        }

        for fut in futures.as_completed(pending):
            idx, row = pending[fut]
            try:
                result.signed.append(fut.result())
            except CertSignError as e:
                logger.warning("Row %d: %s", idx + 1, e)
                result.failed.append(RowFailure(idx + 1, dict(row), str(e)))
            except Exception as e:
                logger.exception("Row %d: unexpected error", idx + 1)
                result.failed.append(RowFailure(idx + 1, dict(row), f"Unexpected error: {e}"))

    result.signed.sort(key=lambda r: r.row_number)
    result.failed.sort(key=lambda r: r.row_number)

    logger.info("Signed %d of %d rows", len(result.signed), len(rows))
    return result
