import os
import tempfile

import pytest

# app.py creates its working directories at import time; keep them out of the checkout
_workdir = tempfile.mkdtemp(prefix="certsign-test-")
os.environ.setdefault("CERTSIGN_UPLOADS", os.path.join(_workdir, "uploads"))
os.environ.setdefault("CERTSIGN_OUTPUT", os.path.join(_workdir, "output"))

from certsign.crypto_utils import generate_key_pair


@pytest.fixture(scope='session')
def key_pair():
    # RSA generation is slow-ish, share one pair for the whole run
    return generate_key_pair()


@pytest.fixture(scope='session')
def other_key_pair():
    return generate_key_pair()


class FixedCodes:
    # stands in for UniqueCodeGenerator, hands out codes in order
    def __init__(self, codes):
        self.codes = list(codes)
        self.issued = 0

    def next(self):
        code = self.codes[self.issued]
        self.issued += 1
        return code


@pytest.fixture
def fixed_codes():
    return FixedCodes


@pytest.fixture
def client(tmp_path, monkeypatch):
    import app as app_module

    uploads = tmp_path / "uploads"
    output = tmp_path / "output"
    uploads.mkdir()
    output.mkdir()

    monkeypatch.setattr(app_module, "UPLOADS", str(uploads))
    monkeypatch.setattr(app_module, "OUTPUT", str(output))
    monkeypatch.setattr(app_module, "code_generator",
                        FixedCodes(["A1B2C3", "D4E5F6", "G7H8J9", "K1L2M3", "N4P5Q6", "R7S8T9"]))

    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        c.uploads = uploads
        c.output = output
        yield c

# EOF
