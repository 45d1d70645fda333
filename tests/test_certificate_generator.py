import io
import zipfile

import fitz
import pandas as pd
import pytest
from PIL import Image

from certsign.batch import sign_rows
from certsign.certificate_generator import (
    MANIFEST_NAME, _qr_rect, generate_certificate, write_batch_pdf, write_batch_zip,
)
from certsign.errors import CertificateGenerationError


@pytest.fixture
def pdf_template(tmp_path):
    path = tmp_path / 'template.pdf'
    doc = fitz.open()
    page = doc.new_page(width=842, height=595)
    page.insert_text((72, 72), "Certificate of Completion", fontsize=24)
    doc.save(str(path))
    doc.close()
    return str(path)


@pytest.fixture
def png_template(tmp_path):
    path = tmp_path / 'template.png'
    Image.new('RGB', (800, 600), 'white').save(path)
    return str(path)


@pytest.fixture
def batch(key_pair, fixed_codes):
    rows = [
        {'name': 'Jane Doe', 'content': 'Python 101', 'date': '2024-05-01'},
        {'name': 'Jane Doe', 'content': 'Python 101', 'date': '2024-05-01'},
        {'name': 'Ann Poe', 'content': '', 'date': '2024-05-01'},
    ]
    return sign_rows(rows, key_pair.private_key, code_generator=fixed_codes(['AAAAA1', 'AAAAA1', 'CCCCC3']))


@pytest.mark.parametrize('pos, expect', [
    ('bottom-right', (680, 435, 780, 535)),
    ('bottom-left', (20, 435, 120, 535)),
    ('top-right', (680, 20, 780, 120)),
    ('top-left', (20, 20, 120, 120)),
])
def test_qr_rect(pos, expect):
    assert tuple(_qr_rect(800, 555, pos, 100)) == expect


def test_generate_certificate(tmp_path, pdf_template):
    out = str(tmp_path / 'out.pdf')
    generate_certificate(pdf_template, out, 'Jane Doe:A1B2C3:sig', code='A1B2C3')

    doc = fitz.open(out)
    try:
        page = doc[0]
        assert len(page.get_images()) == 1
        text = page.get_text()
        assert 'Code: A1B2C3' in text
        assert 'Certificate of Completion' in text
    finally:
        doc.close()


def test_generate_from_image_template(tmp_path, png_template):
    out = str(tmp_path / 'out.pdf')
    generate_certificate(png_template, out, 'Jane Doe:A1B2C3:sig', qr_position='top-left')

    doc = fitz.open(out)
    try:
        assert doc.is_pdf
        assert len(doc) == 1
    finally:
        doc.close()


def test_generate_bad_position(tmp_path, pdf_template):
    with pytest.raises(CertificateGenerationError):
        generate_certificate(pdf_template, str(tmp_path / 'out.pdf'), 'x:y', qr_position='middle')


def test_generate_missing_template(tmp_path):
    with pytest.raises(CertificateGenerationError) as err:
        generate_certificate(str(tmp_path / 'nope.pdf'), str(tmp_path / 'out.pdf'), 'x:y')
    assert 'Certificate generation failed' in str(err.value)


def _manifest(zf):
    return pd.read_csv(io.BytesIO(zf.read(MANIFEST_NAME)), dtype=str, keep_default_na=False)


def test_zip_of_qr_codes(tmp_path, batch):
    zip_path = str(tmp_path / 'out.zip')
    written, errors = write_batch_zip(batch, zip_path)

    assert written == 2
    assert errors == ["Row 3: Missing value for 'content'"]

    with zipfile.ZipFile(zip_path) as zf:
        names = sorted(zf.namelist())
        # duplicate names get a suffix
        assert names == ['Jane Doe-AAAAA1.png', 'Jane Doe-AAAAA1_2.png', MANIFEST_NAME]
        assert zf.read('Jane Doe-AAAAA1.png').startswith(b'\x89PNG')

        manifest = _manifest(zf)
        assert list(manifest['row']) == ['1', '2', '3']
        assert list(manifest['status']) == ['signed', 'signed', 'failed']
        assert manifest.loc[0, 'signature_data'] == batch.signed[0].signature_data
        assert manifest.loc[2, 'error'] == "Missing value for 'content'"


def test_zip_of_pdfs(tmp_path, batch, pdf_template):
    zip_path = str(tmp_path / 'out.zip')
    written, errors = write_batch_zip(batch, zip_path, template_path=pdf_template,
                                      qr_position='bottom-left')

    assert written == 2
    with zipfile.ZipFile(zip_path) as zf:
        pdfs = [n for n in zf.namelist() if n.endswith('.pdf')]
        assert sorted(pdfs) == ['Jane Doe-AAAAA1.pdf', 'Jane Doe-AAAAA1_2.pdf']
        doc = fitz.open('pdf', zf.read(pdfs[0]))
        try:
            assert 'Code: AAAAA1' in doc[0].get_text()
        finally:
            doc.close()


def test_zip_render_failures_recorded(tmp_path, batch):
    zip_path = str(tmp_path / 'out.zip')
    written, errors = write_batch_zip(batch, zip_path, template_path=str(tmp_path / 'missing.pdf'))

    assert written == 0
    assert len(errors) == 3
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.namelist() == [MANIFEST_NAME]
        assert list(_manifest(zf)['status']) == ['failed', 'failed', 'failed']


def test_zip_row_too_long_for_qr(tmp_path, key_pair, fixed_codes):
    rows = [
        {'name': 'Jane Doe', 'content': 'Python 101', 'date': '2024-05-01'},
        {'name': 'John Roe', 'content': 'x' * 3000, 'date': '2024-05-01'},
    ]
    result = sign_rows(rows, key_pair.private_key, code_generator=fixed_codes(['AAAAA1', 'BBBBB2']))
    assert len(result.signed) == 2

    zip_path = str(tmp_path / 'out.zip')
    written, errors = write_batch_zip(result, zip_path)

    assert written == 1
    assert len(errors) == 1
    assert errors[0].startswith('Row 2: ')
    assert 'QR code' in errors[0]

    with zipfile.ZipFile(zip_path) as zf:
        assert 'Jane Doe-AAAAA1.png' in zf.namelist()
        manifest = _manifest(zf)
        assert list(manifest['row']) == ['1', '2']
        assert list(manifest['status']) == ['signed', 'failed']


def test_combined_pdf(tmp_path, batch, pdf_template):
    pdf_path = str(tmp_path / 'all.pdf')
    written, errors = write_batch_pdf(batch, pdf_path, pdf_template, qr_position='top-left')

    assert written == 2
    assert errors == ["Row 3: Missing value for 'content'"]

    doc = fitz.open(pdf_path)
    try:
        assert len(doc) == 2
        for page in doc:
            assert len(page.get_images()) == 1
            assert 'Code: AAAAA1' in page.get_text()
    finally:
        doc.close()


def test_combined_pdf_from_image_template(tmp_path, batch, png_template):
    pdf_path = str(tmp_path / 'all.pdf')
    written, _ = write_batch_pdf(batch, pdf_path, png_template)

    assert written == 2
    doc = fitz.open(pdf_path)
    try:
        assert len(doc) == 2
    finally:
        doc.close()


def test_combined_pdf_skips_failed_pages(tmp_path, key_pair, fixed_codes, pdf_template):
    rows = [
        {'name': 'Jane Doe', 'content': 'x' * 3000, 'date': '2024-05-01'},
        {'name': 'John Roe', 'content': 'Python 101', 'date': '2024-05-01'},
    ]
    result = sign_rows(rows, key_pair.private_key, code_generator=fixed_codes(['AAAAA1', 'BBBBB2']))

    pdf_path = str(tmp_path / 'all.pdf')
    written, errors = write_batch_pdf(result, pdf_path, pdf_template)

    assert written == 1
    assert len(errors) == 1 and errors[0].startswith('Row 1: ')
    doc = fitz.open(pdf_path)
    try:
        assert len(doc) == 1
        assert 'Code: BBBBB2' in doc[0].get_text()
    finally:
        doc.close()


def test_combined_pdf_nothing_rendered(tmp_path, batch):
    pdf_path = tmp_path / 'all.pdf'
    with pytest.raises(CertificateGenerationError) as err:
        write_batch_pdf(batch, str(pdf_path), str(tmp_path / 'missing.pdf'))
    assert 'No certificate could be rendered' in str(err.value)
    assert not pdf_path.exists()

# EOF
