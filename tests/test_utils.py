"""Upload validation and page rendering."""

import base64
import io

import pytest
from PIL import Image

import utils


def test_validate_file():
    assert utils.validate_file("spec.PDF", 1024) == (True, None)
    ok, error = utils.validate_file("notes.docx", 10)
    assert not ok and error.startswith("Unsupported file type: docx")
    ok, error = utils.validate_file("big.pdf", utils.MAX_FILE_SIZE + 1)
    assert not ok and "50MB" in error


def test_render_pdf_pages(sample_pdf):
    pages = utils.render_pdf_pages(sample_pdf, scale=1)
    assert [p["pageNumber"] for p in pages] == [1, 2]
    assert pages[0]["mimeType"] == "image/png"
    assert (pages[0]["width"], pages[0]["height"]) == (612, 792)
    assert base64.b64decode(pages[0]["base64"]).startswith(b"\x89PNG")
    assert utils.count_pdf_pages(sample_pdf) == 2


def test_image_upload_becomes_single_page():
    buf = io.BytesIO()
    Image.new("RGB", (40, 30), "white").save(buf, format="JPEG")
    pages = utils.extract_pages("photo.jpg", buf.getvalue())
    assert len(pages) == 1
    assert pages[0]["mimeType"] == "image/jpeg"
    assert (pages[0]["width"], pages[0]["height"]) == (40, 30)


def test_unsupported_extension():
    with pytest.raises(ValueError):
        utils.extract_pages("archive.zip", b"PK")


def test_payload_size():
    assert utils.payload_size({"base64": "abcd"}) == 4
    assert utils.payload_size({}) == 0
