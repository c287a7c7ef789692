"""Annotated report PDF."""

import fitz

import reports
import utils


def _rows():
    return [
        {"id": "1", "field": "Voltage", "value": "460V/3/60", "pageNumber": 1, "cdeStatus": "comply",
         "isReviewed": True, "specNumber": "26 05 00 1.2.A",
         "location": {"pageNumber": 1, "boundingBox": {"x": 0.1, "y": 0.1, "width": 0.5, "height": 0.05}},
         "submittalLocation": {"pageNumber": 1, "boundingBox": {"x": 0.2, "y": 0.3, "width": 0.2, "height": 0.04}}},
        {"id": "2", "field": "Warranty", "value": "1 year", "pageNumber": 2, "cdeStatus": "not_found",
         "cdeComment": "No matching data found in submittal"},
        {"id": "3", "field": "Weight", "value": "50 lb", "pageNumber": 2},
    ]


def test_counts():
    counts = reports.report_counts(_rows())
    # the not_found row is drawn with the pending badge and counted there too
    assert counts == {"total": 3, "comply": 1, "deviate": 0, "exception": 0, "pending": 2, "reviewed": 1}


def test_status_buckets_add_up_to_total():
    rows = [{"cdeStatus": s} for s in ("comply", "deviate", "exception", "pending", "not_found", None, "maybe")]
    rows.append({})
    counts = reports.report_counts(rows)
    assert counts["comply"] + counts["deviate"] + counts["exception"] + counts["pending"] == counts["total"] == 8
    assert counts["pending"] == 5


def test_unknown_status_draws_as_pending():
    assert reports.status_config("not_found") is reports.STATUS_CONFIG["pending"]


def test_generate_pdf_layout(sample_pdf):
    pages = utils.render_pdf_pages(sample_pdf, scale=1)
    data = reports.generate_cde_pdf(pages, pages[:1], _rows(), project_name="Tower B")

    doc = fitz.open(stream=data, filetype="pdf")
    try:
        # title, spec header, 2 spec pages, submittal header, 1 submittal page
        assert doc.page_count == 6
        assert "CDE Report" in doc[0].get_text()
        assert "Tower B" in doc[0].get_text()
        assert "PART 1: SPECIFICATION PAGES" in doc[1].get_text()
        assert "Specification - Page 1" in doc[2].get_text()
        assert "PART 2: SUBMITTAL PAGES" in doc[4].get_text()
    finally:
        doc.close()


def test_reviewed_only(sample_pdf):
    pages = utils.render_pdf_pages(sample_pdf, scale=1)
    data = reports.generate_cde_pdf(pages, [], _rows(), include_unreviewed=False)
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        # row 3 has neither a status nor a review, both kept rows sit on pages 1 and 2
        assert doc.page_count == 4
    finally:
        doc.close()


def test_truncate():
    assert reports.truncate("short", 10) == "short"
    assert reports.truncate("a" * 20, 10) == "aaaaaaa..."
    assert reports.truncate(None, 5) == ""
