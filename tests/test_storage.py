"""Blob storage under the configured blob folder."""

import base64
import os
import re

import pytest

import storage


class TestNaming:

    def test_generate_filename_sanitizes(self):
        name = storage.generate_filename("Spec Section 23 (rev 2).pdf", "proj-1")
        assert re.fullmatch(r"proj-1/\d+-Spec_Section_23__rev_2_\.pdf", name)

    def test_generate_filename_without_project(self):
        assert re.fullmatch(r"\d+-schedule\.pdf", storage.generate_filename("schedule.pdf"))

    def test_folder_for_type(self):
        assert storage.folder_for_type("submittal") == "pdfs/submittals"
        assert storage.folder_for_type("specification") == "pdfs/specifications"
        assert storage.folder_for_type(None) == "pdfs"


class TestPdfBlobs:

    def test_upload_and_metadata(self, app):
        blob = storage.upload_pdf(b"%PDF-1.4 test", "fans.pdf", "specification", "p1")
        assert blob["pathname"].startswith("pdfs/specifications/p1/")
        assert blob["url"] == f"/blobs/{blob['pathname']}"
        assert blob["size"] == 13

        meta = storage.get_pdf_metadata(blob["url"])
        assert meta["size"] == 13
        assert meta["contentType"] == "application/pdf"
        assert os.path.exists(os.path.join(app.config["BLOB_FOLDER"], blob["pathname"]))

    def test_upload_from_base64_strips_data_url(self, app):
        encoded = "data:application/pdf;base64," + base64.b64encode(b"%PDF-data").decode()
        blob = storage.upload_pdf_from_base64(encoded, "sub.pdf", "submittal")
        assert storage.fetch_pdf_content(blob["url"]) == b"%PDF-data"
        assert storage.fetch_pdf_as_base64(blob["url"]) == base64.b64encode(b"%PDF-data").decode()

    def test_list_filters_by_type_and_project(self, app):
        storage.upload_pdf(b"a", "a.pdf", "specification", "p1")
        storage.upload_pdf(b"b", "b.pdf", "submittal", "p1")
        storage.upload_pdf(b"c", "c.pdf", "submittal", "p2")

        assert len(storage.list_pdfs()) == 3
        assert len(storage.list_pdfs("submittal")) == 2
        assert [b["pathname"].split("/")[2] for b in storage.list_pdfs("submittal", "p2")] == ["p2"]
        assert storage.list_pdfs("schedule") == []

    def test_delete(self, app):
        first = storage.upload_pdf(b"a", "a.pdf", "schedule")
        second = storage.upload_pdf(b"b", "b.pdf", "schedule")
        storage.delete_pdfs([first["url"], second["url"]])
        assert storage.get_pdf_metadata(first["url"]) is None
        with pytest.raises(storage.BlobNotFound):
            storage.delete_pdf(first["url"])

    def test_delete_many_attempts_every_url(self, app):
        first = storage.upload_pdf(b"a", "a.pdf", "submittal")
        second = storage.upload_pdf(b"b", "b.pdf", "submittal")
        storage.delete_pdf(first["url"])
        with pytest.raises(storage.BlobNotFound):
            storage.delete_pdfs([first["url"], second["url"]])
        assert storage.get_pdf_metadata(second["url"]) is None

    def test_path_traversal_rejected(self, app):
        with pytest.raises(ValueError):
            storage.put("../outside.pdf", b"x", "application/pdf")


class TestReportBlobs:

    def test_upload_list_delete(self, app):
        blob = storage.upload_report(b"%PDF report", "cde-report.pdf", "application/pdf", "p1")
        assert blob["pathname"].startswith("reports/p1/")
        assert [r["url"] for r in storage.list_reports("p1")] == [blob["url"]]
        storage.delete_report(blob["url"])
        assert storage.list_reports() == []
