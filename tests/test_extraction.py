"""Page extraction: row mapping, retries, dedup and the streaming pipeline."""

import json
import threading

import gemini
import extraction
from conftest import DETECT, EXTRACT


def _page_reply(*rows, spec_number=None):
    return {"pageContent": {"hasData": True, "specNumber": spec_number}, "rows": list(rows)}


class TestParsePageRows:

    def test_fills_defaults(self):
        rows = extraction.parse_page_rows(_page_reply(
            {"field": "Warranty", "value": "Manufacturer shall provide 1 year warranty",
             "confidence": "certain", "boundingBox": {"x": 0.1, "y": "bad"}},
            spec_number="23 34 00"), 3)
        assert len(rows) == 1
        row = rows[0]
        assert row["section"] == "General"
        assert row["confidence"] == "medium"
        assert row["specNumber"] == "23 34 00"
        assert row["pageNumber"] == 3
        assert row["id"].startswith("page3-row0-")
        assert row["location"]["boundingBox"] == {"x": 0.1, "y": 0, "width": 1, "height": 0.1}
        assert row["location"]["textSnippet"] == "Manufacturer shall provide 1 year warranty"

    def test_raw_text_used_as_snippet(self):
        rows = extraction.parse_page_rows(_page_reply(
            {"field": "Voltage", "value": "120V", "rawText": "120 volts, single phase", "confidence": "high"}), 1)
        assert rows[0]["location"]["textSnippet"] == "120 volts, single phase"
        assert "boundingBox" not in rows[0]["location"]

    def test_page_without_data(self):
        assert extraction.parse_page_rows({"pageContent": {"hasData": False}, "rows": [{"field": "x"}]}, 1) == []
        assert extraction.parse_page_rows({}, 1) == []


class TestDeduplicate:

    def test_keeps_highest_confidence_case_insensitively(self):
        rows = [
            {"id": "a", "field": "Voltage", "value": "120V", "unit": None, "confidence": "low"},
            {"id": "b", "field": "voltage", "value": "120v", "unit": "", "confidence": "high"},
            {"id": "c", "field": "VOLTAGE", "value": "120V", "unit": None, "confidence": "medium"},
            {"id": "d", "field": "Phase", "value": "1", "unit": None, "confidence": "low"},
        ]
        kept = extraction.deduplicate_rows(rows)
        assert [r["id"] for r in kept] == ["b", "d"]

    def test_unit_is_part_of_key(self):
        rows = [
            {"id": "a", "field": "Flow", "value": "2000", "unit": "CFM", "confidence": "low"},
            {"id": "b", "field": "Flow", "value": "2000", "unit": "GPM", "confidence": "low"},
        ]
        assert len(extraction.deduplicate_rows(rows)) == 2


class TestExtractPage:

    def test_failed_page_after_retries(self, fake_gemini, page_factory):
        fake_gemini.on(EXTRACT, gemini.GeminiError("No valid JSON found in AI response"))
        events = []
        result = extraction.extract_page_with_retry(page_factory(2), "specification", 5, events.append)

        assert result["status"] == "failed"
        assert result["rows"] == []
        assert result["retryCount"] == gemini.MAX_RETRIES + 1
        assert fake_gemini.count(EXTRACT) == gemini.MAX_RETRIES + 1
        assert events[-1]["type"] == "page_error"
        assert any("Retrying page 2" in e.get("message", "") for e in events)

    def test_recovers_on_retry(self, fake_gemini, page_factory):
        fake_gemini.on(EXTRACT, RuntimeError("503"), _page_reply({"field": "Phase", "value": "3", "confidence": "high"}))
        result = extraction.extract_page_with_retry(page_factory(1), "schedule", 1)
        assert result["status"] == "success"
        assert result["retryCount"] == 1
        assert result["rows"][0]["field"] == "Phase"

    def test_detection_falls_back_to_unknown(self, fake_gemini, page_factory):
        fake_gemini.on(DETECT, "Sorry, I can't tell.")
        assert extraction.detect_document_type(page_factory()) == {
            "detectedType": "unknown", "confidence": "low", "reason": "Could not parse response"}


class TestExtractDocument:

    def test_concurrent_extraction_keeps_page_order(self, fake_gemini, page_factory):
        fake_gemini.on("Page: 3 of", gemini.GeminiError("blocked"))
        fake_gemini.on(EXTRACT, _page_reply({"field": "Fan", "value": "2000 CFM", "confidence": "high"}))
        pages = [page_factory(n) for n in range(1, 8)]
        progress = []

        result = extraction.extract_document(pages, "specification", progress.append)

        assert [r["pageNumber"] for r in result["pageResults"]] == list(range(1, 8))
        assert result["metadata"]["failedPages"] == 1
        assert result["metadata"]["successfulPages"] == 6
        # identical rows across pages collapse to one
        assert result["metadata"]["totalRows"] == 1
        assert progress[-1]["status"] == "completed"
        assert all(len([s for s in p["pageStatuses"] if s["status"] == "processing"])
                   <= extraction.MAX_CONCURRENT_REQUESTS for p in progress)

    def test_retry_failed_pages_only_reruns_failures(self, fake_gemini, page_factory):
        fake_gemini.on(EXTRACT, _page_reply({"field": "Fan", "value": "2000 CFM", "confidence": "high"}))
        pages = [page_factory(1), page_factory(2)]
        earlier = [{"pageNumber": 1, "status": "success", "rows": [], "retryCount": 0},
                   {"pageNumber": 2, "status": "failed", "rows": [], "retryCount": 4}]
        rerun = extraction.retry_failed_pages(earlier, pages, "specification")
        assert [r["pageNumber"] for r in rerun] == [2]
        assert fake_gemini.count(EXTRACT) == 1

    def test_verify_low_confidence_rows(self, fake_gemini, page_factory):
        fake_gemini.on(EXTRACT, _page_reply({"field": "fan performance", "value": "2100 CFM", "confidence": "high"}))
        rows = [
            {"id": "1", "field": "Fan Performance", "value": "21OO CFM", "confidence": "low", "pageNumber": 1},
            {"id": "2", "field": "Warranty", "value": "1 year", "confidence": "high", "pageNumber": 2},
        ]
        verified = extraction.verify_low_confidence_rows(rows, [page_factory(1), page_factory(2)])
        assert verified[0]["value"] == "2100 CFM"
        assert verified[0]["confidence"] == "high"
        assert verified[1] == rows[1]
        assert rows[0]["value"] == "21OO CFM"


class TestStreamExtraction:

    def test_event_sequence(self, fake_gemini, page_factory):
        fake_gemini.on(DETECT, {"detectedType": "schedule", "confidence": "high", "reason": "Equipment table"})
        fake_gemini.on(EXTRACT, _page_reply({"field": "AHU-1", "value": "5000 CFM", "confidence": "high"}))

        events = list(extraction.stream_extraction([page_factory(2), page_factory(1)]))
        types = [e["type"] for e in events]

        assert types.index("detection") < types.index("page_start")
        assert types[-1] == "complete"
        starts = [e["pageNumber"] for e in events if e["type"] == "page_start"]
        assert starts == [1, 2]
        complete = events[-1]
        assert complete["metadata"]["documentType"] == "schedule"
        assert complete["metadata"]["detectedType"]["reason"] == "Equipment table"
        assert complete["totalRows"] == 1

    def test_provided_type_skips_detection(self, fake_gemini, page_factory):
        fake_gemini.on(EXTRACT, {"pageContent": {"hasData": False}, "rows": []})
        events = list(extraction.stream_extraction([page_factory(1)], "specification", auto_detect=False))
        assert "detection" not in [e["type"] for e in events]
        assert fake_gemini.count(DETECT) == 0
        page_complete = [e for e in events if e["type"] == "page_complete"]
        assert page_complete[0]["rowCount"] == 0

    def test_fatal_error_ends_stream_with_log(self, fake_gemini):
        events = list(extraction.stream_extraction([], "specification", auto_detect=True))
        assert events[-1]["type"] == "log"
        assert events[-1]["level"] == "error"
        assert events[-1]["message"].startswith("Fatal error")

    def test_page_events_reach_consumer_while_model_call_runs(self, monkeypatch, page_factory):
        sent_seen = threading.Event()
        waited = []

        def slow_model(parts, model_name=None):
            # blocks until the consumer has read the "Sending page" log
            waited.append(sent_seen.wait(timeout=5))
            return json.dumps(_page_reply({"field": "Voltage", "value": "120V", "confidence": "high"}))

        monkeypatch.setattr(gemini, "generate_text", slow_model)
        events = []
        for event in extraction.stream_extraction([page_factory(1)], "specification", auto_detect=False):
            events.append(event)
            if event.get("message") == "Sending page 1 to AI for analysis...":
                sent_seen.set()

        assert waited == [True]
        assert events[-1]["type"] == "complete"
        assert events[-1]["totalRows"] == 1
