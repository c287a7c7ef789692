"""Spec-vs-submittal comparison and summary tallies."""

import random

import gemini
import comparison
from conftest import BATCH, LEGACY, VISUAL

SPEC_ROW = {"id": "r1", "field": "Voltage", "value": "460V/3-phase/60Hz", "unit": None,
            "section": "Electrical", "pageNumber": 4, "rawText": "460 volt, 3 phase"}


def _finding(page, status="comply", confidence="high", value="460V"):
    return {"pageNumber": page, "value": value, "confidence": confidence, "status": status,
            "explanation": f"{value} on page {page}"}


class TestSummary:

    def test_counts_add_up_to_total(self):
        statuses = ["comply", "deviate", "exception", "pending", "not_found", None, "bogus"]
        rng = random.Random(7)
        items = [{"status": rng.choice(statuses), "isReviewed": rng.random() < 0.3} for _ in range(200)]
        summary = comparison.summarize(items)
        buckets = summary["comply"] + summary["deviate"] + summary["exception"] + summary["pending"] + summary["notFound"]
        assert buckets == summary["totalItems"] == 200
        assert summary["reviewed"] == sum(1 for i in items if i["isReviewed"])

    def test_rows_without_status_are_pending(self):
        rows = [{"cdeStatus": "comply", "isReviewed": True}, {"cdeStatus": None}, {}]
        assert comparison.summarize(rows) == {"totalItems": 3, "comply": 1, "deviate": 0, "exception": 0,
                                              "pending": 2, "notFound": 0, "reviewed": 1}

    def test_empty(self):
        assert comparison.summarize([])["totalItems"] == 0


class TestAggregation:

    def test_best_match_prefers_confidence_then_status(self):
        findings = [_finding(9, "deviate", "high"), _finding(2, "exception", "medium"), _finding(5, "comply", "high")]
        assert comparison.select_best_match(findings)["pageNumber"] == 5
        assert comparison.select_best_match([]) is None

    def test_overall_status_and_confidence(self):
        assert comparison.determine_overall_status([_finding(1, "exception"), _finding(2, "deviate")]) == "deviate"
        assert comparison.determine_overall_status([]) == "exception"
        assert comparison.determine_overall_confidence([_finding(1, confidence="low")]) == "low"
        assert comparison.determine_overall_confidence([]) == "not_found"

    def test_explanations(self):
        one = [_finding(1)]
        assert comparison.describe_findings([], None) == "No matching data found in submittal"
        assert comparison.describe_findings(one, one[0]) == "460V on page 1"
        two = [_finding(1), _finding(2)]
        assert comparison.describe_findings(two, two[0]).startswith("2 occurrences found. Best match:")


class TestCompareSingle:

    def test_scans_all_pages_in_batches(self, fake_gemini, page_factory, no_sleep):
        fake_gemini.on("pages 1-30", {"findings": [_finding(12, "deviate", "medium", "480V"),
                                                   _finding(45, "comply", "high")]})
        fake_gemini.on("pages 31-35", {"findings": [_finding(33, "comply", "high")]})
        pages = [page_factory(n) for n in range(1, 36)]

        result = comparison.compare_single(SPEC_ROW, pages)

        assert result["batchesProcessed"] == 2
        assert result["pagesScanned"] == 35
        # page 45 is outside the first batch and is dropped
        assert sorted(f["pageNumber"] for f in result["findings"]) == [12, 33]
        assert result["status"] == "comply"
        assert result["matchConfidence"] == "high"
        assert result["submittalLocation"]["pageNumber"] == 33
        assert result["submittalValue"] == "460V"
        assert all(f["id"].startswith("finding_") for f in result["findings"])
        assert no_sleep == [comparison.BATCH_DELAY_SECONDS]

    def test_client_batch_mode_checks_one_batch(self, fake_gemini, page_factory):
        fake_gemini.on(BATCH, {"findings": []})
        pages = [page_factory(n) for n in range(1, 41)]
        result = comparison.compare_single(SPEC_ROW, pages, scan_all_pages=False,
                                           batch_info={"batchIndex": 0, "totalBatches": 1, "startPage": 1,
                                                       "endPage": 40, "totalPages": 40})
        assert result["batchesProcessed"] == 1
        assert result["pagesScanned"] == comparison.MAX_PAGES_PER_BATCH
        assert result["explanation"] == "No matching data found in submittal"
        assert result["submittalLocation"] is None

    def test_unparseable_reply_is_an_empty_batch(self, fake_gemini, page_factory):
        fake_gemini.on(BATCH, "The value is not listed.")
        result = comparison.compare_spec_to_batch(SPEC_ROW, [page_factory(1)], 1)
        assert result == {"findings": []}
        assert fake_gemini.count(BATCH) == 1

    def test_rate_limit_backs_off_exponentially(self, fake_gemini, page_factory, no_sleep):
        fake_gemini.on(BATCH, RuntimeError("429 Resource exhausted"))
        result = comparison.compare_spec_to_batch(SPEC_ROW, [page_factory(1)], 1)
        assert result["findings"] == []
        assert "429" in result["error"]
        assert no_sleep == [1.0, 2.0, 4.0]


class TestCompareRows:

    def test_visual_mode_falls_back_to_pending(self, fake_gemini, page_factory, no_sleep):
        fake_gemini.on(VISUAL, gemini.GeminiError("blocked"))
        result = comparison.compare_rows([SPEC_ROW, dict(SPEC_ROW, id="r2")], submittal_pages=[page_factory(1)])

        assert result["comparisonMode"] == "visual"
        first = result["comparisons"][0]
        assert first["id"] == "cmp-r1"
        assert first["status"] == "pending"
        assert first["matchConfidence"] == "not_found"
        assert first["aiExplanation"] == "Comparison failed after retries"
        assert len(result["errors"]) == 2
        assert result["summary"]["pending"] == 2
        assert comparison.ITEM_DELAY_SECONDS in no_sleep

    def test_visual_mode_records_found_page(self, fake_gemini, page_factory):
        fake_gemini.on(VISUAL, {"status": "comply", "matchConfidence": "high", "foundOnPage": 2,
                                "submittalValue": "460V", "explanation": "Matches"})
        result = comparison.compare_rows([SPEC_ROW], submittal_pages=[page_factory(1), page_factory(2)])
        cmp = result["comparisons"][0]
        assert cmp["submittalLocation"] == {"pageNumber": 2}
        assert cmp["specLocation"] == {"pageNumber": 4, "textSnippet": "460 volt, 3 phase"}
        assert result["errors"] is None

    def test_legacy_mode_links_submittal_row(self, fake_gemini):
        fake_gemini.on(LEGACY, {"submittalId": "s2", "status": "deviate", "matchConfidence": "medium",
                                "explanation": "480V offered"})
        submittal_rows = [{"id": "s1", "field": "Weight", "value": "50 lb", "pageNumber": 1},
                          {"id": "s2", "field": "Voltage", "value": "480V", "pageNumber": 3, "rawText": "480/3/60"}]
        result = comparison.compare_rows([SPEC_ROW], submittal_rows=submittal_rows)
        cmp = result["comparisons"][0]
        assert result["comparisonMode"] == "legacy"
        assert cmp["submittalValue"] == "480V"
        assert cmp["submittalLocation"] == {"pageNumber": 3, "textSnippet": "480/3/60"}
        assert cmp["status"] == "deviate"
