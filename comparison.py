# comparison.py
"""Spec-vs-submittal comparison through Gemini.

Three entry points back the HTTP routes: `compare_rows` walks a whole spec
extraction (visually against submittal page images, or against extracted
submittal rows when no images are sent), `compare_single` scans submittal pages
in batches for one spec row and aggregates the findings, and `summarize`
tallies statuses for any list of comparisons or reviewed rows.
"""
import json
import logging
import time
import uuid

import gemini

logger = logging.getLogger(__name__)

MAX_VISUAL_PAGES = 10
MAX_PAGES_PER_BATCH = 30
ITEM_DELAY_SECONDS = 0.3
BATCH_DELAY_SECONDS = 0.2

CDE_STATUSES = ('comply', 'deviate', 'exception', 'pending')
CONFIDENCE_RANK = {'high': 0, 'medium': 1, 'low': 2}
STATUS_RANK = {'comply': 0, 'deviate': 1, 'exception': 2, 'not_found': 3, 'pending': 4}


def _requirement_block(spec_row, include_spec_number=False):
    lines = [
        f"- Field: {spec_row.get('field', '')}",
        f"- Required Value: {spec_row.get('value', '')}",
        f"- Unit: {spec_row.get('unit') or 'N/A'}",
        f"- Section: {spec_row.get('section') or 'General'}",
    ]
    if include_spec_number:
        lines.append(f"- Spec Number: {spec_row.get('specNumber') or 'N/A'}")
    return '\n'.join(lines)


def visual_comparison_prompt(spec_row):
    return f"""You are a construction document reviewer comparing a specification requirement against manufacturer submittal data.

SPECIFICATION REQUIREMENT TO VERIFY:
{_requirement_block(spec_row)}

TASK: Search through ALL the submittal pages provided and find where this specification value appears. Determine if the submittal meets the requirement.

FIELD TYPE RULES:
1. EXACT MATCH required for: Voltage, Phase, Model numbers, Part numbers, Dimensions, Connection sizes
2. HIGHER IS BETTER (exceed = comply): Ratings, Efficiency %, Warranty, Pressure ratings, Certifications
3. LOWER IS BETTER (below = comply): Noise level (dB), Power consumption (watts)
4. MATCH OR CLOSE: Flow rates, Capacity (+/-5% acceptable)

COMPLIANCE STATUS:
- "comply": Submittal value matches OR exceeds spec (where higher is better) OR is below spec (where lower is better)
- "deviate": Values differ slightly, may be acceptable with engineering review
- "exception": Values incompatible, missing, or wrong direction

RESPOND WITH STRICT JSON:
{{
  "status": "comply" | "deviate" | "exception",
  "matchConfidence": "high" | "medium" | "low" | "not_found",
  "foundOnPage": <page number where found, or null if not found>,
  "submittalValue": "<actual value found in submittal, or null>",
  "explanation": "Brief explanation (max 20 words). State values and result."
}}"""


def legacy_comparison_prompt(spec_row, submittal_rows):
    submittal_data = [
        {'id': r.get('id'), 'field': r.get('field'), 'value': r.get('value'),
         'unit': r.get('unit'), 'section': r.get('section')}
        for r in submittal_rows
    ]
    return f"""Compare this specification requirement against submittal data.

SPECIFICATION REQUIREMENT:
{_requirement_block(spec_row)}

SUBMITTAL DATA:
{json.dumps(submittal_data, indent=2)}

TASK: Find matching submittal data and determine compliance status.

RESPOND WITH STRICT JSON:
{{
  "submittalId": "matching submittal item id or null if not found",
  "status": "comply" | "deviate" | "exception",
  "matchConfidence": "high" | "medium" | "low" | "not_found",
  "explanation": "Brief explanation (max 15 words)"
}}"""


def batch_comparison_prompt(spec_row, page_count, first_page):
    last_page = first_page + page_count - 1
    return f"""You are a construction document reviewer comparing a specification requirement against manufacturer submittal data.

SPECIFICATION REQUIREMENT TO VERIFY:
{_requirement_block(spec_row, include_spec_number=True)}

TASK: Search the {page_count} submittal pages (pages {first_page}-{last_page}) for the value that DIRECTLY ANSWERS this specification requirement.

ACCURACY REQUIREMENTS:
1. ONLY return findings that DIRECTLY answer the specification requirement
2. The value MUST be for the EXACT equipment/item being specified
3. Skip other models, optional accessories, other sizes and loosely related data
4. If uncertain whether a value directly answers the spec, DO NOT INCLUDE IT

FIELD MATCHING RULES:
- EXACT MATCH: Voltage, Phase, Model numbers, Part numbers, Dimensions, Connection sizes
- HIGHER IS BETTER: Efficiency %, Warranty, Pressure ratings, Certifications
- LOWER IS BETTER: Noise level (dB), Power consumption
- TOLERANCE MATCH: Flow rates, Capacity (+/-5% acceptable)

COMPLIANCE STATUS:
- "comply": Submittal value definitively meets or exceeds the spec requirement
- "deviate": Values differ but may be acceptable with engineering review
- "exception": Values are incompatible, wrong, or missing

For EACH finding give a bounding box around the value, normalized 0-1 from the top-left corner.

RESPOND WITH STRICT JSON:
{{
  "findings": [
    {{
      "pageNumber": <page number where found>,
      "value": "<exact value found>",
      "unit": "<unit or null>",
      "confidence": "high" | "medium" | "low",
      "status": "comply" | "deviate" | "exception",
      "boundingBox": {{"x": <0-1>, "y": <0-1>, "width": <0-1>, "height": <0-1>}},
      "explanation": "Brief explanation (max 15 words)"
    }}
  ]
}}

If nothing DIRECTLY relevant is found, return {{"findings": []}}. At most 1-2 findings.
pageNumber must be in range {first_page}-{last_page}"""


def compare_spec_to_submittal_images(spec_row, submittal_pages):
    """Visual comparison of one spec row; never raises."""
    parts = [visual_comparison_prompt(spec_row)]
    parts.extend(gemini.image_part(p) for p in submittal_pages[:MAX_VISUAL_PAGES])
    try:
        parsed, _ = gemini.call_with_retry(
            lambda: gemini.generate_json(parts, gemini.COMPARISON_MODEL)[0],
            label=f"Compare '{spec_row.get('field')}'")
    except Exception as e:
        return {
            'specId': spec_row.get('id'),
            'status': 'pending',
            'matchConfidence': 'not_found',
            'explanation': 'Comparison failed after retries',
            'error': str(e) or 'Unknown error',
        }
    return {
        'specId': spec_row.get('id'),
        'status': parsed.get('status') or 'exception',
        'matchConfidence': parsed.get('matchConfidence') or 'low',
        'explanation': parsed.get('explanation') or 'Unable to determine',
        'foundOnPage': parsed.get('foundOnPage') or None,
        'submittalValue': parsed.get('submittalValue') or None,
    }


def compare_single_item(spec_row, submittal_rows):
    """Text comparison against extracted submittal rows; never raises."""
    prompt = legacy_comparison_prompt(spec_row, submittal_rows)
    try:
        parsed, _ = gemini.call_with_retry(
            lambda: gemini.generate_json([prompt], gemini.COMPARISON_MODEL)[0],
            label=f"Compare '{spec_row.get('field')}'")
    except Exception as e:
        return {
            'specId': spec_row.get('id'),
            'submittalId': None,
            'status': 'pending',
            'matchConfidence': 'not_found',
            'explanation': 'Comparison failed',
            'error': str(e) or 'Unknown error',
        }
    return {
        'specId': spec_row.get('id'),
        'submittalId': parsed.get('submittalId') or None,
        'status': parsed.get('status') or 'exception',
        'matchConfidence': parsed.get('matchConfidence') or 'low',
        'explanation': parsed.get('explanation') or 'Unable to determine',
    }


def _spec_side(spec_row):
    return {
        'id': f"cmp-{spec_row.get('id')}",
        'specField': spec_row.get('field', ''),
        'specValue': spec_row.get('value', ''),
        'specUnit': spec_row.get('unit'),
        'specSection': spec_row.get('section'),
        'specLocation': {'pageNumber': spec_row.get('pageNumber'), 'textSnippet': spec_row.get('rawText')},
        'isReviewed': False,
    }


def compare_rows(spec_rows, submittal_rows=None, submittal_pages=None):
    """Compares every spec row, visually when page images are supplied."""
    visual = bool(submittal_pages)
    submittal_rows = submittal_rows or []
    results = []
    errors = []

    logger.info("[compare] Mode: %s, %d spec items", 'VISUAL (images)' if visual else 'LEGACY (extracted data)',
                len(spec_rows))

    for i, spec_row in enumerate(spec_rows):
        logger.info("[compare] Item %d/%d: %s", i + 1, len(spec_rows), spec_row.get('field'))
        comparison = _spec_side(spec_row)

        if visual:
            result = compare_spec_to_submittal_images(spec_row, submittal_pages)
            comparison.update({
                'submittalField': spec_row.get('field'),
                'submittalValue': result.get('submittalValue'),
                'submittalUnit': spec_row.get('unit'),
                'submittalLocation': {'pageNumber': result['foundOnPage']} if result.get('foundOnPage') else None,
            })
        else:
            result = compare_single_item(spec_row, submittal_rows)
            match = next((r for r in submittal_rows if result['submittalId'] and r.get('id') == result['submittalId']),
                         None)
            comparison.update({
                'submittalField': match.get('field') if match else None,
                'submittalValue': match.get('value') if match else None,
                'submittalUnit': match.get('unit') if match else None,
                'submittalLocation': ({'pageNumber': match.get('pageNumber'), 'textSnippet': match.get('rawText')}
                                      if match else None),
            })

        if result.get('error'):
            errors.append(f"Item {i + 1} ({spec_row.get('field')}): {result['error']}")

        comparison.update({
            'status': result['status'],
            'aiExplanation': result['explanation'],
            'matchConfidence': result['matchConfidence'],
        })
        results.append(comparison)

        if i < len(spec_rows) - 1:
            time.sleep(ITEM_DELAY_SECONDS)

    summary = summarize(results)
    logger.info("[compare] Complete. %d comply, %d deviate, %d exception",
                summary['comply'], summary['deviate'], summary['exception'])
    return {
        'comparisons': results,
        'summary': summary,
        'comparisonMode': 'visual' if visual else 'legacy',
        'errors': errors or None,
    }


def compare_spec_to_batch(spec_row, pages, batch_start_page):
    """Findings for one spec row within one batch of submittal pages.

    Returns {"findings": [...]} and an "error" key when retries ran out.
    Findings outside the batch's page range are dropped.
    """
    page_count = len(pages)
    parts = [
        batch_comparison_prompt(spec_row, page_count, batch_start_page),
        "Page numbers in order: " + ' '.join(f"[Page {batch_start_page + i}]" for i in range(page_count)),
    ]
    parts.extend(gemini.image_part(p) for p in pages)

    def attempt():
        try:
            return gemini.generate_json(parts, gemini.COMPARISON_MODEL)[0]
        except gemini.GeminiError as e:
            if 'No valid JSON' in str(e):
                logger.error("[compare-single] No valid JSON found in response")
                return {'findings': []}
            raise

    try:
        parsed, _ = gemini.call_with_retry(attempt, exponential_on_rate_limit=True, label='[compare-single] batch')
    except Exception as e:
        return {'findings': [], 'error': str(e) or 'Unknown error'}

    findings = []
    for f in parsed.get('findings') or []:
        page_number = f.get('pageNumber')
        if not page_number or not f.get('value'):
            continue
        if not isinstance(page_number, int) or not batch_start_page <= page_number < batch_start_page + page_count:
            continue
        findings.append({
            'pageNumber': page_number,
            'value': f['value'],
            'unit': f.get('unit') or None,
            'confidence': f.get('confidence') or 'medium',
            'boundingBox': f.get('boundingBox') or None,
            'status': f.get('status') or 'deviate',
            'explanation': f.get('explanation') or 'Found in submittal',
        })
    return {'findings': findings}


def new_finding_id():
    return f"finding_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def rank_findings(findings):
    """Best first: confidence, then status, then earliest page."""
    return sorted(findings, key=lambda f: (CONFIDENCE_RANK.get(f.get('confidence'), 3),
                                           STATUS_RANK.get(f.get('status'), 5),
                                           f.get('pageNumber') or 0))


def select_best_match(findings):
    if not findings:
        return None
    return rank_findings(findings)[0]


def determine_overall_status(findings):
    statuses = {f.get('status') for f in findings}
    if 'comply' in statuses:
        return 'comply'
    if 'deviate' in statuses:
        return 'deviate'
    return 'exception'


def determine_overall_confidence(findings):
    if not findings:
        return 'not_found'
    levels = {f.get('confidence') for f in findings}
    if 'high' in levels:
        return 'high'
    if 'medium' in levels:
        return 'medium'
    return 'low'


def describe_findings(findings, best):
    if not findings:
        return "No matching data found in submittal"
    if len(findings) == 1:
        return best.get('explanation') or "Found in submittal"
    return f"{len(findings)} occurrences found. Best match: {best.get('explanation') or 'See details'}"


def compare_single(spec_row, submittal_pages, scan_all_pages=True, batch_info=None):
    """Scans submittal pages batch by batch for one spec row."""
    if batch_info:
        logger.info("[compare-single] Client batch %d/%d for: %s (pages %s-%s of %s)",
                    batch_info.get('batchIndex', 0) + 1, batch_info.get('totalBatches'), spec_row.get('field'),
                    batch_info.get('startPage'), batch_info.get('endPage'), batch_info.get('totalPages'))
    else:
        logger.info("[compare-single] Comparing: %s = %s (%d pages, scanAllPages=%s)",
                    spec_row.get('field'), spec_row.get('value'), len(submittal_pages), scan_all_pages)

    pages_to_check = len(submittal_pages) if scan_all_pages else min(MAX_PAGES_PER_BATCH, len(submittal_pages))
    total_batches = -(-pages_to_check // MAX_PAGES_PER_BATCH)
    findings = []
    errors = []

    for batch_index in range(total_batches):
        start = batch_index * MAX_PAGES_PER_BATCH
        batch = submittal_pages[start:min(start + MAX_PAGES_PER_BATCH, pages_to_check)]
        batch_start_page = batch[0].get('pageNumber') or start + 1

        result = compare_spec_to_batch(spec_row, batch, batch_start_page)
        if result.get('error'):
            errors.append(f"Batch {batch_index + 1}: {result['error']}")
        for finding in result['findings']:
            findings.append(dict(finding, id=new_finding_id()))

        if batch_index < total_batches - 1:
            time.sleep(BATCH_DELAY_SECONDS)

    logger.info("[compare-single] Found %d total findings", len(findings))
    best = select_best_match(findings)
    return {
        'rowId': spec_row.get('id'),
        'findings': findings,
        'totalFindings': len(findings),
        'status': determine_overall_status(findings),
        'matchConfidence': determine_overall_confidence(findings),
        'explanation': describe_findings(findings, best),
        'submittalValue': best['value'] if best else None,
        'submittalUnit': best.get('unit') if best else None,
        'submittalLocation': ({'pageNumber': best['pageNumber'], 'boundingBox': best.get('boundingBox')}
                              if best else None),
        'batchesProcessed': total_batches,
        'pagesScanned': pages_to_check,
        'errors': errors or None,
    }


def summarize(items):
    """Status tallies for comparisons (`status`) or reviewed rows (`cdeStatus`).

    Rows with no status yet count as pending; AI searches that came back empty
    count as notFound, so the five status buckets always add up to totalItems.
    """
    summary = {'totalItems': len(items), 'comply': 0, 'deviate': 0, 'exception': 0, 'pending': 0,
               'notFound': 0, 'reviewed': 0}
    for item in items:
        status = item.get('status', item.get('cdeStatus')) or 'pending'
        if status == 'not_found':
            summary['notFound'] += 1
        elif status in CDE_STATUSES:
            summary[status] += 1
        else:
            summary['pending'] += 1
        if item.get('isReviewed'):
            summary['reviewed'] += 1
    return summary
