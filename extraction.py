# extraction.py
"""Page-by-page requirement extraction from spec, schedule and submittal pages.

Each page image goes to Gemini with an extraction prompt; the first JSON object
in the reply is mapped onto row dicts. A page that keeps failing is reported
as `failed` with no rows rather than failing the whole document.
"""
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import gemini

logger = logging.getLogger(__name__)

MAX_CONCURRENT_REQUESTS = 5
CONFIDENCE_ORDER = {'high': 3, 'medium': 2, 'low': 1}
DOCUMENT_TYPES = ('specification', 'schedule', 'submittal')

DETECTION_PROMPT = """Analyze this document page and determine what type of construction/engineering document it is.

DOCUMENT TYPES:
1. "specification" - A written specification document with paragraphs describing requirements
2. "schedule" - An equipment schedule, typically a table listing equipment with columns
3. "submittal" - A manufacturer's product data sheet showing product specifications

RESPOND WITH STRICT JSON:
{
  "detectedType": "specification" | "schedule" | "submittal" | "unknown",
  "confidence": "high" | "medium" | "low",
  "reason": "Brief explanation"
}

Key indicators:
- Specification: Paragraph text, section numbers, "shall" language
- Schedule: Tabular format, equipment tags (AHU-1, P-1), columns for specs
- Submittal: Product photos, manufacturer logo, model numbers prominently displayed"""


def create_extraction_prompt(document_type, page_number, total_pages):
    return f"""You are an expert construction document analyzer extracting requirements for a Comply/Deviate/Exception (CDE) review process.

DOCUMENT INFO:
- Type: {document_type}
- Page: {page_number} of {total_pages}

YOUR GOAL: Extract COMPLETE, MEANINGFUL REQUIREMENTS that a reviewer can mark as Comply, Deviate, or Exception when comparing to submittals.

Each extracted item should be a COMPLETE requirement that stands alone. Consolidate related information into single items.

Examples of GOOD extractions:
- "Electrical Requirements" -> "120V/1-phase/60Hz, 15 amp dedicated circuit required"
- "Warranty" -> "Manufacturer shall provide minimum 1 year parts and labor warranty"
- "Fan Performance" -> "Minimum 2000 CFM at 0.5 in. w.g. static pressure"

Examples of BAD extractions (too fragmented):
- "Voltage" -> "120"
- "1.2" -> "SUBMITTALS" (a section header, not a requirement)

EXTRACTION RULES:
1. Extract COMPLETE requirements - each row should be something reviewable
2. CONSOLIDATE related specs (electrical together, dimensions together, etc.)
3. Include the FULL requirement text, not just values
4. Include the full specification reference, e.g. "23 70 00 1.4.B.1", never just the section number
5. Include warranty requirements, notes, submittal requirements, performance specs, etc.
6. For schedules/tables, each equipment row is one item; use the schedule title as the section

BOUNDING BOX: for each item give NORMALIZED coordinates (0.0 to 1.0) of the whole requirement text:
x = left edge, y = top edge, width and height as fractions of the page.

OUTPUT FORMAT (strict JSON):
{{
  "pageContent": {{
    "hasData": true/false,
    "specNumber": "XX XX XX or null if not visible",
    "specTitle": "Section title if visible"
  }},
  "rows": [
    {{
      "field": "Requirement name/category",
      "value": "Complete requirement text including all relevant details",
      "unit": "unit if applicable, null otherwise",
      "section": "Category (Electrical, Mechanical, Submittal, Warranty, Performance, etc.)",
      "specNumber": "Full specification reference or null",
      "confidence": "high" | "medium" | "low",
      "boundingBox": {{"x": 0.0-1.0, "y": 0.0-1.0, "width": 0.0-1.0, "height": 0.0-1.0}},
      "rawText": "Original text verbatim if significantly different from parsed value"
    }}
  ]
}}

CONFIDENCE LEVELS:
- "high": Text is clear, requirement is unambiguous
- "medium": Slightly unclear but interpretation is reasonable
- "low": Text quality poor or requirement meaning uncertain

IMPORTANT:
- If a page has no extractable requirements (blank, cover page, TOC), return {{"pageContent": {{"hasData": false}}, "rows": []}}
- DO NOT extract page headers/footers as requirements unless they contain spec data
- Prefer FEWER, MORE COMPLETE items over MANY FRAGMENTED items"""


def _now_ms():
    return int(time.time() * 1000)


def _number(value, default):
    # bool is an int subclass but never a coordinate
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return default


def detect_document_type(page):
    """Classifies a page. Never raises; failures come back as unknown/low."""
    try:
        parsed, _ = gemini.generate_json([DETECTION_PROMPT, gemini.image_part(page)], gemini.EXTRACTION_MODEL)
    except gemini.GeminiError:
        return {'detectedType': 'unknown', 'confidence': 'low', 'reason': 'Could not parse response'}
    except Exception as e:
        logger.error("Document type detection error: %s", e)
        return {'detectedType': 'unknown', 'confidence': 'low', 'reason': 'Detection failed'}
    return {
        'detectedType': parsed.get('detectedType') or 'unknown',
        'confidence': parsed.get('confidence') or 'low',
        'reason': parsed.get('reason') or 'Unknown',
    }


def parse_page_rows(parsed, page_number):
    """Maps the model's page JSON onto row dicts."""
    page_content = parsed.get('pageContent') or {}
    raw_rows = parsed.get('rows') or []
    if page_content.get('hasData') is False or not raw_rows:
        return []

    page_spec_number = page_content.get('specNumber') or None
    stamp = _now_ms()
    rows = []
    for index, raw in enumerate(raw_rows):
        value = raw.get('value') or ''
        snippet = raw.get('rawText') or value[:100]
        location = {'pageNumber': page_number, 'textSnippet': snippet}
        box = raw.get('boundingBox')
        if isinstance(box, dict):
            location['boundingBox'] = {
                'x': _number(box.get('x'), 0),
                'y': _number(box.get('y'), 0),
                'width': _number(box.get('width'), 1),
                'height': _number(box.get('height'), 0.1),
            }
        rows.append({
            'id': f"page{page_number}-row{index}-{stamp}",
            'field': raw.get('field') or '',
            'value': value,
            'unit': raw.get('unit') or None,
            'section': raw.get('section') or 'General',
            'specNumber': raw.get('specNumber') or page_spec_number,
            'confidence': raw.get('confidence') if raw.get('confidence') in CONFIDENCE_ORDER else 'medium',
            'pageNumber': page_number,
            'rawText': raw.get('rawText') or None,
            'location': location,
        })
    return rows


def _noop(event):
    pass


def extract_page_with_retry(page, document_type, total_pages, send_event=None, max_retries=None):
    """Extracts one page, retrying on any model or parse error.

    Returns a page result dict: pageNumber, status ("success"/"failed"), rows,
    retryCount, and pageContent or error.
    """
    send_event = send_event or _noop
    max_retries = gemini.MAX_RETRIES if max_retries is None else max_retries
    page_number = page['pageNumber']
    attempts = {'n': 0}

    def attempt():
        if attempts['n'] > 0:
            send_event({'type': 'log', 'level': 'warning',
                        'message': f"Retrying page {page_number} (attempt {attempts['n'] + 1}/{max_retries + 1})..."})
        attempts['n'] += 1
        send_event({'type': 'log', 'level': 'info', 'message': f"Sending page {page_number} to AI for analysis..."})
        prompt = create_extraction_prompt(document_type, page_number, total_pages)
        try:
            parsed, text = gemini.generate_json([prompt, gemini.image_part(page)], gemini.EXTRACTION_MODEL)
        except Exception as e:
            send_event({'type': 'log', 'level': 'error', 'message': f"Page {page_number} error: {e}"})
            raise
        send_event({'type': 'log', 'level': 'info', 'message': f"Page {page_number}: Received {len(text)} chars from AI"})
        return parsed

    try:
        parsed, retry_count = gemini.call_with_retry(attempt, max_retries=max_retries, label=f"Page {page_number}")
    except Exception as e:
        retry_count = getattr(e, 'retry_count', max_retries + 1)
        send_event({'type': 'page_error', 'pageNumber': page_number, 'error': str(e) or 'Unknown error',
                    'retryCount': retry_count})
        return {'pageNumber': page_number, 'status': 'failed', 'rows': [],
                'error': str(e) or 'Unknown error', 'retryCount': retry_count}

    rows = parse_page_rows(parsed, page_number)
    if rows:
        send_event({'type': 'log', 'level': 'success', 'message': f"Page {page_number}: Extracted {len(rows)} requirements"})
    else:
        send_event({'type': 'log', 'level': 'info', 'message': f"Page {page_number}: No extractable data found"})
    return {'pageNumber': page_number, 'status': 'success', 'rows': rows,
            'retryCount': retry_count, 'pageContent': parsed.get('pageContent')}


def deduplicate_rows(rows):
    """Keeps one row per case-insensitive field/value/unit, preferring higher confidence."""
    seen = {}
    for row in rows:
        key = f"{row.get('field')}:{row.get('value')}:{row.get('unit') or ''}".lower()
        existing = seen.get(key)
        if existing is None:
            seen[key] = row
        elif CONFIDENCE_ORDER.get(row.get('confidence'), 0) > CONFIDENCE_ORDER.get(existing.get('confidence'), 0):
            seen[key] = row
    return list(seen.values())


def _progress(total_pages, completed, current_page, status, page_statuses):
    return {
        'totalPages': total_pages,
        'completedPages': completed,
        'currentPage': current_page,
        'status': status,
        'pageStatuses': [dict(s) for s in page_statuses],
    }


def process_pages_concurrently(pages, document_type, total_pages, on_progress=None):
    """Runs pages through extraction in fixed-size concurrent batches.

    Results come back in the order of `pages`.
    """
    results = []
    statuses = [{'page': p['pageNumber'], 'status': 'pending', 'retryCount': 0} for p in pages]
    by_page = {s['page']: s for s in statuses}

    with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_REQUESTS) as executor:
        for start in range(0, len(pages), MAX_CONCURRENT_REQUESTS):
            batch = pages[start:start + MAX_CONCURRENT_REQUESTS]
            for p in batch:
                by_page[p['pageNumber']]['status'] = 'processing'
            if on_progress:
                on_progress(_progress(total_pages, len(results), batch[0]['pageNumber'], 'processing', statuses))

            batch_results = list(executor.map(
                lambda p: extract_page_with_retry(p, document_type, total_pages), batch))
            for result in batch_results:
                entry = by_page[result['pageNumber']]
                entry['status'] = result['status']
                entry['retryCount'] = result['retryCount']
            results.extend(batch_results)

            if on_progress:
                on_progress(_progress(total_pages, len(results), batch[-1]['pageNumber'], 'processing', statuses))
    return results


def _metadata(document_type, rows, page_results, total_pages, started, detection=None):
    metadata = {
        'documentType': document_type,
        'totalRows': len(rows),
        'totalPages': total_pages,
        'extractedAt': datetime.now(timezone.utc).isoformat(),
        'processingTime': int((time.monotonic() - started) * 1000),
        'successfulPages': sum(1 for r in page_results if r['status'] == 'success'),
        'failedPages': sum(1 for r in page_results if r['status'] == 'failed'),
    }
    if detection:
        metadata['detectedType'] = {
            'type': detection['detectedType'],
            'confidence': detection['confidence'],
            'reason': detection['reason'],
        }
    return metadata


def _successful_rows(page_results):
    rows = []
    for result in page_results:
        if result['status'] == 'success':
            rows.extend(result['rows'])
    return rows


def extract_document(pages, document_type, on_progress=None, detection=None):
    """Extracts every page concurrently and returns the combined result."""
    started = time.monotonic()
    total_pages = len(pages)
    page_results = process_pages_concurrently(pages, document_type, total_pages, on_progress)
    rows = deduplicate_rows(_successful_rows(page_results))

    if on_progress:
        statuses = [{'page': r['pageNumber'], 'status': r['status'], 'retryCount': r['retryCount']}
                    for r in page_results]
        on_progress(_progress(total_pages, total_pages, total_pages, 'completed', statuses))

    return {
        'rows': rows,
        'metadata': _metadata(document_type, rows, page_results, total_pages, started, detection),
        'pageResults': page_results,
    }


def extract_document_sequential(pages, document_type, detection=None):
    """Non-streaming fallback: pages one after another, ascending."""
    started = time.monotonic()
    page_results = [extract_page_with_retry(p, document_type, len(pages))
                    for p in sorted(pages, key=lambda p: p['pageNumber'])]
    rows = deduplicate_rows(_successful_rows(page_results))
    return {
        'rows': rows,
        'metadata': _metadata(document_type, rows, page_results, len(pages), started, detection),
        'pageResults': page_results,
    }


_PAGE_DONE = object()


def _stream_page(page, document_type, total_pages):
    """Runs one page on a worker thread, yielding its events as they are sent.

    The page result is the generator's return value.
    """
    events = queue.Queue()
    outcome = {}

    def work():
        try:
            outcome['result'] = extract_page_with_retry(page, document_type, total_pages, events.put)
        except Exception as e:
            outcome['error'] = e
        finally:
            events.put(_PAGE_DONE)

    worker = threading.Thread(target=work, name=f"extract-page-{page['pageNumber']}", daemon=True)
    worker.start()
    while True:
        event = events.get()
        if event is _PAGE_DONE:
            break
        yield event
    worker.join()
    if 'error' in outcome:
        raise outcome['error']
    return outcome['result']


def stream_extraction(pages, document_type=None, auto_detect=True):
    """Generator of progress events for one document, ending with `complete`."""
    try:
        started = time.monotonic()
        detection = None
        if not document_type or auto_detect:
            yield {'type': 'log', 'level': 'info', 'message': "Analyzing document type..."}
            detection = detect_document_type(pages[0])
            document_type = detection['detectedType']
            yield {'type': 'detection', 'documentType': document_type,
                   'confidence': detection['confidence'], 'reason': detection['reason']}
            yield {'type': 'log', 'level': 'success',
                   'message': f"Document identified as: {document_type} ({detection['confidence']} confidence)"}
            yield {'type': 'log', 'level': 'info', 'message': f"Reason: {detection['reason']}"}

        total_pages = len(pages)
        yield {'type': 'log', 'level': 'info', 'message': f"Starting extraction of {total_pages} pages..."}

        page_results = []
        for page in sorted(pages, key=lambda p: p['pageNumber']):
            yield {'type': 'page_start', 'pageNumber': page['pageNumber'], 'totalPages': total_pages}
            yield {'type': 'log', 'level': 'info',
                   'message': f"Processing page {page['pageNumber']} of {total_pages}..."}
            result = yield from _stream_page(page, document_type, total_pages)
            page_results.append(result)
            if result['status'] == 'success':
                yield {'type': 'page_complete', 'pageNumber': page['pageNumber'],
                       'rowCount': len(result['rows']), 'rows': result['rows']}

        rows = deduplicate_rows(_successful_rows(page_results))
        yield {'type': 'log', 'level': 'success',
               'message': f"Extraction complete! {len(rows)} unique requirements found."}
        yield {'type': 'complete', 'totalRows': len(rows),
               'metadata': _metadata(document_type, rows, page_results, total_pages, started, detection)}
    except Exception as e:
        logger.exception("Streaming extraction failed")
        yield {'type': 'log', 'level': 'error', 'message': f"Fatal error: {e or 'Unknown error'}"}


def retry_failed_pages(page_results, pages, document_type, on_progress=None):
    """Re-runs only the pages whose earlier result failed."""
    failed = {r['pageNumber'] for r in page_results if r['status'] == 'failed'}
    to_retry = [p for p in pages if p['pageNumber'] in failed]
    if not to_retry:
        return []
    return process_pages_concurrently(to_retry, document_type, len(pages), on_progress)


def verify_low_confidence_rows(rows, pages):
    """Re-extracts pages holding low-confidence rows and upgrades matching rows.

    A row is matched by page number and case-insensitive field name; only a
    non-low re-extraction replaces its value and confidence.
    """
    low_pages = {r['pageNumber'] for r in rows if r.get('confidence') == 'low'}
    to_reprocess = [p for p in pages if p['pageNumber'] in low_pages]
    if not to_reprocess:
        return rows

    verified = [dict(r) for r in rows]
    for result in process_pages_concurrently(to_reprocess, 'specification', len(pages)):
        if result['status'] != 'success':
            continue
        for new_row in result['rows']:
            if new_row['confidence'] == 'low':
                continue
            for existing in verified:
                if (existing['pageNumber'] == new_row['pageNumber']
                        and (existing.get('field') or '').lower() == (new_row.get('field') or '').lower()):
                    existing['value'] = new_row['value']
                    existing['confidence'] = new_row['confidence']
                    break
    return verified
