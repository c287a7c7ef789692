# workspace.py
"""Client-side review workspace.

Drives the HTTP API the way the browser does: page-by-page extraction of a
spec/schedule, then one `compare-single` call per submittal batch for every
extracted row, sequenced through a FIFO queue that can be paused.
"""
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timezone

import requests

from comparison import CONFIDENCE_RANK, STATUS_RANK, summarize
from utils import payload_size

logger = logging.getLogger(__name__)

TARGET_BATCH_SIZE_BYTES = 3 * 1024 * 1024
MIN_PAGES_PER_BATCH = 1
MAX_PAGES_PER_BATCH = 15
PAGE_DELAY_SECONDS = 0.1
BATCH_DELAY_SECONDS = 0.1
QUEUE_DELAY_SECONDS = 0.2


def create_optimal_batches(pages, target_bytes=TARGET_BATCH_SIZE_BYTES, max_pages=MAX_PAGES_PER_BATCH):
    """Groups pages so each request stays near `target_bytes` of base64."""
    batches = []
    current = []
    current_size = 0
    for page in pages:
        size = payload_size(page)
        if current_size + size > target_bytes and len(current) >= MIN_PAGES_PER_BATCH:
            batches.append(current)
            current, current_size = [page], size
        elif len(current) >= max_pages:
            batches.append(current)
            current, current_size = [page], size
        else:
            current.append(page)
            current_size += size
    if current:
        batches.append(current)

    logger.info("[Smart Batching] Created %d batches from %d pages", len(batches), len(pages))
    for i, batch in enumerate(batches):
        logger.debug("  Batch %d: %d pages, ~%.2fMB", i + 1, len(batch),
                     sum(payload_size(p) for p in batch) / 1024 / 1024)
    return batches


def _wire_page(page):
    return {'base64': page['base64'], 'mimeType': page['mimeType'], 'pageNumber': page['pageNumber']}


class ApiError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ApiClient:
    """Thin requests wrapper around the extraction and comparison routes."""

    def __init__(self, base_url='http://localhost:5000', session=None, timeout=300):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, path, payload):
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        if not response.ok:
            raise ApiError(f"{path} failed: {response.status_code} {response.text}", response.status_code)
        return response.json()

    def detect(self, page):
        result = self._post('/api/extract', {'pages': [_wire_page(page)], 'detectOnly': True})
        return ((result.get('data') or {}).get('metadata') or {}).get('detectedType') or {}

    def extract_page(self, page, document_type, total_pages):
        return self._post('/api/extract-page', {
            'page': _wire_page(page),
            'documentType': document_type,
            'totalPages': total_pages,
        })

    def compare_single(self, spec_row, pages, batch_info=None):
        return self._post('/api/compare-single', {
            'specRow': spec_row,
            'submittalPages': [_wire_page(p) for p in pages],
            'scanAllPages': False,
            'batchInfo': batch_info,
        })


class CDEWorkspace:
    """In-memory review state: documents, their extracted rows and the AI CDE queue."""

    def __init__(self, api=None, auto_process=True):
        self.api = api or ApiClient()
        self.auto_process = auto_process
        self.documents = {}
        self.extractions = {}
        self.submittal_pages = None
        self.submittal_batches = None
        self.logs = []
        self.queue = deque()
        self.paused = False
        self.processing = False
        self._aborted = False

    # --- logging ---

    def add_log(self, message, level='info'):
        self.logs.append({
            'id': uuid.uuid4().hex,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'message': message,
            'level': level,
        })
        log_level = {'success': logging.INFO, 'warning': logging.WARNING,
                     'error': logging.ERROR}.get(level, logging.INFO)
        logger.log(log_level, message)

    # --- rows ---

    def all_rows(self):
        rows = []
        for extraction in self.extractions.values():
            rows.extend(extraction['rows'])
        return rows

    def find_row(self, row_id):
        for extraction in self.extractions.values():
            for row in extraction['rows']:
                if row['id'] == row_id:
                    return row
        return None

    def summary(self):
        return summarize(self.all_rows())

    # --- spec extraction ---

    def abort(self):
        self._aborted = True

    def process_spec_document(self, doc_id, pages, name=None):
        """Detects, then extracts one page at a time; returns the document record."""
        self._aborted = False
        doc = {'id': doc_id, 'name': name or doc_id, 'status': 'extracting', 'itemCount': 0}
        self.documents[doc_id] = doc
        self.add_log(f"PDF converted: {len(pages)} pages", 'success')
        if not pages:
            self.add_log("No pages to extract", 'error')
            doc.update(status='error', error="Document has no pages")
            return doc

        try:
            self.add_log("Detecting document type...")
            detection = self.api.detect(pages[0])
            detected_type = detection.get('type') or 'unknown'
            confidence = detection.get('confidence') or 'low'
            reason = detection.get('reason') or 'Unknown'
            self.add_log(f"Document type: {detected_type} ({confidence} confidence)", 'success')
            self.add_log(f"Reason: {reason}")

            if detected_type == 'submittal':
                message = "This appears to be a submittal. Please upload it in the Submittal section."
                self.add_log(message, 'error')
                doc.update(status='error', detectedType='submittal', confidence=confidence, reason=message,
                           error="Document appears to be a submittal, not a spec/schedule")
                return doc

            doc.update(detectedType=detected_type, confidence=confidence, reason=reason)
            extraction = {
                'rows': [],
                'metadata': {
                    'documentType': detected_type,
                    'totalRows': 0,
                    'totalPages': len(pages),
                    'extractedAt': datetime.now(timezone.utc).isoformat(),
                    'processingTime': 0,
                },
                'pageResults': [],
            }
            self.extractions[doc_id] = extraction
            self.add_log(f"Starting page-by-page extraction of {len(pages)} pages...")

            total_rows = 0
            successful = 0
            failed = 0
            for i, page in enumerate(pages):
                if self._aborted:
                    self.add_log("Extraction cancelled by user", 'warning')
                    break
                page_number = i + 1
                self.add_log(f"Processing page {page_number} of {len(pages)}...")

                try:
                    result = self.api.extract_page(page, detected_type, len(pages))
                except (ApiError, requests.RequestException) as e:
                    self.add_log(f"Page {page_number} failed: {e}", 'error')
                    failed += 1
                else:
                    if result.get('success') and result.get('data'):
                        rows = self._add_page_rows(doc_id, page_number, result['data'].get('rows') or [])
                        total_rows += len(rows)
                        successful += 1
                    else:
                        self.add_log(f"Page {page_number}: Extraction returned no data", 'warning')
                        failed += 1

                if i < len(pages) - 1:
                    time.sleep(PAGE_DELAY_SECONDS)

            self.add_log(f"Extraction complete! {total_rows} requirements found from {successful} pages "
                         f"({failed} failed)", 'success')
            doc.update(status='complete', itemCount=total_rows)
        except (ApiError, requests.RequestException) as e:
            self.add_log(f"Error: {e}", 'error')
            doc.update(status='error', error=str(e))
        return doc

    def _add_page_rows(self, doc_id, page_number, rows):
        if not rows:
            self.add_log(f"Page {page_number}: No extractable requirements found")
            return []

        stamp = int(time.time() * 1000)
        stamped = [dict(row, id=f"{doc_id}-page{page_number}-row{idx}-{stamp}") for idx, row in enumerate(rows)]
        extraction = self.extractions[doc_id]
        extraction['rows'].extend(stamped)
        extraction['metadata']['totalRows'] = len(extraction['rows'])
        self.documents[doc_id]['itemCount'] += len(stamped)
        self.add_log(f"Page {page_number}: Extracted {len(stamped)} requirements", 'success')

        if self.submittal_pages:
            self.add_log(f"Queuing {len(stamped)} items for AI CDE...")
            self.queue_rows(stamped)
        return stamped

    # --- submittal ---

    def set_submittal(self, pages):
        """Stores submittal pages, precomputes batches and queues rows still lacking a result."""
        self.submittal_pages = pages
        self.submittal_batches = create_optimal_batches(pages)
        logger.info("[Submittal] Pre-computed %d batches for %d pages", len(self.submittal_batches), len(pages))
        unprocessed = [r for r in self.all_rows() if not r.get('cdeStatus') and not r.get('isAiProcessing')]
        if unprocessed:
            self.queue_rows(unprocessed)

    # --- AI CDE queue ---

    def queue_rows(self, rows):
        total_pages = len(self.submittal_pages or [])
        total_batches = len(self.submittal_batches or [])
        position = len(self.queue) + 1
        for row in rows:
            target = self.find_row(row['id']) or row
            target.update(isAiProcessing=True, aiCdeStatus='queued', aiCdeQueuePosition=position,
                          aiCdeTotalPages=total_pages, aiCdeTotalBatches=total_batches,
                          aiCdePagesScanned=0, aiCdeBatchesCompleted=0)
            position += 1
            self.queue.append(target)
        if self.auto_process:
            self.process_queue()

    def process_queue(self):
        """Runs queued rows one at a time until empty or paused."""
        if self.processing or not self.queue or not self.submittal_pages:
            return
        self.processing = True
        self.paused = False
        try:
            while self.queue and not self.paused:
                row = self.queue.popleft()
                try:
                    self.process_row_with_ai_cde(row)
                except Exception as e:
                    logger.exception("[AI CDE] Row %s failed", row.get('id'))
                    self.add_log(f"AI CDE failed for \"{row.get('field')}\": {e}", 'error')
                    row.update(isAiProcessing=False, aiCdeStatus='error')
                time.sleep(QUEUE_DELAY_SECONDS)
            if self.paused and self.queue:
                self._release_queue()
        finally:
            self.processing = False

    def _release_queue(self):
        while self.queue:
            self.queue.popleft()['isAiProcessing'] = False

    def pause(self):
        """Stops the AI CDE queue after the current row and releases queued rows."""
        self.paused = True
        self._aborted = True
        self._release_queue()
        for row in self.all_rows():
            if row.get('isAiProcessing'):
                row['isAiProcessing'] = False
        self.add_log("Processing paused - data saved", 'warning')

    def resume(self):
        self.paused = False
        self._aborted = False

    def rerun_row(self, row_id):
        """Clears a row's AI result and puts it back on the queue."""
        row = self.find_row(row_id)
        if row is None:
            return None
        for key in ('cdeStatus', 'cdeComment', 'cdeSource', 'aiSuggestedStatus', 'aiSuggestedComment',
                    'submittalValue', 'submittalUnit', 'submittalLocation', 'matchConfidence',
                    'submittalFindings', 'activeFindingIndex'):
            row.pop(key, None)
        row.update(isReviewed=False, isAiProcessing=True, aiCdeStatus='queued')
        if not any(queued is row for queued in self.queue):
            row['aiCdeQueuePosition'] = len(self.queue) + 1
            self.queue.append(row)
        if self.auto_process:
            self.process_queue()
        return row

    def process_row_with_ai_cde(self, row):
        """Searches every submittal batch for one row and stores the aggregated result."""
        pages = self.submittal_pages or []
        batches = self.submittal_batches or create_optimal_batches(pages)
        total_batches = len(batches)
        total_pages = len(pages)
        row.update(aiCdeStatus='scanning', aiCdeTotalPages=total_pages, aiCdeTotalBatches=total_batches,
                   aiCdePagesScanned=0, aiCdeBatchesCompleted=0)
        logger.info("[AI CDE] Processing \"%s\" across %d pages in %d batches", row.get('field'),
                    total_pages, total_batches)

        findings = []
        has_error = False
        pages_scanned = 0
        spec_row = {k: v for k, v in row.items() if not k.startswith('aiCde') and k != 'isAiProcessing'}

        for batch_index, batch in enumerate(batches):
            row.update(aiCdePagesScanned=pages_scanned, aiCdeBatchesCompleted=batch_index)
            batch_info = {
                'batchIndex': batch_index,
                'totalBatches': total_batches,
                'startPage': batch[0].get('pageNumber') or 1,
                'endPage': batch[-1].get('pageNumber') or len(batch),
                'totalPages': total_pages,
            }
            try:
                result = self.api.compare_single(spec_row, batch, batch_info)
            except (ApiError, requests.RequestException) as e:
                logger.error("[AI CDE] Batch %d/%d failed for row %s: %s", batch_index + 1, total_batches,
                             row['id'], e)
                has_error = True
                pages_scanned += len(batch)
                continue

            data = result.get('data') or {}
            if result.get('success') and data.get('findings'):
                findings.extend(data['findings'])
            pages_scanned += len(batch)
            if batch_index < total_batches - 1:
                time.sleep(BATCH_DELAY_SECONDS)

        row.update(aiCdePagesScanned=total_pages, aiCdeBatchesCompleted=total_batches)

        if findings:
            findings.sort(key=lambda f: (CONFIDENCE_RANK.get(f.get('confidence'), 3),
                                         STATUS_RANK.get(f.get('status'), 5)))
            best = findings[0]
            statuses = {f.get('status') for f in findings}
            status = 'comply' if 'comply' in statuses else 'deviate' if 'deviate' in statuses else 'exception'
            levels = {f.get('confidence') for f in findings}
            confidence = 'high' if 'high' in levels else 'medium' if 'medium' in levels else 'low'
            explanation = best.get('explanation')
            if len(findings) > 1:
                explanation = f"{len(findings)} occurrences found. Best: {best.get('explanation')}"
            self._apply_ai_result(row, status, confidence, explanation, findings,
                                  submittalValue=best.get('value'), submittalUnit=best.get('unit'),
                                  submittalLocation={'pageNumber': best.get('pageNumber'),
                                                     'boundingBox': best.get('boundingBox')})
            logger.info("[AI CDE] Found %d total findings for \"%s\"", len(findings), row.get('field'))
        else:
            explanation = "Search failed - please retry" if has_error else "No matching data found in submittal"
            self._apply_ai_result(row, 'not_found', 'not_found', explanation, [])
        return row

    def _apply_ai_result(self, row, status, confidence, explanation, findings, **submittal):
        row.update(
            cdeStatus=status,
            cdeComment=explanation,
            cdeSource='ai',
            aiSuggestedStatus=status,
            aiSuggestedComment=explanation,
            isAiProcessing=False,
            aiCdeStatus='complete',
            submittalValue=submittal.get('submittalValue'),
            submittalUnit=submittal.get('submittalUnit'),
            submittalLocation=submittal.get('submittalLocation'),
            matchConfidence=confidence,
            submittalFindings=findings,
            activeFindingIndex=0,
        )

    # --- review ---

    def set_row_status(self, row_id, status, comment=None):
        """Human override of a row's CDE status."""
        row = self.find_row(row_id)
        if row is None:
            return None
        row.update(cdeStatus=status, cdeSource='human', isReviewed=True)
        if comment is not None:
            row['cdeComment'] = comment
        return row
