# app.py
import functools
import json
import logging
import os

from flask import Flask, Response, jsonify, request, send_from_directory, stream_with_context
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from dotenv import load_dotenv

import comparison
import database
import extraction
import reports
import storage
from models import db
from utils import MAX_FILE_SIZE, allowed_file, extract_pages, count_pdf_pages, validate_file

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='[%(asctime)s] %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

# Initialize Flask App
app = Flask(__name__)

# --- App Configuration ---
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY') or os.urandom(24)
app.config['BLOB_FOLDER'] = os.getenv('BLOB_FOLDER', 'blobs')
app.config['BLOB_BASE_URL'] = os.getenv('BLOB_BASE_URL', '/blobs')
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_SIZE

# --- Database Configuration ---
database_url = os.getenv('DATABASE_URL')
if not database_url:
    db_user = os.getenv('DB_USER')
    db_pass = os.getenv('DB_PASSWORD')
    db_host = os.getenv('DB_HOST')
    db_port = os.getenv('DB_PORT')
    db_name = os.getenv('DB_NAME')
    database_url = f'postgresql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}'
app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Initialize extensions
db.init_app(app)

# Create blob directory if it doesn't exist
os.makedirs(app.config['BLOB_FOLDER'], exist_ok=True)

DOCUMENT_TYPES = ('specification', 'schedule', 'submittal')
REVIEW_STATUSES = ('comply', 'deviate', 'exception', 'pending')


def api_errors(message):
    """Turns unexpected failures into a logged 500 with a generic message."""
    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except HTTPException:
                raise
            except Exception as e:
                logger.exception("%s: %s", message, e)
                db.session.rollback()
                return jsonify({"error": message, "details": str(e) or "Unknown error"}), 500
        return wrapper
    return decorator


def json_body():
    return request.get_json(silent=True) or {}


def current_user_id():
    return request.headers.get('X-User-Id') or None


def parse_page_count(value):
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid page count: {value!r}")
    return int(value)


def sse(events):
    def generate():
        for event in events:
            yield f"data: {json.dumps(event)}\n\n"
    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'Connection': 'keep-alive'})


# --- Projects ---

@app.route('/api/projects', methods=['GET'])
@api_errors("Failed to fetch projects")
def list_projects():
    project_id = request.args.get('id')
    if project_id:
        project = database.get_project(project_id)
        if not project:
            return jsonify({"error": "Project not found"}), 404
        return jsonify(project.to_dict())
    return jsonify([p.to_dict() for p in database.get_projects(current_user_id())])


@app.route('/api/projects', methods=['POST'])
@api_errors("Failed to create project")
def create_project():
    name = json_body().get('name')
    if not name or not isinstance(name, str):
        return jsonify({"error": "Project name is required"}), 400
    project = database.create_project(name, current_user_id())
    return jsonify(project.to_dict()), 201


@app.route('/api/projects', methods=['PUT'])
@api_errors("Failed to update project")
def update_project():
    body = json_body()
    project_id, name = body.get('id'), body.get('name')
    if not project_id or not isinstance(project_id, str):
        return jsonify({"error": "Project ID is required"}), 400
    if not name or not isinstance(name, str):
        return jsonify({"error": "Project name is required"}), 400
    project = database.update_project(project_id, name)
    if not project:
        return jsonify({"error": "Project not found"}), 404
    return jsonify(project.to_dict())


@app.route('/api/projects', methods=['DELETE'])
@api_errors("Failed to delete project")
def delete_project():
    project_id = request.args.get('id')
    if not project_id:
        return jsonify({"error": "Project ID is required"}), 400
    project = database.get_project(project_id)
    if not project:
        return jsonify({"error": "Project not found"}), 404
    try:
        storage.delete_pdfs([d.blob_url for d in project.documents])
    except (storage.BlobNotFound, OSError, ValueError) as e:
        logger.error("Error deleting project blobs: %s", e)
    database.delete_project(project_id)
    return jsonify({"success": True})


# --- Documents ---

@app.route('/api/documents', methods=['GET'])
@api_errors("Failed to fetch documents")
def list_documents():
    document_id = request.args.get('id')
    if document_id:
        document = database.get_document(document_id)
        if not document:
            return jsonify({"error": "Document not found"}), 404
        result = document.to_dict()
        if request.args.get('storage') == 'true':
            result['storage'] = storage.get_pdf_metadata(document.blob_url)
        return jsonify(result)
    return jsonify([d.to_dict() for d in database.get_documents(request.args.get('projectId'))])


@app.route('/api/documents', methods=['POST'])
@api_errors("Failed to upload document")
def upload_document():
    if request.is_json:
        # base64 upload from clients that already hold the file in memory
        body = json_body()
        name, doc_type, project_id = body.get('name'), body.get('type'), body.get('projectId')
        page_count = body.get('pageCount')
        manufacturer, model = body.get('manufacturer'), body.get('model')
        if not body.get('fileBase64') or not name:
            return jsonify({"error": "File is required"}), 400
        if doc_type not in DOCUMENT_TYPES:
            return jsonify({"error": "Valid document type is required (specification, schedule, or submittal)"}), 400
        try:
            page_count = parse_page_count(page_count)
        except (TypeError, ValueError):
            return jsonify({"error": "Page count must be a whole number"}), 400
        upload = storage.upload_pdf_from_base64(body['fileBase64'], secure_filename(name), doc_type, project_id)
    else:
        file = request.files.get('file')
        doc_type = request.form.get('type')
        project_id = request.form.get('projectId') or None
        page_count = request.form.get('pageCount')
        manufacturer = request.form.get('manufacturer') or None
        model = request.form.get('model') or None
        if not file or file.filename == '':
            return jsonify({"error": "File is required"}), 400
        if doc_type not in DOCUMENT_TYPES:
            return jsonify({"error": "Valid document type is required (specification, schedule, or submittal)"}), 400
        name = request.form.get('name') or file.filename
        data = file.read()
        try:
            page_count = parse_page_count(page_count)
        except (TypeError, ValueError):
            return jsonify({"error": "Page count must be a whole number"}), 400
        if page_count is None and name.lower().endswith('.pdf'):
            page_count = count_pdf_pages(data)
        upload = storage.upload_pdf(data, secure_filename(name), doc_type, project_id)

    document = database.create_document(
        project_id=project_id,
        name=name,
        type=doc_type,
        blob_url=upload['url'],
        page_count=page_count,
        manufacturer=manufacturer,
        model=model,
    )
    return jsonify({
        "document": document.to_dict(),
        "storage": {"url": upload['url'], "pathname": upload['pathname']},
    }), 201


@app.route('/api/documents', methods=['DELETE'])
@api_errors("Failed to delete document")
def delete_document():
    document_id = request.args.get('id')
    if not document_id:
        return jsonify({"error": "Document ID is required"}), 400
    document = database.get_document(document_id)
    if not document:
        return jsonify({"error": "Document not found"}), 404
    try:
        storage.delete_pdf(document.blob_url)
    except (storage.BlobNotFound, OSError, ValueError) as e:
        # the database row goes regardless
        logger.error("Error deleting from blob storage: %s", e)
    if not database.delete_document(document_id):
        return jsonify({"error": "Failed to delete document from database"}), 500
    return jsonify({"success": True})


@app.route('/api/documents/pages', methods=['POST'])
@api_errors("Failed to render document pages")
def render_document_pages():
    """Page images for an uploaded file, or for a stored document via ?documentId=."""
    document_id = request.args.get('documentId')
    if document_id:
        document = database.get_document(document_id)
        if not document:
            return jsonify({"error": "Document not found"}), 404
        filename, data = document.name, storage.fetch_pdf_content(document.blob_url)
        if not allowed_file(filename):
            filename = f"{filename}.pdf"
    else:
        file = request.files.get('file')
        if not file or file.filename == '':
            return jsonify({"error": "File is required"}), 400
        filename, data = secure_filename(file.filename), file.read()

    valid, error = validate_file(filename, len(data))
    if not valid:
        return jsonify({"error": error}), 400
    pages = extract_pages(filename, data)
    return jsonify({"pages": pages, "pageCount": len(pages)})


@app.route('/api/documents/content', methods=['GET'])
@api_errors("Failed to fetch document content")
def document_content():
    document_id = request.args.get('id')
    if not document_id:
        return jsonify({"error": "Document ID is required"}), 400
    document = database.get_document(document_id)
    if not document:
        return jsonify({"error": "Document not found"}), 404
    return jsonify({"id": document.id, "base64": storage.fetch_pdf_as_base64(document.blob_url)})


# --- Extractions ---

@app.route('/api/extractions', methods=['GET'])
@api_errors("Failed to fetch extraction")
def get_extraction():
    document_id = request.args.get('documentId')
    if not document_id:
        return jsonify({"error": "Document ID is required"}), 400
    result = database.get_extraction_by_document(document_id)
    if not result:
        return jsonify({"error": "Extraction not found"}), 404
    extraction_record, rows = result
    return jsonify({"extraction": extraction_record.to_dict(), "rows": database.db_rows_to_extracted_rows(rows)})


@app.route('/api/extractions', methods=['POST'])
@api_errors("Failed to save extraction")
def save_extraction():
    body = json_body()
    document_id = body.get('documentId')
    result = body.get('extractionResult')
    if not document_id or not isinstance(document_id, str):
        return jsonify({"error": "Document ID is required"}), 400
    if not isinstance(result, dict) or result.get('rows') is None or not result.get('metadata'):
        return jsonify({"error": "Valid extraction result is required"}), 400
    extraction_record, rows = database.save_extraction(document_id, result)
    return jsonify({"extraction": extraction_record.to_dict(),
                    "rows": database.db_rows_to_extracted_rows(rows)}), 201


@app.route('/api/extractions/rows', methods=['PATCH'])
@api_errors("Failed to update row")
def update_extracted_row():
    body = json_body()
    row_id = body.get('rowId')
    if not row_id:
        return jsonify({"error": "Row ID is required"}), 400
    status = body.get('cdeStatus')
    if status and status not in REVIEW_STATUSES + ('not_found',):
        return jsonify({"error": "Invalid status value"}), 400
    row = database.update_extracted_row(row_id, body)
    if not row:
        return jsonify({"error": "Row not found"}), 404
    return jsonify({"success": True, "row": database.db_rows_to_extracted_rows([row])[0]})


# --- Reports ---

@app.route('/api/reports', methods=['GET'])
@api_errors("Failed to fetch reports")
def list_reports():
    report_id = request.args.get('id')
    if report_id:
        result = database.get_cde_report(report_id)
        if not result:
            return jsonify({"error": "Report not found"}), 404
        report, comparisons = result
        return jsonify({"report": report.to_dict(),
                        "comparisons": database.db_comparisons_to_results(comparisons)})
    return jsonify([r.to_dict() for r in database.get_cde_reports(request.args.get('projectId'))])


@app.route('/api/reports', methods=['POST'])
@api_errors("Failed to create report")
def create_report():
    body = json_body()
    name = body.get('name')
    spec_document_id = body.get('specDocumentId')
    submittal_document_id = body.get('submittalDocumentId')
    comparisons = body.get('comparisons')
    if not name or not isinstance(name, str):
        return jsonify({"error": "Report name is required"}), 400
    if not spec_document_id or not isinstance(spec_document_id, str):
        return jsonify({"error": "Specification document ID is required"}), 400
    if not submittal_document_id or not isinstance(submittal_document_id, str):
        return jsonify({"error": "Submittal document ID is required"}), 400
    if not isinstance(comparisons, list) or not comparisons:
        return jsonify({"error": "Comparisons array is required"}), 400

    report, stored = database.create_cde_report(name, spec_document_id, submittal_document_id, comparisons,
                                                project_id=body.get('projectId') or None)
    return jsonify({"report": report.to_dict(),
                    "comparisons": database.db_comparisons_to_results(stored)}), 201


@app.route('/api/reports', methods=['PATCH'])
@api_errors("Failed to update comparison")
def update_comparison():
    body = json_body()
    comparison_id = body.get('comparisonId')
    status = body.get('status')
    if not comparison_id or not isinstance(comparison_id, str):
        return jsonify({"error": "Comparison ID is required"}), 400
    if status and status not in REVIEW_STATUSES:
        return jsonify({"error": "Invalid status value"}), 400

    updated = database.update_comparison(comparison_id, status=status, user_comment=body.get('userComment'),
                                         is_reviewed=body.get('isReviewed'), reviewed_by=body.get('reviewedBy'))
    if not updated:
        return jsonify({"error": "Comparison not found or no changes made"}), 404
    if body.get('reportId') and status:
        database.update_cde_report_summary(body['reportId'])
    return jsonify({"success": True, "comparison": updated.to_dict()})


@app.route('/api/reports', methods=['DELETE'])
@api_errors("Failed to delete report")
def delete_report():
    report_id = request.args.get('id')
    if not report_id:
        return jsonify({"error": "Report ID is required"}), 400
    if not database.delete_cde_report(report_id):
        return jsonify({"error": "Report not found"}), 404
    return jsonify({"success": True})


@app.route('/api/reports/pdf', methods=['POST'])
@api_errors("Failed to generate report PDF")
def generate_report_pdf():
    body = json_body()
    rows = body.get('rows')
    if not isinstance(rows, list):
        return jsonify({"error": "Rows are required"}), 400
    project_name = body.get('projectName') or 'CDE Report'
    pdf_bytes = reports.generate_cde_pdf(body.get('specPages') or [], body.get('submittalPages') or [], rows,
                                         project_name=project_name,
                                         include_unreviewed=body.get('includeUnreviewed', True))
    filename = secure_filename(f"{project_name}-cde-report.pdf") or 'cde-report.pdf'
    blob = storage.upload_report(pdf_bytes, filename, 'application/pdf', body.get('projectId') or None)
    return jsonify({"url": blob['url'], "pathname": blob['pathname'], "size": len(pdf_bytes)}), 201


@app.route('/api/reports/pdf', methods=['GET'])
@api_errors("Failed to list report files")
def list_report_files():
    return jsonify(storage.list_reports(request.args.get('projectId')))


@app.route('/api/reports/pdf', methods=['DELETE'])
@api_errors("Failed to delete report file")
def delete_report_file():
    url = request.args.get('url')
    if not url:
        return jsonify({"error": "Report URL is required"}), 400
    try:
        storage.delete_report(url)
    except storage.BlobNotFound:
        return jsonify({"error": "Report file not found"}), 404
    return jsonify({"success": True})


@app.route('/api/blobs', methods=['GET'])
@api_errors("Failed to list files")
def list_pdf_files():
    return jsonify(storage.list_pdfs(request.args.get('type'), request.args.get('projectId')))


# --- AI extraction and comparison ---

@app.route('/api/extract', methods=['POST'])
def extract():
    body = json_body()
    pages = body.get('pages')
    document_type = body.get('documentType')
    auto_detect = body.get('autoDetect', True)
    detect_only = body.get('detectOnly', False)
    if not pages or not isinstance(pages, list):
        return jsonify({"error": "No pages provided"}), 400

    if body.get('stream', True) and not detect_only:
        return sse(extraction.stream_extraction(pages, document_type, auto_detect))

    try:
        detection = None
        document_type = document_type or 'unknown'
        if not body.get('documentType') or auto_detect:
            detection = extraction.detect_document_type(pages[0])
            document_type = detection['detectedType']

        if detect_only:
            metadata = {
                'documentType': document_type,
                'totalRows': 0,
                'totalPages': len(pages),
                'successfulPages': 0,
                'failedPages': 0,
                'detectOnly': True,
            }
            if detection:
                metadata['detectedType'] = {'type': detection['detectedType'],
                                            'confidence': detection['confidence'],
                                            'reason': detection['reason']}
            return jsonify({"success": True, "data": {"rows": [], "metadata": metadata, "pageResults": []}})

        result = extraction.extract_document_sequential(pages, document_type, detection)
        return jsonify({"success": True, "data": result})
    except Exception as e:
        logger.exception("Extraction failed")
        return jsonify({"error": "Extraction failed", "details": str(e) or "Unknown error"}), 500


@app.route('/api/extract-page', methods=['POST'])
def extract_page():
    body = json_body()
    page = body.get('page')
    if not isinstance(page, dict) or not page.get('base64') or not page.get('mimeType'):
        return jsonify({"error": "No valid page provided"}), 400
    page.setdefault('pageNumber', 1)
    try:
        result = extraction.extract_page_with_retry(page, body.get('documentType') or 'specification',
                                                    body.get('totalPages') or 1)
    except Exception as e:
        logger.exception("Page extraction error")
        return jsonify({"error": "Page extraction failed", "details": str(e) or "Unknown error"}), 500
    return jsonify({
        "success": result['status'] == 'success',
        "data": {
            "pageNumber": page['pageNumber'],
            "rows": result['rows'],
            "rowCount": len(result['rows']),
            "pageContent": result.get('pageContent'),
            "error": result.get('error'),
            "retryCount": result['retryCount'],
        },
    })


@app.route('/api/compare', methods=['POST'])
def compare():
    body = json_body()
    spec_rows = (body.get('specificationData') or {}).get('rows')
    if spec_rows is None:
        return jsonify({"error": "Specification data is required"}), 400
    try:
        result = comparison.compare_rows(spec_rows, (body.get('submittalData') or {}).get('rows'),
                                         body.get('submittalPages'))
    except Exception as e:
        logger.exception("Comparison error")
        return jsonify({"error": "Comparison failed", "details": str(e) or "Unknown error"}), 500
    return jsonify({"success": True, "data": result})


@app.route('/api/compare-single', methods=['POST'])
def compare_single():
    body = json_body()
    spec_row = body.get('specRow')
    submittal_pages = body.get('submittalPages')
    if not spec_row:
        return jsonify({"error": "Spec row is required"}), 400
    if not submittal_pages:
        return jsonify({"error": "Submittal pages are required"}), 400
    try:
        result = comparison.compare_single(spec_row, submittal_pages, body.get('scanAllPages', True),
                                           body.get('batchInfo'))
    except Exception as e:
        logger.exception("Single comparison error")
        return jsonify({"error": "Comparison failed", "details": str(e) or "Unknown error"}), 500
    return jsonify({"success": True, "data": result})


# --- Blob serving ---

@app.route('/blobs/<path:filename>')
def serve_blob(filename):
    return send_from_directory(os.path.abspath(app.config['BLOB_FOLDER']), filename)


if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0')
