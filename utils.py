# utils.py
import base64
import io
import json
import re
import logging

import fitz
from PIL import Image

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB
SUPPORTED_TYPES = {
    'pdf': 'application/pdf',
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': 'image/webp',
}

# First {...} span in a model response, across newlines
JSON_OBJECT_RE = re.compile(r'\{[\s\S]*\}')


def file_extension(filename):
    return filename.rsplit('.', 1)[1].lower() if '.' in filename else ''


def allowed_file(filename):
    return file_extension(filename) in SUPPORTED_TYPES


def validate_file(filename, size):
    """Returns (valid, error) for an upload destined for page extraction."""
    if size > MAX_FILE_SIZE:
        return False, f"File size exceeds maximum of 50MB ({size / 1024 / 1024:.2f}MB)"
    if not allowed_file(filename):
        return False, f"Unsupported file type: {file_extension(filename) or 'unknown'}. Supported: PDF, PNG, JPG, GIF, WebP"
    return True, None


def extract_json_object(text):
    """Pull the first JSON object out of a model response.

    Models wrap JSON in markdown fences or chatter despite instructions, so the
    greedy brace match is parsed rather than the whole text. Returns None when
    no object is present; json.JSONDecodeError propagates for a broken one.
    """
    if not text:
        return None
    match = JSON_OBJECT_RE.search(text)
    if not match:
        return None
    return json.loads(match.group(0))


def payload_size(page):
    # base64 length is what travels in the request body
    return len(page.get('base64') or '')


# --- File and Image Processing ---

def render_pdf_pages(pdf_bytes, scale=2):
    """Renders every page of a PDF to a PNG page dict, in page order."""
    pages = []
    doc = fitz.open(stream=pdf_bytes, filetype='pdf')
    try:
        matrix = fitz.Matrix(scale, scale)
        for index in range(doc.page_count):
            pix = doc.load_page(index).get_pixmap(matrix=matrix)
            pages.append({
                'base64': base64.b64encode(pix.tobytes('png')).decode('ascii'),
                'mimeType': 'image/png',
                'pageNumber': index + 1,
                'width': pix.width,
                'height': pix.height,
            })
    finally:
        doc.close()
    logger.info("Rendered %d PDF pages at scale %s", len(pages), scale)
    return pages


def image_to_page(image_bytes, mime_type):
    """Wraps a single uploaded image as page 1."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        width, height = img.size
    return {
        'base64': base64.b64encode(image_bytes).decode('ascii'),
        'mimeType': mime_type,
        'pageNumber': 1,
        'width': width,
        'height': height,
    }


def extract_pages(filename, data):
    """Turns an uploaded PDF or image into page dicts ready for the model."""
    ext = file_extension(filename)
    if ext == 'pdf':
        return render_pdf_pages(data)
    if ext in SUPPORTED_TYPES:
        return [image_to_page(data, SUPPORTED_TYPES[ext])]
    raise ValueError(f"Unsupported file type: {ext or filename}")


def count_pdf_pages(pdf_bytes):
    doc = fitz.open(stream=pdf_bytes, filetype='pdf')
    try:
        return doc.page_count
    finally:
        doc.close()
