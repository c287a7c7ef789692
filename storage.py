# storage.py
"""Blob storage for uploaded PDFs and generated reports.

Blobs are files under BLOB_FOLDER, addressed by a pathname such as
"pdfs/submittals/<projectId>/<ms>-<name>.pdf" and exposed at
"<BLOB_BASE_URL>/<pathname>".
"""
import base64
import logging
import os
import re
import time
from datetime import datetime, timezone

import requests
from flask import current_app

logger = logging.getLogger(__name__)

FOLDERS = {
    'pdfs': 'pdfs',
    'specifications': 'pdfs/specifications',
    'schedules': 'pdfs/schedules',
    'submittals': 'pdfs/submittals',
    'reports': 'reports',
}

_UNSAFE_CHARS = re.compile(r'[^a-zA-Z0-9.-]')
_DATA_URL_PREFIX = re.compile(r'^data:application/pdf;base64,')


class BlobNotFound(Exception):
    pass


def folder_for_type(document_type):
    return {
        'specification': FOLDERS['specifications'],
        'schedule': FOLDERS['schedules'],
        'submittal': FOLDERS['submittals'],
    }.get(document_type, FOLDERS['pdfs'])


def generate_filename(original_name, project_id=None):
    timestamp = int(time.time() * 1000)
    sanitized = _UNSAFE_CHARS.sub('_', original_name)
    prefix = f"{project_id}/" if project_id else ''
    return f"{prefix}{timestamp}-{sanitized}"


def _root():
    return os.path.abspath(current_app.config['BLOB_FOLDER'])


def _base_url():
    return current_app.config['BLOB_BASE_URL'].rstrip('/')


def _path_for(pathname):
    root = _root()
    path = os.path.abspath(os.path.join(root, pathname))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f"Blob path escapes storage root: {pathname}")
    return path


def url_for_pathname(pathname):
    return f"{_base_url()}/{pathname}"


def pathname_from_url(url):
    base = _base_url() + '/'
    if base in url:
        return url.split(base, 1)[1]
    return None


def put(pathname, data, content_type):
    path = _path_for(pathname)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)
    logger.info("Stored blob %s (%d bytes, %s)", pathname, len(data), content_type)
    return {'url': url_for_pathname(pathname), 'pathname': pathname, 'contentType': content_type}


def delete(url):
    pathname = pathname_from_url(url)
    if pathname is None:
        raise BlobNotFound(url)
    path = _path_for(pathname)
    if not os.path.exists(path):
        raise BlobNotFound(url)
    os.remove(path)
    logger.info("Deleted blob %s", pathname)


def list_blobs(prefix):
    root = _root()
    start = _path_for(prefix)
    blobs = []
    for dirpath, _, filenames in os.walk(start):
        for name in sorted(filenames):
            path = os.path.join(dirpath, name)
            pathname = os.path.relpath(path, root).replace(os.sep, '/')
            stat = os.stat(path)
            blobs.append({
                'url': url_for_pathname(pathname),
                'pathname': pathname,
                'size': stat.st_size,
                'uploadedAt': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            })
    return blobs


def upload_pdf(data, original_filename, document_type, project_id=None):
    pathname = f"{folder_for_type(document_type)}/{generate_filename(original_filename, project_id)}"
    blob = put(pathname, data, 'application/pdf')
    blob['size'] = len(data)
    return blob


def upload_pdf_from_base64(base64_data, original_filename, document_type, project_id=None):
    data = base64.b64decode(_DATA_URL_PREFIX.sub('', base64_data))
    return upload_pdf(data, original_filename, document_type, project_id)


def delete_pdf(url):
    delete(url)


def delete_pdfs(urls):
    """Attempts every url, then raises the first failure once all were tried."""
    failures = []
    for url in urls:
        try:
            delete(url)
        except (BlobNotFound, OSError, ValueError) as e:
            logger.error("Could not delete blob %s: %s", url, e)
            failures.append(e)
    if failures:
        raise failures[0]


def get_pdf_metadata(url):
    pathname = pathname_from_url(url)
    if pathname is None:
        return None
    path = _path_for(pathname)
    if not os.path.exists(path):
        return None
    stat = os.stat(path)
    return {
        'size': stat.st_size,
        'uploadedAt': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        'pathname': pathname,
        'contentType': 'application/pdf' if pathname.endswith('.pdf') else 'application/octet-stream',
        'contentDisposition': f'attachment; filename="{os.path.basename(pathname)}"',
        'url': url,
    }


def list_pdfs(document_type=None, project_id=None):
    prefix = folder_for_type(document_type) if document_type else FOLDERS['pdfs']
    if project_id:
        prefix = f"{prefix}/{project_id}"
    return list_blobs(prefix)


def upload_report(data, filename, content_type, project_id=None):
    prefix = f"{project_id}/" if project_id else ''
    pathname = f"{FOLDERS['reports']}/{prefix}{int(time.time() * 1000)}-{filename}"
    blob = put(pathname, data, content_type)
    return {'url': blob['url'], 'pathname': blob['pathname']}


def delete_report(url):
    delete(url)


def list_reports(project_id=None):
    prefix = FOLDERS['reports']
    if project_id:
        prefix = f"{prefix}/{project_id}"
    return list_blobs(prefix)


def fetch_pdf_content(url):
    pathname = pathname_from_url(url)
    if pathname is not None:
        path = _path_for(pathname)
        if not os.path.exists(path):
            raise BlobNotFound(url)
        with open(path, 'rb') as f:
            return f.read()
    response = requests.get(url, timeout=60)
    if not response.ok:
        raise BlobNotFound(f"Failed to fetch PDF: {response.reason}")
    return response.content


def fetch_pdf_as_base64(url):
    return base64.b64encode(fetch_pdf_content(url)).decode('ascii')
