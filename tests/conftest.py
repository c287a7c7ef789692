"""Shared fixtures: in-memory database, temporary blob folder, scripted Gemini."""

import base64
import json
import os
import sys
import tempfile
import time
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))

# app.py reads these at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("BLOB_FOLDER", tempfile.mkdtemp(prefix="cde-blobs-"))
os.environ.setdefault("GOOGLE_API_KEY", "test-key")


def make_page(page_number=1, payload=b"fake-image-bytes", width=100, height=130):
    return {
        "base64": base64.b64encode(payload).decode("ascii"),
        "mimeType": "image/png",
        "pageNumber": page_number,
        "width": width,
        "height": height,
    }


class FakeGemini:
    """Stands in for gemini.generate_text.

    Handlers are matched by a marker substring of the prompt (the first part);
    each handler replays its responses in order and repeats the last one.
    Exceptions in the list are raised instead of returned.
    """

    def __init__(self):
        self.handlers = []
        self.prompts = []

    def on(self, marker, *responses):
        self.handlers.append((marker, list(responses)))
        return self

    def count(self, marker):
        return sum(1 for p in self.prompts if marker in p)

    def __call__(self, parts, model_name=None):
        prompt = parts[0]
        self.prompts.append(prompt)
        for marker, responses in self.handlers:
            if marker in prompt:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                return response if isinstance(response, str) else json.dumps(response)
        import gemini
        raise gemini.GeminiError("API returned an empty response, likely blocked by safety filters.")


# Prompt markers
DETECT = "determine what type of construction"
EXTRACT = "extracting requirements for a Comply"
VISUAL = "Search through ALL the submittal pages"
LEGACY = "SUBMITTAL DATA:"
BATCH = '"findings"'


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Record requested delays instead of sleeping."""
    delays = []
    monkeypatch.setattr(time, "sleep", delays.append)
    return delays


@pytest.fixture
def fake_gemini(monkeypatch):
    import gemini
    fake = FakeGemini()
    monkeypatch.setattr(gemini, "generate_text", fake)
    return fake


@pytest.fixture
def app(tmp_path):
    from app import app as flask_app
    from models import db

    flask_app.config.update(TESTING=True, BLOB_FOLDER=str(tmp_path / "blobs"), BLOB_BASE_URL="/blobs")
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_pdf():
    """A small two-page PDF with some spec text."""
    import fitz

    doc = fitz.open()
    for text in ("23 34 00 HVAC Fans - Fan Performance: 2000 CFM", "Warranty: 1 year parts and labor"):
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), text, fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def page_factory():
    return make_page
