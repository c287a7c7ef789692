# gemini.py
import base64
import logging
import os
import time

import google.generativeai as genai

from utils import extract_json_object

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.getenv('GEMINI_MODEL', 'gemini-2.0-flash')
EXTRACTION_MODEL = os.getenv('GEMINI_EXTRACTION_MODEL', DEFAULT_MODEL)
COMPARISON_MODEL = os.getenv('GEMINI_COMPARISON_MODEL', DEFAULT_MODEL)

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0

SAFETY_SETTINGS = {
    'HARM_CATEGORY_HARASSMENT': 'BLOCK_NONE',
    'HARM_CATEGORY_HATE_SPEECH': 'BLOCK_NONE',
    'HARM_CATEGORY_SEXUALLY_EXPLICIT': 'BLOCK_NONE',
    'HARM_CATEGORY_DANGEROUS_CONTENT': 'BLOCK_NONE',
}

_configured = False
_models = {}


class GeminiError(Exception):
    """Raised when the model returns nothing usable."""


def configure():
    global _configured
    if _configured:
        return
    api_key = os.environ.get('GOOGLE_API_KEY') or os.environ.get('GEMINI_KEY')
    if not api_key:
        raise GeminiError("GOOGLE_API_KEY not found. Please set it in your .env file.")
    genai.configure(api_key=api_key)
    _configured = True


def get_model(model_name=DEFAULT_MODEL):
    if model_name not in _models:
        configure()
        _models[model_name] = genai.GenerativeModel(model_name)
    return _models[model_name]


def image_part(page):
    """Inline image part for a rendered page dict."""
    return {'mime_type': page['mimeType'], 'data': base64.b64decode(page['base64'])}


def generate_text(parts, model_name=DEFAULT_MODEL):
    model = get_model(model_name)
    response = model.generate_content(parts, safety_settings=SAFETY_SETTINGS)
    try:
        text = response.text
    except ValueError as e:
        # .text raises when every candidate was blocked
        raise GeminiError(f"Response blocked: {getattr(response, 'prompt_feedback', None) or e}") from e

    if not text or not text.strip():
        logger.error("!!! GEMINI ERROR: Received an empty response. Likely due to safety filters.")
        raise GeminiError("API returned an empty response, likely blocked by safety filters.")

    logger.debug("--- RAW GEMINI RESPONSE (%d chars) ---\n%s", len(text), text)
    return text


def generate_json(parts, model_name=DEFAULT_MODEL):
    """Calls the model and returns (parsed_object, raw_text)."""
    text = generate_text(parts, model_name)
    parsed = extract_json_object(text)
    if parsed is None:
        raise GeminiError("No valid JSON found in AI response")
    return parsed, text


def is_rate_limit_error(error):
    message = str(error).lower()
    return ('429' in message
            or 'rate limit' in message
            or 'quota' in message
            or 'resource exhausted' in message)


def retry_delay(attempt, error=None, base=None, exponential_on_rate_limit=False):
    """Seconds to wait before retry number `attempt` (1-based)."""
    base = RETRY_DELAY_SECONDS if base is None else base
    if exponential_on_rate_limit and error is not None and is_rate_limit_error(error):
        return base * (2 ** (attempt - 1))
    return base * attempt


def call_with_retry(fn, max_retries=MAX_RETRIES, on_retry=None, base_delay=None,
                    exponential_on_rate_limit=False, label='model call'):
    """Runs fn() up to max_retries + 1 times.

    Returns (result, retry_count). The last exception is re-raised once the
    attempts are used up, with `retry_count` attached to it.
    """
    retry_count = 0
    while True:
        try:
            return fn(), retry_count
        except Exception as e:
            retry_count += 1
            if retry_count > max_retries:
                logger.error("%s failed after %d attempts: %s", label, retry_count, e)
                e.retry_count = retry_count
                raise
            delay = retry_delay(retry_count, e, base_delay, exponential_on_rate_limit)
            logger.warning("%s error, retrying in %.1fs (attempt %d/%d): %s",
                           label, delay, retry_count, max_retries, e)
            if on_retry:
                on_retry(retry_count, e)
            time.sleep(delay)
