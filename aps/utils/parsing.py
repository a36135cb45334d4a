"""Shared parsing and LLM utilities for stage responses."""

import json
import logging
from typing import Any

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from aps.errors import MalformedOutput, TransportFailure

logger = logging.getLogger(__name__)

_DOUBLE_QUOTES = str.maketrans({"“": '"', "”": '"', "„": '"', "‟": '"'})
_SINGLE_QUOTES = str.maketrans({"‘": "'", "’": "'", "‚": "'", "‛": "'"})


def strip_fences(text: str) -> str:
    """Strip a single leading/trailing markdown code fence if present."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def normalize_quotes(text: str) -> str:
    """Replace curly/smart quotes with straight quotes."""
    return text.translate(_DOUBLE_QUOTES).translate(_SINGLE_QUOTES)


def extract_first_json_block(text: str) -> str | None:
    """Return the first balanced {...} or [...] span, or None.

    Characters inside double-quoted strings (with backslash escapes) do not
    count towards the bracket depth.
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None

    start = min(starts)
    open_char = text[start]
    close_char = "}" if open_char == "{" else "]"

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
            continue
        if ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1].strip()

    return None


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return False, None


def parse_json_response(response: str) -> Any:
    """Recover a JSON value from noisy generated text.

    Tries, in order: the fence-stripped text, the first balanced JSON block,
    that block with smart quotes normalized, and (only when no block was
    found) the whole text with smart quotes normalized.

    Raises MalformedOutput when nothing parses.
    """
    cleaned = strip_fences(response)

    ok, value = _loads(cleaned)
    if ok:
        return value

    extracted = extract_first_json_block(cleaned)
    if extracted is not None:
        ok, value = _loads(extracted)
        if ok:
            return value
        ok, value = _loads(normalize_quotes(extracted))
    else:
        ok, value = _loads(normalize_quotes(cleaned))
    if ok:
        return value

    snippet = cleaned.replace("\n", " ")
    snippet = (snippet[:200] + "...") if len(snippet) > 200 else snippet
    raise MalformedOutput(f"No JSON value found in response. Snippet: {snippet}", snippet=snippet)


async def invoke_with_retry(backend, messages: list[dict], **params):
    """Await backend.generate(messages, **params) with exponential backoff on transport errors.

    Only TransportFailure is retried; the last one is re-raised once the
    retry budget is spent. Parse and schema problems never reach this layer.
    """
    from aps.config import get_config

    config = get_config()
    retries = config.get("llm_max_retries", 2)

    @retry(
        stop=stop_after_attempt(retries + 1),  # +1 because first attempt counts
        wait=wait_exponential_jitter(
            initial=config.get("backoff_initial", 1.0),
            max=config.get("backoff_max", 8.0),
            jitter=config.get("backoff_jitter", 0.25),
        ),
        retry=retry_if_exception_type(TransportFailure),
        reraise=True,
        before_sleep=lambda state: logger.warning(
            "Transient error: %r. Retrying in %.1fs (attempt %d/%d)...",
            state.outcome.exception(),
            state.next_action.sleep,
            state.attempt_number,
            retries,
        ),
    )
    async def _invoke():
        return await backend.generate(messages, **params)

    return await _invoke()
