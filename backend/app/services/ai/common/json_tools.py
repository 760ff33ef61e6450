"""Pull the JSON payload out of a model reply.

Models wrap answers in code fences or prose despite the prompt; the first
decodable object or array wins.  Floats decode to ``Decimal`` so amounts such
as ``22852.54`` never pass through binary floating point.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import Decimal

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)
_DECODER = json.JSONDecoder(parse_float=Decimal)


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


def _candidate_starts(text: str):
    for index, ch in enumerate(text):
        if ch in "{[":
            yield index


def extract_json(text: str) -> dict | list | None:
    if not text or not text.strip():
        return None
    body = strip_code_fences(text)

    try:
        return _DECODER.decode(body)
    except ValueError:
        pass

    for start in _candidate_starts(body):
        try:
            value, _end = _DECODER.raw_decode(body, start)
        except ValueError:
            continue
        return value
    return None


def extract_json_object(text: str) -> dict | None:
    parsed = extract_json(text)
    if isinstance(parsed, dict):
        return parsed
    if parsed is not None:
        logger.debug("Model reply decoded to %s, expected an object", type(parsed).__name__)
    return None
