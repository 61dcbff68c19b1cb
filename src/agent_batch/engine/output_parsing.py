"""Best-effort JSON payload recovery from worker tool stdout."""

from __future__ import annotations

import json
import re

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


def extract_json_object(
    text: str,
    *,
    required_key: str | None = None,
) -> dict[str, object] | None:
    """Locate a JSON object embedded in prose.

    Tries, in order: the whole text, fenced ``json`` blocks, and the span from
    the first ``{`` to the last ``}``. With ``required_key`` only objects
    carrying that key are accepted.
    """

    stripped = text.strip()
    if not stripped:
        return None

    candidates = [stripped]
    candidates.extend(match.group(1) for match in _FENCED_JSON.finditer(stripped))
    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        candidates.append(stripped[start : end + 1])

    for raw in candidates:
        payload = _try_load_dict(raw)
        if payload is None:
            continue
        if required_key is not None and required_key not in payload:
            continue
        return payload
    return None


def contains_json_object(text: str, *, required_key: str) -> bool:
    """Whether ``text`` looks like it embeds an object with ``required_key``."""

    return re.search(r"\{.*\"" + re.escape(required_key) + r"\".*\}", text, re.DOTALL) is not None


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
