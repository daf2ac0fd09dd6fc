import json
from typing import Any, Optional


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        cleaned = "\n".join(lines).strip()
    return cleaned


def _balanced_object(text: str, start: int) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def extract_json(text: Optional[str]) -> Optional[Any]:
    """Best-effort JSON recovery from model output.

    Tries the whole (fence-stripped) text first, then every balanced ``{...}``
    block in order, then the span from the first ``{`` to the last ``}``.
    Returns None when nothing parses.
    """
    if not text:
        return None
    cleaned = strip_code_fences(text)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    while start != -1:
        snippet = _balanced_object(cleaned, start)
        if snippet is None:
            break
        try:
            return json.loads(snippet)
        except json.JSONDecodeError:
            start = cleaned.find("{", start + 1)

    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        try:
            return json.loads(cleaned[first : last + 1])
        except json.JSONDecodeError:
            return None
    return None
