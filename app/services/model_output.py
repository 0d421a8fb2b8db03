import json
from typing import Any

_CLOSERS = {"{": "}", "[": "]"}


def parse_first_json_object(raw_text: str) -> dict[str, Any] | None:
    parsed = _parse_first_balanced(raw_text, "{")
    return parsed if isinstance(parsed, dict) else None


def parse_first_json_array(raw_text: str) -> list[Any] | None:
    parsed = _parse_first_balanced(raw_text, "[")
    return parsed if isinstance(parsed, list) else None


def _parse_first_balanced(raw_text: str, opener: str) -> Any:
    """Return the first balanced ``{...}``/``[...]`` span in ``raw_text`` that parses as JSON."""
    if not raw_text:
        return None

    start = raw_text.find(opener)
    while start != -1:
        end = _find_balanced_end(raw_text, start, opener)
        if end is not None:
            try:
                return json.loads(raw_text[start : end + 1])
            except json.JSONDecodeError:
                pass
        start = raw_text.find(opener, start + 1)
    return None


def _find_balanced_end(text: str, start: int, opener: str) -> int | None:
    closer = _CLOSERS[opener]
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
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
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return None


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]
