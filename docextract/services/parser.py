import json
import re
from typing import Any

from pydantic import ValidationError

from docextract.api.v1.schemas import DOCUMENT_MODELS, DocumentKind, DocumentShape

_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


class ParseError(Exception):
    """The provider answered with data that does not fit the expected shape."""


def _extract_json_object(raw: str) -> str | None:
    """Return the first balanced {...} substring in raw, handling nested objects."""
    start = raw.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(raw)):
        ch = raw[i]
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return raw[start : i + 1]
    return None


def _loads_object(raw: str) -> dict[str, Any] | None:
    try:
        obj: Any = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def load_json_object(raw: str) -> dict[str, Any]:
    data = _loads_object(raw)
    if data is not None:
        return data
    # Models occasionally wrap the object in prose or leave trailing commas.
    candidate = _extract_json_object(raw) or raw.strip()
    data = _loads_object(_TRAILING_COMMA.sub(r"\1", candidate))
    if data is None:
        raise ParseError("Failed to parse provider response as a JSON object")
    return data


def parse_document(raw: str, document_kind: DocumentKind) -> DocumentShape:
    data = load_json_object(raw)
    model = DOCUMENT_MODELS[document_kind]
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in e["loc"]) for e in exc.errors()})
        raise ParseError(
            f"Provider response does not match the {document_kind} schema: "
            f"invalid {', '.join(fields)}"
        ) from exc
