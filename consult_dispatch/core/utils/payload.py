from __future__ import annotations

import json
import re
import unicodedata
from collections.abc import Mapping, Sequence
from typing import Any, Final, TypeGuard

_URL_RE: Final[re.Pattern[str]] = re.compile(r"^https?://", re.IGNORECASE)
_NON_DIGITS_RE: Final[re.Pattern[str]] = re.compile(r"\D+")
_LINK_KEYS: Final[tuple[str, ...]] = ("consentLink", "consentUrl", "link", "url", "redirectUrl", "redirectURL")
_ERROR_KEYS: Final[tuple[str, ...]] = ("Erros", "erros", "errors")


def is_mapping(value: object) -> TypeGuard[Mapping[str, Any]]:
    return isinstance(value, Mapping)


def is_present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def pick(data: object, keys: Sequence[str], default: Any = None) -> Any:
    """Return the value of the first key in `keys` that is present and non-empty in `data`.

    Upstream payloads name the same field differently across providers and API versions, so
    lookups go through an ordered list of candidate names instead of a single key.
    """
    if not is_mapping(data):
        return default
    for key in keys:
        if key in data and is_present(data[key]):
            return data[key]
    return default


def digits(value: object) -> str:
    if value is None:
        return ""
    return _NON_DIGITS_RE.sub("", str(value))


def normalize_document(value: object, *, width: int = 11) -> str:
    # Documents stored in numeric columns lose their leading zeros.
    value_digits = digits(value)
    if value_digits and len(value_digits) < width:
        return value_digits.rjust(width, "0")
    return value_digits


def normalize_person_name(value: object) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    ascii_text = re.sub(r"[^A-Za-z0-9\s]", "", ascii_text)
    ascii_text = re.sub(r"\s+", " ", ascii_text)
    return ascii_text.strip().upper()


def to_nullable_str(value: object, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_length is not None:
        return text[:max_length]
    return text


def truncate(value: str | None, max_length: int) -> str:
    text = value or ""
    if len(text) <= max_length:
        return text
    return text[:max_length]


def parse_amount(raw: object) -> float | None:
    """Parse a monetary amount in either "1.234,56" or "1,234.56" notation, rounded to cents."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return round(float(raw), 2)
    value = re.sub(r"\s+", "", str(raw))
    value = value.replace("R$", "")
    if not value:
        return None
    has_dot = "." in value
    has_comma = "," in value
    if has_dot and has_comma:
        if value.rfind(",") > value.rfind("."):
            value = value.replace(".", "").replace(",", ".")
        else:
            value = value.replace(",", "")
    elif has_comma:
        value = value.replace(",", ".")
    try:
        return round(float(value), 2)
    except ValueError:
        return None


def is_url(value: object) -> bool:
    return isinstance(value, str) and _URL_RE.match(value.strip()) is not None


def find_link(entry: Mapping[str, Any]) -> str | None:
    for key in _LINK_KEYS:
        value = entry.get(key)
        if is_url(value):
            return value.strip()

    stack: list[object] = [entry]
    while stack:
        current = stack.pop()
        values: list[object]
        if is_mapping(current):
            values = list(current.values())
        elif isinstance(current, list):
            values = list(current)
        else:
            continue
        for value in values:
            if is_url(value):
                return value.strip()
            if isinstance(value, (Mapping, list)):
                stack.append(value)
    return None


def append_link(description: str | None, url: str | None) -> str | None:
    text = (description or "").strip()
    if not url:
        return text or None
    if not text:
        return f"Link: {url}"
    if url in text:
        return text
    return f"{text} | Link: {url}"


def decode_json(raw: str) -> Any:
    text = raw.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def normalize_error_message(message: str) -> str:
    """Collapse an error that embeds an upstream JSON body into its nested error messages."""
    message = message.strip()
    if not message:
        return message

    candidates = [message]
    json_start = message.find("{")
    if json_start >= 0:
        json_slice = message[json_start:].strip()
        if json_slice and json_slice != message:
            candidates.append(json_slice)

    for candidate in candidates:
        decoded = decode_json(candidate)
        if not isinstance(decoded, (dict, list)) or not decoded:
            continue
        errors = _nested_error_messages(decoded)
        if errors:
            return " | ".join(dict.fromkeys(errors))
    return message


def _nested_error_messages(payload: object) -> list[str]:
    found: list[str] = []
    queue: list[object] = [payload]
    while queue:
        current = queue.pop(0)
        if isinstance(current, str):
            decoded = decode_json(current)
            if isinstance(decoded, (dict, list)) and decoded:
                queue.append(decoded)
            continue
        if isinstance(current, list):
            queue.extend(item for item in current if isinstance(item, (dict, list, str)))
            continue
        if not is_mapping(current):
            continue

        for key in _ERROR_KEYS:
            if key not in current:
                continue
            value = current[key]
            if isinstance(value, list):
                for item in value:
                    if isinstance(item, (str, int, float)):
                        text = str(item).strip()
                        if text:
                            found.append(text)
                    elif isinstance(item, (dict, list)):
                        queue.append(item)
            elif isinstance(value, (str, int, float)):
                text = str(value).strip()
                if text:
                    found.append(text)

        for key, value in current.items():
            if key in _ERROR_KEYS:
                continue
            if isinstance(value, (dict, list, str)):
                queue.append(value)
    return found
