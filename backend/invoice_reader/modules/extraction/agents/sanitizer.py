"""InvoiceReader Sanitizer - Post-processing of LLM agent output.

Fixes common LLM output errors before the data is merged:
  1. Markdown code fences around the JSON (```json ... ```)
  2. Prose before/after the JSON object -> outermost {...} slice
  3. Null-like strings ("null", "N/A", "") -> None
  4. Monetary fields as formatted strings ("$ 30.250,00", "1,234.56") -> float
  5. Line items returned as a single dict or with null entries
  6. Response-level keys (confidence, conflicts, ...) mixed into the data

Shared by every LLM agent through BaseAgent.
"""

from __future__ import annotations

import json
import re
from typing import Any

from invoice_reader.modules.extraction.agent_schemas import (
    AMOUNT_FIELDS,
    LINE_ITEM_AMOUNT_FIELDS,
    RESERVED_RESPONSE_KEYS,
)
from invoice_reader.modules.extraction.exceptions import ResponseParseError

NULL_LIKE_STRINGS = {"null", "none", "n/a", ""}

_NON_NUMERIC = re.compile(r"[^\d,.\-]")


# ---------------------------------------------------------------------------
# Helper: strip markdown code fences from LLM output
# ---------------------------------------------------------------------------

def strip_code_fences(raw_text: str) -> str:
    """Strip markdown code fences (```json ... ```) from LLM response."""
    text = raw_text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_agent_json(raw_text: str | None) -> dict[str, Any]:
    """Parse an agent response into a JSON object.

    Tries the fence-stripped text first, then the outermost ``{...}`` slice.
    Raises ResponseParseError when neither yields a JSON object.
    """
    if not raw_text or not raw_text.strip():
        raise ResponseParseError("Empty model response")

    text = strip_code_fences(raw_text)
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ResponseParseError(
                "Model response contains no JSON object",
                details={"preview": text[:200]},
            )
        try:
            parsed = json.loads(text[start:end + 1])
        except (ValueError, RecursionError) as e:
            reason = e.msg if isinstance(e, json.JSONDecodeError) else str(e)
            raise ResponseParseError(
                f"Malformed JSON in model response: {reason}",
                details={"preview": text[:200]},
            ) from e

    if not isinstance(parsed, dict):
        raise ResponseParseError(
            f"Expected a JSON object, got {type(parsed).__name__}",
        )
    return parsed


# ---------------------------------------------------------------------------
# Value normalisation
# ---------------------------------------------------------------------------

def parse_amount(value: Any) -> Any:
    """Turn a formatted money string into a float; anything else passes through.

    Handles Argentine ("30.250,00") and US ("30,250.00") conventions: when both
    separators appear the last one is the decimal point. A lone comma followed
    by one or two digits is a decimal comma; a lone dot followed by exactly three
    digits is a thousands separator ("30.250"). Unparseable strings are returned
    unchanged so no information is lost.
    """
    if isinstance(value, bool) or not isinstance(value, str):
        return value

    cleaned = _NON_NUMERIC.sub("", value)
    if not cleaned or not any(ch.isdigit() for ch in cleaned):
        return value

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if cleaned.count(",") == 1 and 1 <= len(tail) <= 2:
            cleaned = f"{head}.{tail}"
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    elif "." in cleaned:
        head, _, tail = cleaned.partition(".")
        if len(tail) == 3 and head.lstrip("-") not in ("", "0"):
            cleaned = head + tail

    try:
        return float(cleaned)
    except ValueError:
        return value


def _clean_value(value: Any) -> Any:
    if isinstance(value, str) and value.strip().lower() in NULL_LIKE_STRINGS:
        return None
    if isinstance(value, str):
        return value.strip()
    return value


def _clean_line_item(item: dict[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, val in item.items():
        val = _clean_value(val)
        if key in LINE_ITEM_AMOUNT_FIELDS:
            val = parse_amount(val)
        cleaned[key] = val
    return cleaned


# ---------------------------------------------------------------------------
# Core sanitizer
# ---------------------------------------------------------------------------

def sanitize_agent_output(data: dict[str, Any]) -> dict[str, Any]:
    """Normalise one parsed agent response (data keys only, reserved keys untouched)."""
    result: dict[str, Any] = {}
    for key, val in data.items():
        if key in RESERVED_RESPONSE_KEYS:
            result[key] = val
            continue

        if key == "lineItems":
            if isinstance(val, dict):
                val = [val]
            if isinstance(val, list):
                result[key] = [_clean_line_item(item) for item in val if isinstance(item, dict)]
            else:
                result[key] = None if _clean_value(val) is None else val
            continue

        val = _clean_value(val)
        if key in AMOUNT_FIELDS:
            val = parse_amount(val)
        result[key] = val
    return result


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = value.strip() if isinstance(value, str) else str(value)
    return text or None


def _as_string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


def split_reserved_keys(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Lift response-level keys out of the extracted data.

    Returns ``(extracted_data, meta)`` where ``meta`` holds ``confidence`` (raw,
    unvalidated), ``conflicts`` and ``suggestions`` (as string lists) and
    ``reasoning`` (text or None).
    """
    extracted = {k: v for k, v in data.items() if k not in RESERVED_RESPONSE_KEYS}
    meta = {
        "confidence": data.get("confidence"),
        "conflicts": _as_string_list(data.get("conflicts")),
        "suggestions": _as_string_list(data.get("suggestions")),
        "reasoning": _as_text(data.get("reasoning")),
    }
    return extracted, meta
