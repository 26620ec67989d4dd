"""Validation of incoming JSON payloads.

Both endpoints validate before any credit is touched, so a malformed request
never costs the caller anything.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Mapping

from caradvisor.exceptions import ValidationError

PREFERENCE_FIELDS = (
    "usage",
    "family_size",
    "driving_experience",
    "fuel_type",
    "gearbox",
    "body_type",
    "new_or_used",
    "priority",
    "tech_level",
)

# Field length limits for DoS prevention
_FIELD_MAX_LENGTHS = {
    "usage": 200,
    "family_size": 20,
    "driving_experience": 50,
    "fuel_type": 50,
    "gearbox": 50,
    "body_type": 50,
    "new_or_used": 30,
    "priority": 200,
    "tech_level": 100,
    "extra_desc": 1000,
}

_PURCHASE_FIELD_MAX_LENGTHS = {
    "platform": 20,
    "packageName": 200,
    "productId": 128,
    "purchaseToken": 512,
}

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')


def _normalize_text(value: Any) -> str:
    text = unicodedata.normalize("NFKC", str(value))
    text = _CONTROL_CHARS.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def _check_field_length(field: str, text: str, max_length: int) -> None:
    if len(text) > max_length:
        raise ValidationError(
            f"Field exceeds maximum length of {max_length} characters (got {len(text)})",
            field=field,
        )


def _require_object(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object", field="payload")
    return payload


def validate_recommend_request(payload: Any) -> Dict[str, str]:
    """Validate a /api/cars/recommend body and return normalized preferences.

    Every preference is optional (a missing answer is sent to the model as an
    empty string). Values must be scalars. ``userId`` is accepted for
    compatibility with older clients and dropped; identity comes from the token.
    """
    payload = _require_object(payload)

    prefs: Dict[str, str] = {}
    for field, max_length in _FIELD_MAX_LENGTHS.items():
        value = payload.get(field)
        if value is None:
            prefs[field] = ""
            continue
        if isinstance(value, (dict, list)):
            raise ValidationError("Field must be a string or a number", field=field)
        text = _normalize_text(value)
        _check_field_length(field, text, max_length)
        prefs[field] = text
    return prefs


def validate_purchase_request(payload: Any) -> Dict[str, str]:
    """Validate a /api/cars/add-credits body. All four fields are required strings."""
    payload = _require_object(payload)

    validated: Dict[str, str] = {}
    for field, max_length in _PURCHASE_FIELD_MAX_LENGTHS.items():
        value = payload.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Field is required", field=field)
        text = value.strip()
        _check_field_length(field, text, max_length)
        validated[field] = text
    validated["platform"] = validated["platform"].lower()
    return validated
