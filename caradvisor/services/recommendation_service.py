# -*- coding: utf-8 -*-
"""Recommendation flow: debit a credit, ask the model, parse, refund on failure."""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from json_repair import repair_json

from caradvisor.exceptions import (
    LedgerUnavailableError,
    MalformedGenerationOutputError,
    QuotaExhaustedError,
    UpstreamGenerationError,
)
from caradvisor.ledger import CreditLedger
from caradvisor.utils.prompt_defense import (
    MAX_NOTE_LENGTH,
    bounded_preference,
    create_data_only_instruction,
)

logger = logging.getLogger(__name__)

REFUND_AMOUNT = 1

_PREFERENCE_LABELS = (
    ("usage", "Kullanım alanı"),
    ("family_size", "Aile büyüklüğü"),
    ("driving_experience", "Sürüş tecrübesi"),
    ("fuel_type", "Yakıt tercihi"),
    ("gearbox", "Vites tercihi"),
    ("body_type", "Araç tipi"),
    ("new_or_used", "Sıfır / ikinci el tercihi"),
    ("priority", "Önceliği"),
    ("tech_level", "Teknoloji/donanım beklentisi"),
)


def build_prompt(prefs: Mapping[str, Any]) -> str:
    lines = [f"- {label}: {bounded_preference(prefs.get(field))}" for field, label in _PREFERENCE_LABELS]
    lines.append(f"- Ek not: {bounded_preference(prefs.get('extra_desc'), max_length=MAX_NOTE_LENGTH)}")
    answers = "\n".join(lines)

    return f"""
You are a car advisor for drivers in Turkey. Based on the questionnaire answers
below, suggest the suitable vehicle segment and 3 to 5 concrete models.

Rules:
- You do not know current prices in Turkey. Never mention prices, TL, budgets or price ranges.
- Give general advice only: segment, body type, fuel type, gearbox, typical usage.
- For every model write a short explanation in Turkish: who it suits, its strengths, why you recommend it.
- Take the user's extra note into account.
- Reply with a valid JSON array only. No text before or after it.

{create_data_only_instruction()}

Questionnaire answers:
{answers}

Return exactly this shape:
[
  {{"model": "Model name", "why": "Why it fits (Turkish)", "segment": "e.g. C-SUV, B-Hatchback"}}
]
""".strip()


def _slice_array(text: str) -> Optional[str]:
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end == -1 or end < start:
        return None
    return text[start:end + 1]


_REQUIRED_ITEM_KEYS = ("model", "why", "segment")


def _is_complete_item(item: Any) -> bool:
    return isinstance(item, dict) and all(isinstance(item.get(key), str) for key in _REQUIRED_ITEM_KEYS)


def extract_recommendations(raw: str) -> Tuple[Optional[List[Dict[str, Any]]], Optional[str]]:
    """
    Lenient structured-output extraction. Best effort, not a guarantee:
    take the text between the first '[' and the last ']' (the model sometimes
    wraps its JSON in prose or code fences) and parse it. A clean parse is
    returned verbatim, an empty list included, as long as it is a list of
    objects. Text that only parses after json_repair must come back as a
    non-empty list of complete ``{model, why, segment}`` items, since repair
    can silently drop fields.
    """
    if not raw:
        return None, "EMPTY_RESPONSE"
    candidate = _slice_array(raw)
    if candidate is None:
        return None, "NO_JSON_ARRAY"
    try:
        parsed = json.loads(candidate)
    except ValueError:
        try:
            parsed = json.loads(repair_json(candidate))
        except Exception:
            return None, "MODEL_JSON_INVALID"
        if not isinstance(parsed, list) or not parsed or not all(_is_complete_item(item) for item in parsed):
            return None, "MODEL_JSON_INVALID"
        return parsed, None
    if not all(isinstance(item, dict) for item in parsed):
        return None, "MODEL_JSON_BAD_ITEMS"
    return parsed, None


class RecommendationService:
    """Orchestrates one paid recommendation.

    The credit is spent before the model is called, so users without credits
    never cost a model call. Unparseable model output always refunds the
    credit; provider failures refund it when ``refund_on_upstream_failure`` is set.
    """

    def __init__(self, ledger: CreditLedger, generator, refund_on_upstream_failure: bool = True):
        self.ledger = ledger
        self.generator = generator
        self.refund_on_upstream_failure = refund_on_upstream_failure

    def _refund(self, user_id: str, reason: str) -> None:
        try:
            total = self.ledger.credit(user_id, REFUND_AMOUNT)
            logger.info("[RECOMMEND] refunded user=%s reason=%s total=%s", user_id, reason, total)
        except LedgerUnavailableError:
            logger.exception("[RECOMMEND] refund failed user=%s reason=%s", user_id, reason)

    def recommend(self, user_id: str, prefs: Mapping[str, Any]) -> List[Dict[str, Any]]:
        debit = self.ledger.debit(user_id)
        if not debit.ok:
            raise QuotaExhaustedError()
        logger.info("[RECOMMEND] debited user=%s remaining=%s", user_id, debit.remaining)

        prompt = build_prompt(prefs)
        try:
            raw = self.generator.generate(prompt)
        except UpstreamGenerationError as e:
            logger.error("[RECOMMEND] upstream failure user=%s reason=%s", user_id, e.reason)
            if self.refund_on_upstream_failure:
                self._refund(user_id, e.reason)
            raise

        parsed, err = extract_recommendations(raw)
        if err:
            # Log the size only, the body can be long and is user-derived
            logger.error("[RECOMMEND] unparseable model output user=%s err=%s len=%s", user_id, err, len(raw))
            self._refund(user_id, err)
            raise MalformedGenerationOutputError()
        return parsed
