"""
Legacy proposal data normalizer.

Stored ``proposal_data`` blobs were written under several conventions over
time. ``normalize`` rewrites any of them into the canonical shape on every
read path; the stored row is never modified.

Canonical shape:
    title        str
    category     str | None
    budget       {"amount": number, "currency": str} | None
    description  str            (legacy "content" copied forward)
    attachmentIds list          (never null)
    ...          every other key passed through untouched

Rules are independent of each other and the function is idempotent:
normalize(normalize(p)) == normalize(p).
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"

CANONICAL_FIELDS = ("title", "category", "budget", "description")

_MISSING = object()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_number(text: str):
    text = text.strip().replace(",", "")
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def normalize_budget(value: Any, currency: str = DEFAULT_CURRENCY) -> Any:
    """Canonicalize a budget value.

    - bare number → {"amount": n, "currency": currency}
    - numeric string → same, parsed
    - {"amount": n} without currency → currency added
    - {"amount", "currency"} / None → unchanged
    - anything else → unchanged (logged)
    """
    if value is None:
        return None
    if _is_number(value):
        return {"amount": value, "currency": currency}
    if isinstance(value, str):
        amount = _parse_number(value)
        if amount is None:
            logger.warning("Unparseable legacy budget %r left as-is", value)
            return value
        return {"amount": amount, "currency": currency}
    if isinstance(value, dict):
        if "amount" in value and not value.get("currency"):
            budget = dict(value)
            budget["currency"] = currency
            return budget
        return value
    logger.warning("Unrecognized budget type %s left as-is", type(value).__name__)
    return value


@dataclass
class ProposalData:
    """Canonical proposal envelope.

    Known fields are typed attributes; everything else lives in ``extras`` so
    unknown custom fields survive every round trip.
    """

    title: Any = _MISSING
    category: Any = _MISSING
    budget: Any = _MISSING
    description: Any = _MISSING
    extras: dict = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict) -> "ProposalData":
        extras = {k: copy.deepcopy(v) for k, v in raw.items() if k not in CANONICAL_FIELDS}
        return cls(
            **{k: copy.deepcopy(raw[k]) for k in CANONICAL_FIELDS if k in raw},
            extras=extras,
        )

    def to_dict(self) -> dict:
        data = {}
        for key in CANONICAL_FIELDS:
            value = getattr(self, key)
            if value is not _MISSING:
                data[key] = value
        data.update(self.extras)
        return data


def normalize(raw: Any, default_currency: str = DEFAULT_CURRENCY) -> dict:
    """Return the canonical form of a stored proposal payload. Never raises.

    ``budget`` is always present in the result: a money object or None.
    """
    if raw is not None and not isinstance(raw, dict):
        logger.warning("Proposal data is %s, not an object; treating as empty",
                       type(raw).__name__)
    proposal = ProposalData.from_raw(raw if isinstance(raw, dict) else {})

    if proposal.budget is _MISSING:
        proposal.budget = None
    else:
        proposal.budget = normalize_budget(proposal.budget, default_currency)

    content = proposal.extras.get("content")
    if content is not None and proposal.description in (_MISSING, None):
        proposal.description = content

    legacy_name = proposal.extras.get("name")
    if proposal.title in (_MISSING, None) and isinstance(legacy_name, str) and legacy_name:
        proposal.title = legacy_name

    if "attachmentIds" in proposal.extras and proposal.extras["attachmentIds"] is None:
        proposal.extras["attachmentIds"] = []

    return proposal.to_dict()
