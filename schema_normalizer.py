"""
Shallow merge of stored records over a default template.

Rows written by older clients lack newer fields (filled from the template);
rows written by newer clients carry fields this template has never heard of
(kept as-is). Both directions must load without errors.
"""
from typing import Any, Dict, Mapping, Optional

DEFAULT_PROFILE: Dict[str, Any] = {
    "has_paid": False,
    "payment_date": "",
    "country": "Brasil",
    "language": "pt",
    "medical_conditions": "",
    "dietary_restrictions": "",
    "activity_level": "moderate",
}


def normalize(raw: Optional[Mapping[str, Any]], defaults: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(defaults)
    if raw:
        merged.update(raw)
    return merged


def apply_payment_latch(current: Optional[Mapping[str, Any]], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge ``incoming`` over what is already known, never letting ``has_paid`` go back to False.

    ``current`` is the profile already held in the session (or any record known to
    be newer on the payment question). A stale ``incoming`` copy cannot revoke access.
    """
    result = dict(incoming)
    if not current or not current.get("has_paid"):
        return result

    result["has_paid"] = True
    if not result.get("payment_date"):
        result["payment_date"] = current.get("payment_date", "")
    return result
