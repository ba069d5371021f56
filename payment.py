"""Payment provider boundary: the checkout itself is an external redirect."""
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# The provider appends one of these to the return URL
STATUS_PARAMS = ("status", "collection_status")
APPROVED_STATUSES = frozenset({"approved", "success"})


@dataclass(frozen=True)
class PaymentOrder:
    order_id: str
    status: str  # pending | approved | failed
    checkout_url: Optional[str] = None


def create_payment_order(checkout_url: str) -> PaymentOrder:
    if checkout_url and len(checkout_url) > 5:
        return PaymentOrder(order_id=f"prod_{int(time.time() * 1000)}", status="pending", checkout_url=checkout_url)
    return PaymentOrder(order_id="error", status="failed")


def payment_status_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    params = dict(parse_qsl(urlsplit(url).query))
    for name in STATUS_PARAMS:
        if params.get(name):
            return params[name]
    return None


def is_payment_approved(url: Optional[str]) -> bool:
    return payment_status_from_url(url) in APPROVED_STATUSES


def strip_payment_marker(url: str) -> str:
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in STATUS_PARAMS]
    return urlunsplit(parts._replace(query=urlencode(kept)))
