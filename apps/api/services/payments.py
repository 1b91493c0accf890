"""Razorpay payment callback verification.

Razorpay signs ``"{order_id}|{payment_id}"`` with HMAC-SHA256 using the
merchant key secret and sends the lowercase hex digest as
``razorpay_signature``. The message format must stay byte-identical.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict

from . import accounts

LOGGER = logging.getLogger(__name__)


class SignatureMismatch(ValueError):
    pass


def compute_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not isinstance(signature, str) or not signature:
        return False
    expected = compute_signature(order_id, payment_id, secret)
    # bytes で比較する (str 同士だと非 ASCII の入力で TypeError になる)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace"))


def process_payment(payload: Dict[str, Any], secret: str) -> Dict[str, Any]:
    """Grant pro access when the callback signature checks out.

    Raises ``SignatureMismatch`` without touching the account otherwise.
    """
    order_id = str(payload.get("razorpay_order_id") or "")
    payment_id = str(payload.get("razorpay_payment_id") or "")
    signature = payload.get("razorpay_signature")
    user_id = payload.get("userId")

    if not verify_signature(order_id, payment_id, signature, secret):
        LOGGER.warning("payment signature mismatch order=%s", order_id)
        raise SignatureMismatch("Invalid signature")

    account = accounts.grant_pro(str(user_id or ""))
    LOGGER.info("pro access granted user=%s order=%s", user_id, order_id)
    return account
