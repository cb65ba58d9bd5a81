# Overview: Unauthenticated order lookup by order number plus a contact credential.

from __future__ import annotations

import logging
import re

from ..extensions import db
from ..models import Order
from ..errors import OrderNotFoundError, UnauthorizedLookupError
from ..validation import ValidationError

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D+")


def _digits(phone: str | None) -> str:
    return _NON_DIGITS.sub("", phone or "")


def find_order(order_id: str, email: str | None = None, phone: str | None = None) -> Order:
    """
    The contact credential is the only authorization for this read.

    email matches case-insensitively; phone matches on digits only.
    An order number alone never returns order contents.
    """
    order_id = (order_id or "").strip()
    if not order_id:
        raise ValidationError("Order number is required")

    email = (email or "").strip().lower()
    phone_digits = _digits(phone)
    if not email and not phone_digits:
        raise ValidationError("Email or phone is required")

    order = db.session.query(Order).filter_by(order_number=order_id.upper()).first()
    if order is None:
        raise OrderNotFoundError("Order not found", details={"order_id": order_id})

    email_match = bool(email) and (order.email or "").lower() == email
    phone_match = bool(phone_digits) and _digits(order.phone) == phone_digits
    if not (email_match or phone_match):
        logger.info("Order lookup for %s rejected: contact mismatch", order.order_number)
        raise UnauthorizedLookupError("The details provided do not match this order")

    return order
