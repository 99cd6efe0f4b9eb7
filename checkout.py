"""
Checkout hand-off: turns the current cart into an Order.

Submission is all-or-nothing. Validation and upload failures happen before any
order write; a failed order write leaves the cart exactly as it was. The cart
is cleared only after the order write returns an id.

Stock is not re-checked here. The cart only knows the stock recorded when its
lines were added, so whoever processes the order does the final stock check.
"""
import base64
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from cart import bundle_discount, cart_total
from schemas import CheckoutRequest, Order, Promocode, Upload

logger = structlog.get_logger(__name__)

MAX_PROOF_BYTES = 3 * 1024 * 1024
# Raster formats only; SVG can carry script.
PROOF_CONTENT_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp", "image/heic"}


@dataclass(frozen=True)
class Session:
    """The authenticated caller, handed to whatever needs to know who is asking."""

    user_id: str
    email: str
    name: str = ""
    is_admin: bool = False


class CheckoutError(Exception):
    pass


class CheckoutValidationError(CheckoutError):
    pass


class UploadError(CheckoutError):
    pass


class UploadTooLargeError(UploadError):
    pass


class OrderWriteError(CheckoutError):
    pass


def validate_checkout(items, request: CheckoutRequest) -> None:
    if not items:
        raise CheckoutValidationError("Your cart is empty")
    if request.payment_method != "COD":
        details = request.payment_details
        if not details.transaction_id or not details.sender_id:
            raise CheckoutValidationError("Please provide Transaction ID and Payer ID.")
        if not details.screenshot_url:
            raise CheckoutValidationError("Please upload a screenshot of your payment proof.")


def promo_discount(amount: float, promo: Optional[Promocode]) -> float:
    if promo is None or not promo.is_active:
        return 0
    return round(amount * promo.discount / 100, 2)


def build_order(session: Session, items, request: CheckoutRequest, promo: Optional[Promocode] = None) -> Order:
    gross = cart_total(items)
    discount = bundle_discount(items)
    discount += promo_discount(gross - discount, promo)
    return Order(
        user_id=session.user_id,
        user_email=session.email,
        items=items,
        total_price=gross - discount,
        discount_amount=discount,
        promo_code=promo.code if promo is not None else None,
        status="Pending",
        payment_method=request.payment_method,
        payment_status="Confirmed" if request.payment_method == "COD" else "Submitted",
        payment_details=request.payment_details,
        shipping_address=request.shipping_address,
    )


def submit_order(
    engine,
    session: Session,
    request: CheckoutRequest,
    write_order: Callable[[Order], str],
    promo: Optional[Promocode] = None,
) -> str:
    items = engine.snapshot()
    validate_checkout(items, request)
    order = build_order(session, items, request, promo)
    try:
        order_id = write_order(order)
    except Exception as e:
        logger.error("order_write_failed", user_id=session.user_id, error=str(e))
        raise OrderWriteError("Something went wrong. Please try again.") from e
    engine.clear_cart()
    logger.info(
        "order_submitted",
        order_id=order_id,
        user_id=session.user_id,
        lines=len(items),
        total=order.total_price,
        payment_method=order.payment_method,
    )
    return order_id


def store_payment_proof(
    content: bytes,
    filename: str,
    content_type: str,
    owner_id: str,
    write_upload: Callable[[Upload], str],
    max_bytes: int = MAX_PROOF_BYTES,
) -> str:
    """Store a payment screenshot and return the URL an Order can reference."""
    if not content:
        raise CheckoutValidationError("Please upload a screenshot of your payment proof.")
    if len(content) > max_bytes:
        raise UploadTooLargeError(f"File size limit {max_bytes // (1024 * 1024)}MB.")
    content_type = (content_type or "").split(";")[0].strip().lower()
    if content_type not in PROOF_CONTENT_TYPES:
        raise CheckoutValidationError("Payment proof must be a JPEG, PNG, GIF, WebP or HEIC image.")
    doc = Upload(
        filename=filename,
        content_type=content_type,
        size=len(content),
        data_b64=base64.b64encode(content).decode("utf-8"),
        owner_id=owner_id,
    )
    try:
        upload_id = write_upload(doc)
    except Exception as e:
        logger.error("proof_upload_failed", owner_id=owner_id, error=str(e))
        raise UploadError("Payment proof upload failed. Please try a smaller image or check your connection.") from e
    logger.info("proof_uploaded", upload_id=upload_id, owner_id=owner_id, size=len(content))
    return f"/api/uploads/{upload_id}"
