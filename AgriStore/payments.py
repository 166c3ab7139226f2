"""
Razorpay integration and order materialization.

Checkout talks to the gateway twice: ``create_payment_intent`` registers the
amount before the customer pays, and ``verify_and_materialize`` turns a signed
payment confirmation into an Order. An Order only ever exists for a payment
whose signature checked out, and a payment id is turned into at most one Order.
"""
import hashlib
import hmac
import logging
import time
from typing import List

import requests
from fastapi import Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import ForbiddenError, StoreError
from models import CartItem, Order, OrderItem, OrderStatus, PaymentIntent, PaymentStatus, PaymentTransaction, User
from schemas import CheckoutItem, VerifyPaymentRequest
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


class PaymentError(StoreError):
    status_code = 502


class SignatureError(StoreError):
    pass


class OrderMaterializationError(StoreError):
    status_code = 500


def _materialization_failed(settings: Settings, payment_id: str) -> OrderMaterializationError:
    return OrderMaterializationError(
        "Payment received but the order could not be created. Please contact support.",
        payment_id=payment_id,
        support_email=settings.SUPPORT_EMAIL,
    )


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not (secret and order_id and payment_id and signature):
        return False
    expected = _hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    if not (secret and signature):
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), signature)


class RazorpayGateway:
    def __init__(self, key_id: str, key_secret: str, api_url: str, timeout: float = 15):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, payload: dict) -> dict:
        if not self.key_id or not self.key_secret:
            raise PaymentError("Payment gateway is not configured")
        try:
            response = requests.post(
                f"{self.api_url}{path}",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            logger.error("Razorpay %s failed: %s", path, exc)
            raise PaymentError("Payment gateway request failed")

    def create_order(self, amount_minor: int, currency: str, receipt: str) -> dict:
        return self._post("/orders", {"amount": amount_minor, "currency": currency, "receipt": receipt})

    def refund(self, payment_id: str, amount_minor: int, notes: str) -> dict:
        return self._post(f"/payments/{payment_id}/refund", {"amount": amount_minor, "notes": {"reason": notes}})


def get_gateway(settings: Settings = Depends(get_settings)) -> RazorpayGateway:
    return RazorpayGateway(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_API_URL)


def create_payment_intent(
    db: Session,
    gateway: RazorpayGateway,
    settings: Settings,
    user: User,
    items: List[CheckoutItem],
    total: float,
    address: dict,
    phone_number: str,
    is_shop_pickup: bool = False,
) -> PaymentIntent:
    """Register ``total`` with the gateway and remember what it was for.

    Nothing is stored if the gateway call fails, including an address staged
    on the session for this checkout.
    """
    try:
        gateway_order = gateway.create_order(
            to_minor_units(total), settings.CURRENCY, f"order_{user.id}_{int(time.time() * 1000)}"
        )
    except PaymentError:
        db.rollback()
        raise
    intent = PaymentIntent(
        gateway_order_id=gateway_order["id"],
        user_id=user.id,
        amount=total,
        currency=gateway_order.get("currency", settings.CURRENCY),
        items=[item.model_dump() for item in items],
        shipping_address=address,
        phone_number=phone_number,
        is_shop_pickup=is_shop_pickup,
    )
    db.add(intent)
    db.commit()
    db.refresh(intent)
    logger.info("Payment intent %s for user %s: %.2f %s", intent.gateway_order_id, user.id, total, intent.currency)
    return intent


def _existing_order(db: Session, user: User, payment_id: str):
    transaction = (
        db.query(PaymentTransaction).filter(PaymentTransaction.gateway_payment_id == payment_id).first()
    )
    if transaction is None:
        return None
    if transaction.order.user_id != user.id:
        raise ForbiddenError("Payment belongs to another account")
    return transaction.order


def verify_and_materialize(db: Session, settings: Settings, user: User, payload: VerifyPaymentRequest):
    """Verify a payment confirmation and create its Order.

    Returns ``(order, created)``. Re-delivering a confirmation that already
    produced an Order returns that Order with ``created=False``.
    """
    payment_id = payload.razorpay_payment_id
    if not verify_signature(
        payload.razorpay_order_id, payment_id, payload.razorpay_signature, settings.RAZORPAY_KEY_SECRET
    ):
        logger.warning("Invalid payment signature for gateway order %s", payload.razorpay_order_id)
        raise SignatureError("Invalid payment signature")

    order = _existing_order(db, user, payment_id)
    if order is not None:
        logger.info("Payment %s already materialized as order %s", payment_id, order.id)
        return order, False

    intent = (
        db.query(PaymentIntent)
        .filter(PaymentIntent.gateway_order_id == payload.razorpay_order_id, PaymentIntent.user_id == user.id)
        .first()
    )
    if intent is None:
        logger.error("Verified payment %s has no intent for gateway order %s", payment_id, payload.razorpay_order_id)
        raise _materialization_failed(settings, payment_id)

    # the intent holds the lines exactly as they were priced for the gateway
    items = [CheckoutItem(**item) for item in intent.items]
    total = round(sum(item.total_price for item in items), 2)
    submitted = round(sum(item.total_price for item in payload.items), 2)
    if submitted != total:
        logger.warning(
            "Verify payload total %.2f differs from intent %s total %.2f (payment %s)",
            submitted,
            intent.gateway_order_id,
            total,
            payment_id,
        )

    try:
        order = Order(
            user_id=user.id,
            total_amount=total,
            phone_number=intent.phone_number,
            shipping_address=dict(intent.shipping_address),
            is_shop_pickup=intent.is_shop_pickup,
            payment_id=payment_id,
            payment_status=PaymentStatus.CAPTURED.value,
            status=OrderStatus.PENDING.value,
            items=[
                OrderItem(
                    product_id=item.product_id,
                    unit_id=item.unit_id,
                    product_name=item.product_name,
                    selected_unit=item.selected_unit,
                    quantity=item.quantity,
                    unit_price=item.unit_price if item.unit_price is not None else item.total_price / item.quantity,
                    total_price=item.total_price,
                )
                for item in items
            ],
            payment_transaction=PaymentTransaction(
                gateway_order_id=payload.razorpay_order_id,
                gateway_payment_id=payment_id,
                gateway_signature=payload.razorpay_signature,
                amount=total,
                status=PaymentStatus.CAPTURED.value,
            ),
        )
        db.add(order)
        db.flush()
        intent.status = PaymentStatus.CAPTURED.value
        intent.order_id = order.id
        for item in items:
            db.query(CartItem).filter(
                CartItem.user_id == user.id,
                CartItem.product_id == item.product_id,
                CartItem.unit_id == item.unit_id,
            ).delete(synchronize_session=False)
        db.commit()
    except IntegrityError:
        db.rollback()
        order = _existing_order(db, user, payment_id)
        if order is not None:
            logger.info("Payment %s materialized concurrently as order %s", payment_id, order.id)
            return order, False
        logger.exception("Could not create order for verified payment %s", payment_id)
        raise _materialization_failed(settings, payment_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not create order for verified payment %s", payment_id)
        raise _materialization_failed(settings, payment_id)

    db.refresh(order)
    logger.info("Created order %s for payment %s (%.2f)", order.id, payment_id, total)
    return order, True


def refund_order(db: Session, gateway: RazorpayGateway, order: Order, reason: str):
    """Refund an order's payment in full. Returns the gateway refund or None on failure."""
    transaction = order.payment_transaction
    if transaction is None:
        return None
    try:
        refund = gateway.refund(transaction.gateway_payment_id, to_minor_units(order.total_amount), reason)
    except PaymentError:
        logger.error("Refund for order %s failed; process it manually", order.id)
        return None
    transaction.status = PaymentStatus.REFUNDED.value
    transaction.refund_id = refund.get("id")
    transaction.refund_amount = refund.get("amount", 0) / 100
    order.payment_status = PaymentStatus.REFUNDED.value
    return refund


def handle_webhook(db: Session, event: dict):
    kind = event.get("event")
    payload = event.get("payload", {})
    if kind in ("payment.captured", "payment.failed"):
        payment = payload.get("payment", {}).get("entity", {})
        status = PaymentStatus.CAPTURED if kind == "payment.captured" else PaymentStatus.FAILED
        payment_id = payment.get("id")
        db.query(PaymentTransaction).filter(PaymentTransaction.gateway_payment_id == payment_id).update(
            {PaymentTransaction.status: status.value}, synchronize_session=False
        )
        changes = {Order.payment_status: status.value}
        if status is PaymentStatus.FAILED:
            changes[Order.status] = OrderStatus.CANCELLED.value
        db.query(Order).filter(Order.payment_id == payment_id).update(changes, synchronize_session=False)
    elif kind == "refund.created":
        refund = payload.get("refund", {}).get("entity", {})
        payment_id = refund.get("payment_id")
        db.query(PaymentTransaction).filter(PaymentTransaction.gateway_payment_id == payment_id).update(
            {
                PaymentTransaction.status: PaymentStatus.REFUNDED.value,
                PaymentTransaction.refund_id: refund.get("id"),
                PaymentTransaction.refund_amount: refund.get("amount", 0) / 100,
            },
            synchronize_session=False,
        )
        db.query(Order).filter(Order.payment_id == payment_id).update(
            {Order.payment_status: PaymentStatus.REFUNDED.value}, synchronize_session=False
        )
    else:
        logger.info("Unhandled webhook event: %s", kind)
        return False
    db.commit()
    logger.info("Webhook %s processed", kind)
    return True

