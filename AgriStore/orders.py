import logging
from datetime import datetime

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session, selectinload

from errors import NotFoundError, StoreError
from models import Order, OrderStatus, User
from payments import RazorpayGateway, refund_order

logger = logging.getLogger(__name__)

FINAL_STATUSES = {OrderStatus.REJECTED.value, OrderStatus.CANCELLED.value}
ADMIN_SETTABLE = {
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
}


class OrderStateError(StoreError):
    pass


def _orders(db: Session):
    return db.query(Order).options(selectinload(Order.items), selectinload(Order.payment_transaction))


def user_orders(db: Session, user_id: int, status: str = None):
    query = _orders(db).filter(Order.user_id == user_id)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc())


def all_orders(db: Session, status: str = None, search: str = None):
    query = _orders(db).join(User, Order.user_id == User.id)
    if status:
        query = query.filter(Order.status == status)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                cast(Order.id, String).ilike(pattern),
                Order.phone_number.ilike(pattern),
                User.name.ilike(pattern),
                User.email.ilike(pattern),
            )
        )
    return query.order_by(Order.created_at.desc(), Order.id.desc())


def get_order(db: Session, order_id: int, user_id: int = None) -> Order:
    query = _orders(db).filter(Order.id == order_id)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    order = query.first()
    if not order:
        raise NotFoundError("Order not found")
    return order


def _require_pending(order: Order, message: str):
    if order.status != OrderStatus.PENDING.value:
        raise OrderStateError(message)


def cancel_order(db: Session, order_id: int, user_id: int) -> Order:
    order = get_order(db, order_id, user_id)
    _require_pending(order, "Cannot cancel order. Only pending orders can be cancelled.")
    order.status = OrderStatus.CANCELLED.value
    db.commit()
    db.refresh(order)
    logger.info("Order %s cancelled by customer %s", order.id, user_id)
    return order


def approve_order(db: Session, order_id: int, delivery_date: datetime = None, is_shop_pickup: bool = False) -> Order:
    order = get_order(db, order_id)
    _require_pending(order, "Order is not pending approval")
    order.status = OrderStatus.APPROVED.value
    order.delivery_date = delivery_date
    order.is_shop_pickup = is_shop_pickup
    db.commit()
    db.refresh(order)
    logger.info("Order %s approved", order.id)
    return order


def reject_order(db: Session, gateway: RazorpayGateway, order_id: int, reason: str):
    """Reject a pending order and refund it. A failed refund does not block the rejection."""
    order = get_order(db, order_id)
    _require_pending(order, "Order is not pending approval")
    refund = refund_order(db, gateway, order, f"Order rejected: {reason}")
    order.status = OrderStatus.REJECTED.value
    order.admin_notes = reason
    db.commit()
    db.refresh(order)
    logger.info("Order %s rejected (refund %s)", order.id, refund.get("id") if refund else "not issued")
    return order, refund


def set_status(db: Session, order_id: int, status: OrderStatus) -> Order:
    if status not in ADMIN_SETTABLE:
        raise OrderStateError(f"Use the approve or reject action to set {status.value}")
    order = get_order(db, order_id)
    if order.status in FINAL_STATUSES:
        raise OrderStateError(f"Order is already {order.status}")
    order.status = status.value
    db.commit()
    db.refresh(order)
    return order
