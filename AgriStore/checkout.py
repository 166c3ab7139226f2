"""
Checkout assembly: the line items that travel from the cart or a "Buy Now"
button to the checkout page, the shipping address, and the review summary.
"""
import base64
import binascii
import json
import logging
from typing import List

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from cart import DatabaseCartStore, price_lines
from catalog import resolve_unit
from errors import NotFoundError, StoreError
from models import UserAddress
from schemas import AddressIn, CheckoutItem

logger = logging.getLogger(__name__)

DELIVERY_FEES = {"shop_pickup": 0.0, "home_delivery": 0.0}
ADDRESS_FIELDS = ("name", "phone", "address", "city", "state", "pincode", "landmark")

_items_adapter = TypeAdapter(List[CheckoutItem])


class CheckoutError(StoreError):
    pass


def encode_items(items: List[CheckoutItem]) -> str:
    """Serialize checkout items into a single URL-safe query parameter."""
    raw = json.dumps([item.model_dump() for item in items], separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_items(param: str) -> List[CheckoutItem]:
    try:
        raw = base64.urlsafe_b64decode(param.encode("ascii")).decode("utf-8")
        return _items_adapter.validate_python(json.loads(raw))
    except (binascii.Error, UnicodeError, ValueError, ValidationError) as exc:
        logger.warning("Rejected checkout items parameter: %s", exc)
        raise CheckoutError("Invalid checkout items")


def items_from_cart(db: Session, user_id: int) -> List[CheckoutItem]:
    priced, _, _ = price_lines(db, DatabaseCartStore(db, user_id).items())
    if not priced:
        raise CheckoutError("Your cart is empty")
    return [
        CheckoutItem(
            product_id=line["product_id"],
            unit_id=line["unit_id"],
            selected_unit=line["selected_unit"],
            quantity=line["quantity"],
            unit_price=line["unit_price"],
            total_price=line["line_total"],
            product_name=line["product_name"],
        )
        for line in priced
    ]


def buy_now_item(db: Session, product_id: int, unit_id: int, quantity: int = 1) -> CheckoutItem:
    if quantity < 1:
        raise CheckoutError("Quantity must be at least 1")
    product, unit = resolve_unit(db, product_id, unit_id, quantity)
    return CheckoutItem(
        product_id=product.id,
        unit_id=unit.id,
        selected_unit=unit.label,
        quantity=quantity,
        unit_price=unit.discounted_price,
        total_price=round(unit.discounted_price * quantity, 2),
        product_name=product.name,
    )


def _merge_lines(items: List[CheckoutItem]) -> List[CheckoutItem]:
    merged = {}
    for item in items:
        key = (item.product_id, item.unit_id)
        if key in merged:
            merged[key] = merged[key].model_copy(update={"quantity": merged[key].quantity + item.quantity})
        else:
            merged[key] = item
    return list(merged.values())


def quote_items(db: Session, items: List[CheckoutItem]):
    """Resolve every line against the catalog as it is right now.

    This is the price the customer is charged: the result is what the payment
    intent is created for and what the order lines will copy. Lines for the
    same product unit are merged first so stock is checked on their sum.
    """
    quoted = []
    total = 0.0
    for item in _merge_lines(items):
        product, unit = resolve_unit(db, item.product_id, item.unit_id, item.quantity)
        line_total = round(unit.discounted_price * item.quantity, 2)
        quoted.append(
            CheckoutItem(
                product_id=product.id,
                unit_id=unit.id,
                selected_unit=unit.label,
                quantity=item.quantity,
                unit_price=unit.discounted_price,
                total_price=line_total,
                product_name=product.name,
            )
        )
        total += line_total
    return quoted, round(total, 2)


# ----------------------- Addresses -----------------------
def address_snapshot(address) -> dict:
    if isinstance(address, dict):
        return {key: address.get(key) for key in ADDRESS_FIELDS}
    return {key: getattr(address, key) for key in ADDRESS_FIELDS}


def list_addresses(db: Session, user_id: int):
    return (
        db.query(UserAddress)
        .filter(UserAddress.user_id == user_id)
        .order_by(UserAddress.is_default.desc(), UserAddress.created_at.desc())
        .all()
    )


def get_address(db: Session, user_id: int, address_id: int) -> UserAddress:
    address = (
        db.query(UserAddress)
        .filter(UserAddress.id == address_id, UserAddress.user_id == user_id)
        .first()
    )
    if not address:
        raise NotFoundError("Address not found")
    return address


def _clear_default(db: Session, user_id: int, keep_id: int = None):
    query = db.query(UserAddress).filter(UserAddress.user_id == user_id, UserAddress.is_default.is_(True))
    if keep_id is not None:
        query = query.filter(UserAddress.id != keep_id)
    query.update({UserAddress.is_default: False}, synchronize_session=False)


def create_address(db: Session, user_id: int, data: AddressIn, commit: bool = True) -> UserAddress:
    if data.is_default:
        _clear_default(db, user_id)
    address = UserAddress(user_id=user_id, **data.model_dump())
    db.add(address)
    if not commit:
        db.flush()
        return address
    db.commit()
    db.refresh(address)
    return address


def update_address(db: Session, user_id: int, address_id: int, data: AddressIn) -> UserAddress:
    address = get_address(db, user_id, address_id)
    if data.is_default:
        _clear_default(db, user_id, keep_id=address.id)
    for key, value in data.model_dump().items():
        setattr(address, key, value)
    db.commit()
    db.refresh(address)
    return address


def delete_address(db: Session, user_id: int, address_id: int):
    db.delete(get_address(db, user_id, address_id))
    db.commit()


def resolve_address(db: Session, user_id: int, address_id: int = None, address: AddressIn = None) -> dict:
    """Pick a saved address or stage the new one, and return a snapshot of it.

    A new address is only flushed; it is committed along with the payment intent.
    """
    if address_id is not None:
        return address_snapshot(get_address(db, user_id, address_id))
    if address is not None:
        return address_snapshot(create_address(db, user_id, address, commit=False))
    raise CheckoutError("Address and phone number are required")


def review_summary(items: List[CheckoutItem], address: dict, is_shop_pickup: bool = False) -> dict:
    mode = "shop_pickup" if is_shop_pickup else "home_delivery"
    subtotal = round(sum(item.total_price for item in items), 2)
    fee = DELIVERY_FEES[mode]
    return {
        "items": [
            {
                "product_name": item.product_name,
                "selected_unit": item.selected_unit,
                "quantity": item.quantity,
                "line_total": item.total_price,
            }
            for item in items
        ],
        "address": address,
        "delivery": {"mode": mode, "fee": fee},
        "subtotal": subtotal,
        "total": round(subtotal + fee, 2),
    }
