import hashlib
import hmac
import json

from sqlalchemy.exc import OperationalError

import main
import payments
from conftest import TEST_SETTINGS, auth_headers, sign
from models import CartItem, Order, OrderItem, OrderStatus, PaymentIntent, PaymentStatus, PaymentTransaction, UserAddress
from payments import to_minor_units, verify_signature

ADDRESS = {
    "name": "Ravi Kumar",
    "phone": "9876543210",
    "address": "12 Market Road",
    "city": "Pune",
    "state": "Maharashtra",
    "pincode": "411001",
}


def _create_order(client, headers, items):
    response = client.post(
        "/api/payment/create-order",
        json={"items": items, "phone_number": "9876543210", "address": ADDRESS},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


def _verify(client, headers, created, payment_id="pay_test_1", signature=None, items=None):
    return client.post(
        "/api/payment/verify",
        json={
            "razorpay_order_id": created["orderId"],
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature or sign(created["orderId"], payment_id),
            "items": items if items is not None else created["items"],
            "address": ADDRESS,
            "phone_number": "9876543210",
        },
        headers=headers,
    )


def _buy_now(client, headers, product, unit, quantity):
    return client.get(
        "/api/checkout/items",
        params={"product_id": product.id, "unit_id": unit.id, "quantity": quantity},
        headers=headers,
    ).json()["items"]


def test_signature_check():
    good = sign("order_1", "pay_1", "secret")
    assert verify_signature("order_1", "pay_1", good, "secret")
    assert not verify_signature("order_1", "pay_2", good, "secret")
    assert not verify_signature("order_1", "pay_1", good, "")
    assert to_minor_units(4000) == 400000
    assert to_minor_units(19.99) == 1999


def test_guest_cart_to_paid_order(client, db, user, user_headers, gateway, product, unit_5kg):
    guest_line = {"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 2}
    assert client.post("/api/cart/quote", json={"items": [guest_line]}).json()["total"] == 4000

    client.post("/api/cart/migrate", json={"migration_key": "guest-1", "items": [guest_line]}, headers=user_headers)
    items = client.get("/api/checkout/items", params={"source": "cart"}, headers=user_headers).json()["items"]

    created = _create_order(client, user_headers, items)
    assert created["amount"] == 400000
    assert created["key"] == TEST_SETTINGS.RAZORPAY_KEY_ID
    assert gateway.orders[0]["amount"] == 400000

    response = _verify(client, user_headers, created)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["created"] is True

    order = db.get(Order, body["orderId"])
    assert order.total_amount == 4000
    assert order.status == OrderStatus.PENDING.value
    assert order.payment_status == PaymentStatus.CAPTURED.value
    assert order.shipping_address["city"] == "Pune"
    assert [(i.product_id, i.quantity, i.unit_price, i.total_price) for i in order.items] == [(product.id, 2, 2000, 4000)]
    assert order.payment_transaction.gateway_payment_id == "pay_test_1"
    assert db.query(CartItem).filter(CartItem.user_id == user.id).count() == 0

    intent = db.query(PaymentIntent).filter(PaymentIntent.gateway_order_id == created["orderId"]).one()
    assert intent.status == PaymentStatus.CAPTURED.value
    assert intent.order_id == order.id


def test_verifying_twice_creates_one_order(client, db, user_headers, product, unit_5kg):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 1))

    first = _verify(client, user_headers, created).json()
    second = _verify(client, user_headers, created).json()

    assert second["created"] is False
    assert second["orderId"] == first["orderId"]
    assert db.query(Order).count() == 1
    assert db.query(PaymentTransaction).count() == 1


def test_payment_of_another_user_is_forbidden(client, db, user_headers, other_user, product, unit_5kg):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 1))
    _verify(client, user_headers, created)

    response = _verify(client, auth_headers(other_user), created)
    assert response.status_code == 403


def test_invalid_signature_creates_nothing(client, db, user_headers, product, unit_5kg):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 1))

    response = _verify(client, user_headers, created, signature="0" * 64)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payment signature"
    assert db.query(Order).count() == 0
    assert db.query(PaymentTransaction).count() == 0


def test_order_keeps_quoted_price_after_catalog_change(client, db, user_headers, product, unit_5kg):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 2))
    unit_5kg.discounted_price = 1500
    db.commit()

    order_id = _verify(client, user_headers, created).json()["orderId"]

    item = db.get(Order, order_id).items[0]
    assert (item.unit_price, item.total_price) == (2000, 4000)


def test_order_follows_intent_when_submitted_total_differs(client, db, user_headers, product, unit_5kg):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 2))
    tampered = [{**created["items"][0], "total_price": 10}]

    response = _verify(client, user_headers, created, items=tampered)

    assert response.status_code == 200, response.text
    order = db.get(Order, response.json()["orderId"])
    assert order.total_amount == 4000
    assert [(i.unit_price, i.total_price) for i in order.items] == [(2000, 4000)]


def test_price_change_before_create_order_still_materializes(client, db, user_headers, gateway, product, unit_5kg):
    page_items = _buy_now(client, user_headers, product, unit_5kg, 2)
    unit_5kg.discounted_price = 2100
    db.commit()

    created = _create_order(client, user_headers, page_items)
    assert gateway.orders[0]["amount"] == 420000

    response = _verify(client, user_headers, created, items=page_items)

    assert response.status_code == 200, response.text
    order = db.get(Order, response.json()["orderId"])
    assert order.total_amount == 4200
    assert [(i.unit_price, i.total_price) for i in order.items] == [(2100, 4200)]
    assert order.payment_transaction.amount == 4200


def test_create_order_reprices_from_catalog(client, user_headers, product, unit_5kg):
    items = _buy_now(client, user_headers, product, unit_5kg, 2)
    items[0]["total_price"] = 1

    created = _create_order(client, user_headers, items)

    assert created["totalAmount"] == 4000
    assert created["items"][0]["total_price"] == 4000


def test_create_order_needs_an_address(client, db, user_headers, product, unit_5kg):
    items = _buy_now(client, user_headers, product, unit_5kg, 1)
    response = client.post(
        "/api/payment/create-order", json={"items": items, "phone_number": "9876543210"}, headers=user_headers
    )
    assert response.status_code == 400
    assert db.query(PaymentIntent).count() == 0


def test_gateway_failure_stores_no_intent(client, db, user_headers, gateway, product, unit_5kg):
    gateway.fail_create = True
    items = _buy_now(client, user_headers, product, unit_5kg, 1)
    response = client.post(
        "/api/payment/create-order",
        json={"items": items, "phone_number": "9876543210", "address": ADDRESS},
        headers=user_headers,
    )
    assert response.status_code == 502
    assert db.query(PaymentIntent).count() == 0
    assert db.query(UserAddress).count() == 0


def test_new_address_saved_with_the_intent(client, db, user, user_headers, product, unit_5kg):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 1))

    intent = db.query(PaymentIntent).filter(PaymentIntent.gateway_order_id == created["orderId"]).one()
    saved = db.query(UserAddress).filter(UserAddress.user_id == user.id).one()
    assert saved.city == intent.shipping_address["city"] == "Pune"


def test_failed_materialization_rolls_back(client, db, user_headers, product, unit_5kg, monkeypatch):
    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 1))

    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT INTO orders", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "flush", broken_flush)
    response = _verify(client, user_headers, created)
    monkeypatch.undo()

    assert response.status_code == 500
    assert response.json()["payment_id"] == "pay_test_1"
    assert db.query(Order).count() == 0
    assert db.query(OrderItem).count() == 0
    assert db.query(PaymentTransaction).count() == 0
    intent = db.query(PaymentIntent).filter(PaymentIntent.gateway_order_id == created["orderId"]).one()
    assert intent.status == PaymentStatus.CREATED.value
    assert intent.order_id is None


def test_verify_without_intent_reports_payment_id(client, user_headers, product, unit_5kg):
    items = _buy_now(client, user_headers, product, unit_5kg, 1)
    response = _verify(client, user_headers, {"orderId": "order_unknown", "items": items})

    assert response.status_code == 500
    assert response.json()["payment_id"] == "pay_test_1"
    assert response.json()["support_email"] == TEST_SETTINGS.SUPPORT_EMAIL


def test_verify_leaves_unpurchased_cart_lines(client, db, user, user_headers, product, unit_5kg, unit_10kg):
    client.post("/api/cart", json={"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 1}, headers=user_headers)
    client.post("/api/cart", json={"product_id": product.id, "unit_id": unit_10kg.id, "quantity": 1}, headers=user_headers)

    created = _create_order(client, user_headers, _buy_now(client, user_headers, product, unit_5kg, 1))
    _verify(client, user_headers, created)

    remaining = db.query(CartItem).filter(CartItem.user_id == user.id).all()
    assert [row.unit_id for row in remaining] == [unit_10kg.id]


def _webhook(client, event, secret=TEST_SETTINGS.RAZORPAY_WEBHOOK_SECRET):
    body = json.dumps(event).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return client.post(
        "/api/payment/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )


def test_webhook_payment_failed_cancels_order(client, db, user, make_order, unit_5kg):
    order = make_order(user, unit_5kg, payment_id="pay_hook")
    event = {"event": "payment.failed", "payload": {"payment": {"entity": {"id": "pay_hook"}}}}

    response = _webhook(client, event)

    assert response.json() == {"status": "ok", "handled": True}
    db.expire_all()
    assert order.status == OrderStatus.CANCELLED.value
    assert order.payment_status == PaymentStatus.FAILED.value


def test_webhook_refund_is_recorded(client, db, user, make_order, unit_5kg):
    order = make_order(user, unit_5kg, payment_id="pay_hook")
    event = {
        "event": "refund.created",
        "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_hook", "amount": 200000}}},
    }

    _webhook(client, event)

    db.expire_all()
    assert order.payment_status == PaymentStatus.REFUNDED.value
    assert order.payment_transaction.refund_amount == 2000


def test_webhook_with_bad_signature_is_rejected(client):
    response = _webhook(client, {"event": "payment.captured"}, secret="wrong")
    assert response.status_code == 400


def test_unhandled_webhook_event_is_acknowledged(client):
    assert _webhook(client, {"event": "order.paid"}).json()["handled"] is False


def test_webhook_updates_run_off_the_event_loop(client, db, user, make_order, unit_5kg, monkeypatch):
    order = make_order(user, unit_5kg, payment_id="pay_hook")
    order.payment_status = PaymentStatus.CREATED.value
    order.payment_transaction.status = PaymentStatus.CREATED.value
    db.commit()
    offloaded = []
    real = main.run_in_threadpool

    async def recording(func, *args, **kwargs):
        offloaded.append(func)
        return await real(func, *args, **kwargs)

    monkeypatch.setattr(main, "run_in_threadpool", recording)
    event = {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_hook"}}}}

    assert _webhook(client, event).json() == {"status": "ok", "handled": True}
    assert offloaded == [payments.handle_webhook]
    db.expire_all()
    assert order.payment_status == PaymentStatus.CAPTURED.value
    assert order.payment_transaction.status == PaymentStatus.CAPTURED.value
