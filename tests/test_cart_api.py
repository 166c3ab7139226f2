import json


def test_cart_requires_login(client):
    response = client.get("/api/cart")
    assert response.status_code == 401
    assert response.json()["detail"] == "Unauthorized"


def test_add_update_and_remove_through_api(client, user_headers, product, unit_5kg, unit_10kg):
    response = client.post(
        "/api/cart", json={"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 2}, headers=user_headers
    )
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 4000
    assert body["count"] == 2
    assert body["items"][0]["selected_unit"] == "5 kg"

    response = client.put(
        "/api/cart",
        json={"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 1, "new_unit_id": unit_10kg.id},
        headers=user_headers,
    )
    assert response.status_code == 200
    assert [(i["unit_id"], i["quantity"]) for i in response.json()["items"]] == [(unit_10kg.id, 1)]

    response = client.delete("/api/cart", params={"product_id": product.id}, headers=user_headers)
    assert response.status_code == 200
    assert response.json()["items"] == []


def test_failed_add_returns_error_and_leaves_cart(client, user_headers, product, unit_10kg):
    response = client.post(
        "/api/cart", json={"product_id": product.id, "unit_id": unit_10kg.id, "quantity": 5}, headers=user_headers
    )
    assert response.status_code == 400
    assert "available" in response.json()["detail"]
    assert client.get("/api/cart", headers=user_headers).json()["items"] == []


def test_guest_quote_prices_local_lines(client, product, unit_5kg):
    response = client.post(
        "/api/cart/quote", json={"items": [{"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 2}]}
    )
    assert response.status_code == 200
    assert response.json()["total"] == 4000


def test_migrate_endpoint_reports_failed_lines(client, user_headers, product, unit_5kg):
    payload = {
        "migration_key": "guest-1",
        "items": [
            {"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 2},
            {"product_id": 9999, "unit_id": 1, "quantity": 1},
        ],
    }
    body = client.post("/api/cart/migrate", json=payload, headers=user_headers).json()

    assert body["migrated"] == 1
    assert body["failed"][0]["product_id"] == 9999
    assert body["cart"]["total"] == 4000

    again = client.post("/api/cart/migrate", json=payload, headers=user_headers).json()
    assert again["migrated"] == 0
    assert again["cart"]["count"] == 2


def _guest(client, stored, action, product_id, unit_id=None, quantity=1, new_unit_id=None):
    payload = {
        "cart": stored,
        "action": action,
        "product_id": product_id,
        "unit_id": unit_id,
        "quantity": quantity,
        "new_unit_id": new_unit_id,
    }
    return client.post("/api/cart/guest", json=payload)


def test_guest_cart_changes_without_login(client, product, unit_5kg, unit_10kg):
    response = _guest(client, "[]", "add", product.id, unit_5kg.id, 2)
    assert response.status_code == 200
    body = response.json()
    assert json.loads(body["cart"]) == [
        {"product_id": product.id, "unit_id": unit_5kg.id, "quantity": 2, "selected_unit": "5 kg"}
    ]
    assert (body["total"], body["count"]) == (4000, 2)

    body = _guest(client, body["cart"], "update", product.id, unit_5kg.id, 1, new_unit_id=unit_10kg.id).json()
    assert [(i["unit_id"], i["quantity"]) for i in body["items"]] == [(unit_10kg.id, 1)]

    body = _guest(client, body["cart"], "remove", product.id).json()
    assert json.loads(body["cart"]) == []


def test_guest_add_beyond_stock_is_refused(client, product, unit_5kg, unit_10kg):
    stored = _guest(client, "[]", "add", product.id, unit_5kg.id, 1).json()["cart"]

    response = _guest(client, stored, "add", product.id, unit_10kg.id, 4)

    assert response.status_code == 400
    assert "available" in response.json()["detail"]


def test_guest_update_of_missing_line_is_refused(client, product, unit_5kg):
    response = _guest(client, "[]", "update", product.id, unit_5kg.id, 3)
    assert response.status_code == 400
    assert response.json()["detail"] == "Item not in cart"


def test_guest_cart_that_is_not_json_is_refused(client, product, unit_5kg):
    response = _guest(client, "{not json", "add", product.id, unit_5kg.id)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid guest cart"
