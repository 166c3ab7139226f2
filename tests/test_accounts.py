from datetime import timedelta

import pytest

import accounts
from conftest import auth_headers
from models import TokenPurpose, User, VerificationToken, utcnow


def _login(client, email, password):
    return client.post("/api/auth/token", data={"username": email, "password": password})


def _token(db, user_id, purpose):
    return (
        db.query(VerificationToken)
        .filter(VerificationToken.user_id == user_id, VerificationToken.purpose == purpose.value)
        .one()
    )


def test_registration_issues_verification_token(client, db):
    user_id = client.post(
        "/api/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "secret123"}
    ).json()["user"]["userId"]
    token = _token(db, user_id, TokenPurpose.EMAIL_VERIFICATION).token

    response = client.post("/api/auth/verify-email", json={"token": token})

    assert response.status_code == 200
    assert response.json()["user"]["emailVerified"] is not None
    assert db.query(VerificationToken).count() == 0
    session = client.get("/api/auth/session", headers=auth_headers(db.get(User, user_id))).json()
    assert session["emailVerified"] is not None


def test_verification_token_works_once(client, db, user, user_headers):
    client.post("/api/auth/verify-email/request", headers=user_headers)
    token = _token(db, user.id, TokenPurpose.EMAIL_VERIFICATION).token

    assert client.post("/api/auth/verify-email", json={"token": token}).status_code == 200
    again = client.post("/api/auth/verify-email", json={"token": token})
    assert again.status_code == 400
    assert again.json()["detail"] == "Invalid verification token"

    repeat = client.post("/api/auth/verify-email/request", headers=user_headers)
    assert repeat.status_code == 400


def test_new_request_replaces_old_token(db, user):
    first = accounts.issue_token(db, user, TokenPurpose.EMAIL_VERIFICATION).token
    second = accounts.issue_token(db, user, TokenPurpose.EMAIL_VERIFICATION).token

    assert first != second
    assert [t.token for t in db.query(VerificationToken).all()] == [second]


def test_expired_token_is_rejected_and_removed(client, db, user):
    token = accounts.issue_token(db, user, TokenPurpose.EMAIL_VERIFICATION)
    token.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    response = client.post("/api/auth/verify-email", json={"token": token.token})

    assert response.status_code == 400
    assert response.json()["detail"] == "Verification token has expired"
    assert db.query(VerificationToken).count() == 0
    db.expire_all()
    assert user.email_verified is None


def test_forgot_password_answers_the_same_for_unknown_email(client, db, user):
    known = client.post("/api/auth/forgot-password", json={"email": "Ravi@Example.com"})
    unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert db.query(VerificationToken).count() == 1


def test_reset_password(client, db, user):
    client.post("/api/auth/forgot-password", json={"email": user.email})
    token = _token(db, user.id, TokenPurpose.PASSWORD_RESET).token

    response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "fresh-pass"})

    assert response.status_code == 200
    assert _login(client, user.email, "secret123").status_code == 401
    assert _login(client, user.email, "fresh-pass").status_code == 200
    reused = client.post("/api/auth/reset-password", json={"token": token, "new_password": "other-pass"})
    assert reused.status_code == 400


def test_verification_token_cannot_reset_password(db, user):
    token = accounts.issue_token(db, user, TokenPurpose.EMAIL_VERIFICATION).token
    with pytest.raises(accounts.AccountTokenError):
        accounts.reset_password(db, token, "fresh-pass")


def test_recent_products_most_recent_first(client, db, user_headers, admin_headers, product):
    others = []
    for name in ("Neem Oil", "Urea", "Drip Kit", "Sprayer"):
        body = {
            "name": name,
            "category": "Tools",
            "units": [{"number": 1, "type": "piece", "actual_price": 500, "discounted_price": 450}],
        }
        others.append(client.post("/api/admin/products", json=body, headers=admin_headers).json()["id"])

    for product_id in [product.id, *others, product.id]:
        response = client.post("/api/user/recent-products", json={"product_id": product_id}, headers=user_headers)
        assert response.json() == {"success": True}

    recent = client.get("/api/user/recent-products", headers=user_headers).json()
    assert [r["id"] for r in recent] == [product.id, others[3], others[2], others[1]]
    assert (recent[0]["price"], recent[0]["unit"]) == (2000, "5 kg")
    assert recent[0]["image"] == "https://images.example.com/wheat.jpg"


def test_recent_products_need_a_real_product(client, user_headers):
    response = client.post("/api/user/recent-products", json={"product_id": 404}, headers=user_headers)
    assert response.status_code == 404


def test_recent_products_are_per_user(client, user_headers, other_user, product):
    client.post("/api/user/recent-products", json={"product_id": product.id}, headers=user_headers)
    assert client.get("/api/user/recent-products", headers=auth_headers(other_user)).json() == []
