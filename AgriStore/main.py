import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

import accounts
import ai_helpers
import cart
import catalog
import checkout
import favorites
import moderation
import orders
import payments
import recent_products
from database import Base, engine, get_db, paginate
from errors import StoreError
from models import ContactSubmission, NewsletterSubscriber, Role, SellerApplication, TokenPurpose, User
from schemas import (
    AddressIn,
    AddressOut,
    AdminUserOut,
    ApproveOrderRequest,
    CartAddRequest,
    CartMigrateRequest,
    CartOut,
    CartQuoteRequest,
    CartUpdateRequest,
    CheckoutReviewRequest,
    ContactIn,
    ContactOut,
    CreatePaymentRequest,
    DescriptionRequest,
    FavoriteRequest,
    ForgotPasswordRequest,
    GuestCartMutationRequest,
    ImageSearchRequest,
    ModerationUpdate,
    NewsletterIn,
    NewsletterUpdate,
    OrderOut,
    OrderStatusUpdate,
    PasswordReset,
    PasswordSetup,
    PasswordUpdate,
    ProductIn,
    ProductOut,
    ProductUpdate,
    ProfileUpdate,
    RatingIn,
    RecentProductOut,
    RecentViewRequest,
    RegisterRequest,
    RejectOrderRequest,
    ReviewIn,
    ReviewOut,
    RoleUpdate,
    SellerIn,
    SellerOut,
    SubscriberOut,
    TokenRequest,
    UnitSuggestionRequest,
    VerifyPaymentRequest,
)
from security import (
    create_access_token,
    get_current_user,
    get_optional_user,
    get_password_hash,
    require_admin,
    session_payload,
    verify_password,
)
from settings import Settings, get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="An API for an agricultural store: catalog, carts, checkout with Razorpay, and order approval",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/", tags=["Root"])
def read_root():
    return {"message": "AgriStore API is running!"}


# Authentication
@app.post("/api/auth/register", tags=["Users"], summary="Register a new customer", status_code=status.HTTP_201_CREATED)
def register_user(request: RegisterRequest, db: Session = Depends(get_db)):
    email = request.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists with this email")
    new_user = User(
        name=request.name.strip(),
        email=email,
        password_hash=get_password_hash(request.password),
        role=Role.CUSTOMER.value,
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    logger.info("Registered user %s", new_user.id)
    accounts.issue_token(db, new_user, TokenPurpose.EMAIL_VERIFICATION)
    return {"message": "User registered successfully", "user": session_payload(new_user)}


@app.post("/api/auth/token", tags=["Authentication"], summary="Generate an access token")
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    user = db.query(User).filter(User.email == form_data.username.lower()).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    access_token = create_access_token(user, settings)
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/api/auth/session", tags=["Authentication"], summary="Current session, or null when logged out")
def read_session(user: Optional[User] = Depends(get_optional_user)):
    return session_payload(user) if user else None


@app.put("/api/user/profile", tags=["Users"], summary="Update the profile")
def update_profile(data: ProfileUpdate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if data.name is not None:
        user.name = data.name.strip()
    db.commit()
    db.refresh(user)
    return session_payload(user)


@app.put("/api/user/password", tags=["Users"], summary="Change the password")
def update_password(data: PasswordUpdate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if not user.password_hash:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No password set; use setup-password")
    if not verify_password(data.current_password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    user.password_hash = get_password_hash(data.new_password)
    db.commit()
    return {"message": "Password updated successfully"}


@app.post("/api/user/setup-password", tags=["Users"], summary="Set a password on an OAuth-only account")
def setup_password(data: PasswordSetup, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if user.password_hash:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password already set")
    user.password_hash = get_password_hash(data.new_password)
    db.commit()
    return {"message": "Password set successfully"}


@app.post("/api/auth/verify-email/request", tags=["Authentication"], summary="Send a new verification link")
def request_email_verification(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    accounts.request_email_verification(db, user)
    return {"message": "Verification email sent"}


@app.post("/api/auth/verify-email", tags=["Authentication"], summary="Confirm an email address")
def verify_email(data: TokenRequest, db: Session = Depends(get_db)):
    user = accounts.verify_email(db, data.token)
    return {"message": "Email verified successfully", "user": session_payload(user)}


@app.post("/api/auth/forgot-password", tags=["Authentication"], summary="Start a password reset")
def forgot_password(data: ForgotPasswordRequest, db: Session = Depends(get_db)):
    accounts.request_password_reset(db, data.email)
    return {"message": "If an account with that email exists, you will receive a password reset link."}


@app.post("/api/auth/reset-password", tags=["Authentication"], summary="Set a new password from a reset link")
def reset_password(data: PasswordReset, db: Session = Depends(get_db)):
    accounts.reset_password(db, data.token, data.new_password)
    return {"message": "Password reset successfully"}


# Recently viewed
@app.get("/api/user/recent-products", tags=["Users"], summary="Recently viewed products")
def list_recent_products(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [RecentProductOut(**card) for card in recent_products.list_recent(db, user.id)]


@app.post("/api/user/recent-products", tags=["Users"], summary="Record a product view")
def track_product_view(data: RecentViewRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    recent_products.record_view(db, user.id, data.product_id)
    return {"success": True}



# Addresses
@app.get("/api/user/addresses", tags=["Addresses"], summary="List saved addresses")
def list_addresses(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    rows = checkout.list_addresses(db, user.id)
    return {"addresses": [AddressOut.model_validate(row) for row in rows]}


@app.post("/api/user/addresses", tags=["Addresses"], summary="Save an address", status_code=status.HTTP_201_CREATED)
def add_address(data: AddressIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return AddressOut.model_validate(checkout.create_address(db, user.id, data))


@app.put("/api/user/addresses/{address_id}", tags=["Addresses"], summary="Update a saved address")
def edit_address(
    address_id: int, data: AddressIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    return AddressOut.model_validate(checkout.update_address(db, user.id, address_id, data))


@app.delete("/api/user/addresses/{address_id}", tags=["Addresses"], summary="Delete a saved address")
def remove_address(address_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    checkout.delete_address(db, user.id, address_id)
    return {"message": "Address deleted successfully"}


# Products
@app.get("/api/products", tags=["Products"], summary="List active products")
def list_products(
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Session = Depends(get_db),
):
    query = catalog.search_products(
        db, category=category, subcategory=subcategory, search=search, sort_by=sort_by, sort_order=sort_order
    )
    products, pagination = paginate(query, page, limit)
    return {"products": [ProductOut.model_validate(p) for p in products], "pagination": pagination}


@app.get("/api/products/{id_or_slug}", tags=["Products"], summary="Get a product by id or URL slug")
def read_product(id_or_slug: str, db: Session = Depends(get_db)):
    return ProductOut.model_validate(catalog.get_product(db, id_or_slug))


@app.get("/api/products/{product_id}/ratings", tags=["Products"], summary="Rating summary of a product")
def read_ratings(product_id: int, db: Session = Depends(get_db)):
    product = catalog.get_product(db, product_id)
    return catalog.rating_summary(db, product.id)


@app.post("/api/products/{product_id}/ratings", tags=["Products"], summary="Rate a purchased product")
def rate_product(
    product_id: int, data: RatingIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    catalog.rate_product(db, user.id, product_id, data.stars)
    return {"message": "Rating submitted successfully", **catalog.rating_summary(db, product_id)}


@app.get("/api/products/{product_id}/reviews", tags=["Products"], summary="List reviews of a product")
def read_reviews(
    product_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    product = catalog.get_product(db, product_id)
    reviews, pagination = paginate(catalog.list_reviews(db, product.id), page, limit)
    return {
        "reviews": [
            {**ReviewOut.model_validate(r).model_dump(), "user_name": r.user.name if r.user else None}
            for r in reviews
        ],
        "pagination": pagination,
    }


@app.post(
    "/api/products/{product_id}/reviews",
    tags=["Products"],
    summary="Review a purchased product",
    status_code=status.HTTP_201_CREATED,
)
def review_product(
    product_id: int, data: ReviewIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    return ReviewOut.model_validate(catalog.add_review(db, user.id, product_id, data.text))


# Product administration
@app.get("/api/admin/products", tags=["Admin"], summary="List products in any status")
def admin_list_products(
    status_filter: Optional[str] = Query(None, alias="status"),
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    query = catalog.search_products(db, category=category, search=search, status=status_filter)
    products, pagination = paginate(query, page, limit)
    return {"products": [ProductOut.model_validate(p) for p in products], "pagination": pagination}


@app.post("/api/admin/products", tags=["Admin"], summary="Add a new product", status_code=status.HTTP_201_CREATED)
def admin_create_product(data: ProductIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return ProductOut.model_validate(catalog.create_product(db, data))


@app.get("/api/admin/products/{product_id}", tags=["Admin"], summary="Get a product")
def admin_read_product(product_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return ProductOut.model_validate(catalog.get_product(db, product_id))


@app.put("/api/admin/products/{product_id}", tags=["Admin"], summary="Update an existing product")
def admin_update_product(
    product_id: int, data: ProductUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)
):
    return ProductOut.model_validate(catalog.update_product(db, product_id, data))


@app.delete("/api/admin/products/{product_id}", tags=["Admin"], summary="Delete a product")
def admin_delete_product(product_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    catalog.delete_product(db, product_id)
    return {"message": "Product deleted successfully"}


# Cart
def _cart_response(db: Session, store: cart.CartStore) -> CartOut:
    lines, total, count = cart.price_lines(db, store.items())
    return CartOut(items=lines, count=count, total=total)


def _run(db: Session, store: cart.CartStore, mutation: cart.CartMutation) -> CartOut:
    cart.apply_mutation(db, store, mutation).raise_for_state()
    return _cart_response(db, store)


@app.get("/api/cart", tags=["Cart"], summary="Get the cart priced at current prices")
def read_cart(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _cart_response(db, cart.DatabaseCartStore(db, user.id))


@app.post("/api/cart", tags=["Cart"], summary="Add a unit of a product to the cart")
def add_to_cart(data: CartAddRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    mutation = cart.CartMutation(cart.Action.ADD, data.product_id, data.unit_id, data.quantity)
    return _run(db, cart.DatabaseCartStore(db, user.id), mutation)


@app.put("/api/cart", tags=["Cart"], summary="Change quantity or unit of a cart line")
def update_cart(data: CartUpdateRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    mutation = cart.CartMutation(
        cart.Action.UPDATE, data.product_id, data.unit_id, data.quantity, new_unit_id=data.new_unit_id
    )
    return _run(db, cart.DatabaseCartStore(db, user.id), mutation)


@app.delete("/api/cart", tags=["Cart"], summary="Remove a product (or one of its units) from the cart")
def remove_from_cart(
    product_id: int,
    unit_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    mutation = cart.CartMutation(cart.Action.REMOVE, product_id, unit_id)
    return _run(db, cart.DatabaseCartStore(db, user.id), mutation)


@app.post("/api/cart/migrate", tags=["Cart"], summary="Merge the guest cart into the account cart")
def migrate_cart(data: CartMigrateRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    local = cart.LocalCartStore([cart.CartLine(**line.model_dump()) for line in data.items])
    server = cart.DatabaseCartStore(db, user.id)
    results = cart.migrate_guest_cart(db, local, server, data.migration_key)
    return {
        "cart": _cart_response(db, server),
        "migrated": sum(1 for m in results if m.state is cart.MutationState.APPLIED),
        "failed": [
            {"product_id": m.product_id, "unit_id": m.unit_id, "detail": m.error.detail}
            for m in results
            if m.state is cart.MutationState.FAILED
        ],
    }


@app.post("/api/cart/quote", tags=["Cart"], summary="Price a guest cart")
def quote_cart(data: CartQuoteRequest, db: Session = Depends(get_db)):
    local = cart.LocalCartStore([cart.CartLine(**line.model_dump()) for line in data.items])
    return _cart_response(db, local)


@app.post("/api/cart/guest", tags=["Cart"], summary="Apply a change to a guest cart")
def mutate_guest_cart(data: GuestCartMutationRequest, db: Session = Depends(get_db)):
    local = cart.LocalCartStore.from_json(data.cart)
    mutation = cart.CartMutation(
        cart.Action(data.action), data.product_id, data.unit_id, data.quantity, new_unit_id=data.new_unit_id
    )
    priced = _run(db, local, mutation)
    return {"cart": local.to_json(), **priced.model_dump()}



# Favorites
@app.get("/api/favorites", tags=["Favorites"], summary="List favorite products")
def list_favorites(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"favorites": [ProductOut.model_validate(p) for p in favorites.list_favorites(db, user.id)]}


@app.post("/api/favorites", tags=["Favorites"], summary="Add a product to favorites")
def add_favorite(data: FavoriteRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    added = favorites.add_favorite(db, user.id, data.product_id)
    return {"message": "Added to favorites" if added else "Already in favorites", "favorited": True}


@app.delete("/api/favorites/{product_id}", tags=["Favorites"], summary="Remove a product from favorites")
def remove_favorite(product_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    favorites.remove_favorite(db, user.id, product_id)
    return {"message": "Removed from favorites", "favorited": False}


@app.post("/api/favorites/toggle", tags=["Favorites"], summary="Toggle a product in favorites")
def toggle_favorite(data: FavoriteRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"favorited": favorites.toggle_favorite(db, user.id, data.product_id)}


# Checkout
@app.get("/api/checkout/items", tags=["Checkout"], summary="Checkout items from the cart or a Buy Now click")
def checkout_items(
    source: Optional[str] = None,
    product_id: Optional[int] = None,
    unit_id: Optional[int] = None,
    quantity: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if source == "cart":
        items = checkout.items_from_cart(db, user.id)
    elif product_id is not None and unit_id is not None:
        items = [checkout.buy_now_item(db, product_id, unit_id, quantity)]
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No items to check out")
    return {"items": items, "checkoutItems": checkout.encode_items(items)}


@app.post("/api/checkout/review", tags=["Checkout"], summary="Review lines, address and delivery before paying")
def checkout_review(
    data: CheckoutReviewRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    if data.address_id is not None:
        address = checkout.address_snapshot(checkout.get_address(db, user.id, data.address_id))
    elif data.address is not None:
        address = checkout.address_snapshot(data.address)
    else:
        address = None
    return checkout.review_summary(data.items, address, data.is_shop_pickup)


# Payment
@app.post("/api/payment/create-order", tags=["Payment"], summary="Register the payment amount with Razorpay")
def create_payment_order(
    data: CreatePaymentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: payments.RazorpayGateway = Depends(payments.get_gateway),
    settings: Settings = Depends(get_settings),
):
    items, total = checkout.quote_items(db, data.items)
    address = checkout.resolve_address(db, user.id, data.address_id, data.address)
    intent = payments.create_payment_intent(
        db, gateway, settings, user, items, total, address, data.phone_number, data.is_shop_pickup
    )
    return {
        "orderId": intent.gateway_order_id,
        "amount": payments.to_minor_units(total),
        "currency": intent.currency,
        "key": settings.RAZORPAY_KEY_ID,
        "items": items,
        "totalAmount": total,
        "checkoutItems": checkout.encode_items(items),
    }


@app.post("/api/payment/verify", tags=["Payment"], summary="Verify a payment and create the order")
def verify_payment(
    data: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    order, created = payments.verify_and_materialize(db, settings, user, data)
    return {
        "success": True,
        "orderId": order.id,
        "created": created,
        "message": "Order placed successfully" if created else "Order already placed for this payment",
    }


@app.post("/api/payment/webhook", tags=["Payment"], summary="Razorpay webhook")
async def payment_webhook(
    request: Request, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
):
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    if not payments.verify_webhook_signature(body, signature, settings.RAZORPAY_WEBHOOK_SECRET):
        logger.warning("Rejected webhook with invalid signature")
        raise payments.SignatureError("Invalid webhook signature")
    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook body")
    handled = await run_in_threadpool(payments.handle_webhook, db, event)
    return {"status": "ok", "handled": handled}


# Orders
@app.get("/api/orders", tags=["Orders"], summary="List my orders")
def list_my_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows, pagination = paginate(orders.user_orders(db, user.id, status_filter), page, limit)
    return {"orders": [OrderOut.model_validate(o) for o in rows], "pagination": pagination}


@app.get("/api/orders/{order_id}", tags=["Orders"], summary="Get one of my orders")
def read_my_order(order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return OrderOut.model_validate(orders.get_order(db, order_id, user.id))


@app.put("/api/orders/{order_id}/cancel", tags=["Orders"], summary="Cancel a pending order")
def cancel_my_order(order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    order = orders.cancel_order(db, order_id, user.id)
    return {"message": "Order cancelled successfully", "order": OrderOut.model_validate(order)}


@app.get("/api/admin/orders", tags=["Admin"], summary="List all orders")
def admin_list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    rows, pagination = paginate(orders.all_orders(db, status_filter, search), page, limit)
    return {
        "orders": [
            {**OrderOut.model_validate(o).model_dump(), "user": {"name": o.user.name, "email": o.user.email}}
            for o in rows
        ],
        "pagination": pagination,
    }


@app.post("/api/admin/orders/{order_id}/approve", tags=["Admin"], summary="Approve a pending order")
def admin_approve_order(
    order_id: int,
    data: Optional[ApproveOrderRequest] = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    data = data or ApproveOrderRequest()
    order = orders.approve_order(db, order_id, data.delivery_date, data.is_shop_pickup)
    return {"message": "Order approved successfully", "order": OrderOut.model_validate(order)}


@app.post("/api/admin/orders/{order_id}/reject", tags=["Admin"], summary="Reject and refund a pending order")
def admin_reject_order(
    order_id: int,
    data: RejectOrderRequest,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    gateway: payments.RazorpayGateway = Depends(payments.get_gateway),
):
    order, refund = orders.reject_order(db, gateway, order_id, data.reason)
    return {
        "message": "Order rejected and refund initiated" if refund else "Order rejected; refund must be processed manually",
        "order": OrderOut.model_validate(order),
        "refund": refund,
    }


@app.patch("/api/admin/orders/{order_id}/status", tags=["Admin"], summary="Update the status of an order")
def admin_update_order_status(
    order_id: int, data: OrderStatusUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)
):
    order = orders.set_status(db, order_id, data.status)
    return {"message": "Order status updated successfully", "order": OrderOut.model_validate(order)}


# Contact, sellers and newsletter
@app.post("/api/contact", tags=["Contact"], summary="Send a contact message", status_code=status.HTTP_201_CREATED)
def submit_contact(data: ContactIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    submission = moderation.submit_contact(db, user.id, data)
    return {"message": "Message sent successfully", "id": submission.id}


@app.post("/api/sellers", tags=["Sellers"], summary="Apply to sell", status_code=status.HTTP_201_CREATED)
def submit_seller(data: SellerIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    application = moderation.submit_seller_application(db, user.id, data)
    return {"message": "Application submitted successfully", "id": application.id}


@app.post("/api/newsletter", tags=["Newsletter"], summary="Subscribe to the newsletter")
def subscribe_newsletter(data: NewsletterIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"message": moderation.subscribe(db, data.email)}


@app.delete("/api/newsletter", tags=["Newsletter"], summary="Unsubscribe from the newsletter")
def unsubscribe_newsletter(email: str, db: Session = Depends(get_db)):
    moderation.unsubscribe(db, email)
    return {"message": "Successfully unsubscribed from newsletter"}


def _submissions(db: Session, model, status_filter, page, limit):
    query = db.query(model)
    if status_filter:
        query = query.filter(model.status == status_filter)
    return paginate(query.order_by(model.created_at.desc(), model.id.desc()), page, limit)


@app.get("/api/admin/contacts", tags=["Admin"], summary="List contact submissions")
def admin_list_contacts(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    rows, pagination = _submissions(db, ContactSubmission, status_filter, page, limit)
    return {"contacts": [ContactOut.model_validate(r) for r in rows], "pagination": pagination}


@app.patch("/api/admin/contacts/{contact_id}", tags=["Admin"], summary="Update a contact submission")
def admin_update_contact(
    contact_id: int, data: ModerationUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)
):
    return ContactOut.model_validate(moderation.update_submission(db, ContactSubmission, contact_id, data))


@app.delete("/api/admin/contacts/{contact_id}", tags=["Admin"], summary="Delete a contact submission")
def admin_delete_contact(contact_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    moderation.delete_row(db, ContactSubmission, contact_id)
    return {"message": "Contact submission deleted successfully"}


@app.get("/api/admin/sellers", tags=["Admin"], summary="List seller applications")
def admin_list_sellers(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    rows, pagination = _submissions(db, SellerApplication, status_filter, page, limit)
    return {"sellers": [SellerOut.model_validate(r) for r in rows], "pagination": pagination}


@app.patch("/api/admin/sellers/{seller_id}", tags=["Admin"], summary="Update a seller application")
def admin_update_seller(
    seller_id: int, data: ModerationUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)
):
    return SellerOut.model_validate(moderation.update_submission(db, SellerApplication, seller_id, data))


@app.delete("/api/admin/sellers/{seller_id}", tags=["Admin"], summary="Delete a seller application")
def admin_delete_seller(seller_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    moderation.delete_row(db, SellerApplication, seller_id)
    return {"message": "Seller application deleted successfully"}


@app.get("/api/admin/newsletter", tags=["Admin"], summary="List newsletter subscribers")
def admin_list_subscribers(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    query = db.query(NewsletterSubscriber).order_by(NewsletterSubscriber.created_at.desc(), NewsletterSubscriber.id.desc())
    rows, pagination = paginate(query, page, limit)
    return {"subscribers": [SubscriberOut.model_validate(r) for r in rows], "pagination": pagination}


@app.patch("/api/admin/newsletter/{subscriber_id}", tags=["Admin"], summary="Activate or deactivate a subscriber")
def admin_update_subscriber(
    subscriber_id: int, data: NewsletterUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)
):
    return SubscriberOut.model_validate(moderation.set_subscriber_active(db, subscriber_id, data.is_active))


@app.delete("/api/admin/newsletter/{subscriber_id}", tags=["Admin"], summary="Delete a subscriber")
def admin_delete_subscriber(subscriber_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    moderation.delete_row(db, NewsletterSubscriber, subscriber_id)
    return {"message": "Subscriber deleted successfully"}


# Users and stats
@app.get("/api/admin/users", tags=["Admin"], summary="List users with cart, favorite and order counts")
def admin_list_users(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return {"users": [AdminUserOut(**row) for row in moderation.user_rows(db)]}


@app.patch("/api/admin/users/{user_id}/role", tags=["Admin"], summary="Change the role of a user")
def admin_update_role(
    user_id: int, data: RoleUpdate, db: Session = Depends(get_db), admin: User = Depends(require_admin)
):
    if user_id == admin.id and data.role is not Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot remove your own admin role")
    return AdminUserOut(**moderation.set_role(db, user_id, data.role))


@app.get("/api/admin/stats", tags=["Admin"], summary="Store counters for the dashboard")
def admin_stats(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return moderation.stats(db)


# AI helpers
@app.post("/api/admin/ai/generate-description", tags=["Admin AI"], summary="Write a product description")
def admin_generate_description(
    data: DescriptionRequest, admin: User = Depends(require_admin), llm=Depends(ai_helpers.get_chat_model)
):
    description = ai_helpers.generate_description(llm, data.product_name, data.category, data.subcategory)
    return {"description": description, "language": data.language}


@app.post("/api/admin/ai/unit-suggestions", tags=["Admin AI"], summary="Suggest pack sizes for a product")
def admin_unit_suggestions(
    data: UnitSuggestionRequest, admin: User = Depends(require_admin), llm=Depends(ai_helpers.get_chat_model)
):
    suggestions = ai_helpers.suggest_units(
        llm, data.product_name, data.category, data.current_unit, data.existing_units
    )
    return {"suggestions": suggestions}


@app.post("/api/admin/images/search", tags=["Admin AI"], summary="Search stock photos on Unsplash")
def admin_image_search(
    data: ImageSearchRequest, settings: Settings = Depends(get_settings), admin: User = Depends(require_admin)
):
    return {"images": ai_helpers.search_images(settings, data.query, data.count)}
