"""
Request and response bodies for the AgriStore API.

Database rows are returned through the *Out models, which read straight from
the SQLAlchemy objects (from_attributes).
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import OrderStatus, ProductStatus, Role, SubmissionStatus


def _ten_digit_phone(value: str) -> str:
    if not re.fullmatch(r"[0-9]{10}", re.sub(r"\D", "", value)):
        raise ValueError("Invalid phone number format")
    return value.strip()


# ----------------------- Auth -----------------------
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class ProfileUpdate(BaseModel):
    name: Optional[str] = None


class PasswordUpdate(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class PasswordSetup(BaseModel):
    new_password: str = Field(..., min_length=6)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class RecentViewRequest(BaseModel):
    product_id: int


class RecentProductOut(BaseModel):
    id: int
    name: str
    url_slug: str
    image: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    price: float
    unit: str
    viewed_at: datetime



# ----------------------- Catalog -----------------------
class UnitIn(BaseModel):
    id: Optional[int] = Field(None, description="Existing unit to update in place")
    number: float = Field(..., gt=0, description="Quantity of the pack, e.g. 5 for '5 kg'")
    type: str = Field(..., min_length=1, description="Measure, e.g. 'kg'")
    actual_price: float = Field(..., ge=0)
    discounted_price: float = Field(..., ge=0)
    stock: Optional[int] = Field(None, ge=0, description="None means unlimited")
    status: ProductStatus = ProductStatus.ACTIVE


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    url_slug: Optional[str] = Field(None, description="Derived from the name when omitted")
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    description: str = ""
    images: List[str] = Field(default_factory=list)
    status: ProductStatus = ProductStatus.ACTIVE
    units: List[UnitIn] = Field(..., min_length=1)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    url_slug: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    description: Optional[str] = None
    images: Optional[List[str]] = None
    status: Optional[ProductStatus] = None
    units: Optional[List[UnitIn]] = Field(None, min_length=1)


class UnitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    number: float
    type: str
    label: str
    actual_price: float
    discounted_price: float
    stock: Optional[int] = None
    status: str


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    url_slug: str
    category: str
    subcategory: Optional[str] = None
    description: Optional[str] = ""
    images: List[str] = []
    rating: float = 0
    review_count: int = 0
    status: str
    created_at: Optional[datetime] = None
    units: List[UnitOut] = []


class RatingIn(BaseModel):
    stars: int = Field(..., ge=1, le=5)


class ReviewIn(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v):
        if not v.strip():
            raise ValueError("Review text is required")
        return v.strip()


class ReviewOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    product_id: int
    text: str
    created_at: Optional[datetime] = None


# ----------------------- Cart -----------------------
class CartAddRequest(BaseModel):
    product_id: int
    unit_id: int
    quantity: int = Field(1, ge=1)


class CartUpdateRequest(BaseModel):
    product_id: int
    unit_id: int
    quantity: int = Field(..., description="0 or less removes the line")
    new_unit_id: Optional[int] = Field(None, description="Move the line to another unit of the same product")


class GuestCartLine(BaseModel):
    product_id: int
    unit_id: int
    quantity: int = Field(..., ge=1)
    selected_unit: Optional[str] = None


class CartMigrateRequest(BaseModel):
    migration_key: str = Field(..., min_length=1, description="Identifier of the guest cart being migrated")
    items: List[GuestCartLine] = Field(default_factory=list)


class CartQuoteRequest(BaseModel):
    items: List[GuestCartLine] = Field(default_factory=list)


class GuestCartMutationRequest(BaseModel):
    """A change to a cart kept in browser storage; ``cart`` is the stored JSON as-is."""

    cart: str = Field("[]", description="Serialized guest cart lines")
    action: Literal["add", "update", "remove"]
    product_id: int
    unit_id: Optional[int] = None
    quantity: int = 1
    new_unit_id: Optional[int] = None



class CartLineOut(BaseModel):
    id: Optional[int] = None
    product_id: int
    unit_id: int
    product_name: str
    selected_unit: str
    quantity: int
    unit_price: float
    actual_price: float
    line_total: float
    image: Optional[str] = None


class CartOut(BaseModel):
    items: List[CartLineOut]
    count: int
    total: float


class FavoriteRequest(BaseModel):
    product_id: int


# ----------------------- Checkout -----------------------
class CheckoutItem(BaseModel):
    product_id: int
    unit_id: int
    selected_unit: str
    quantity: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0)
    product_name: str
    unit_price: Optional[float] = Field(None, ge=0)


class AddressIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)
    landmark: Optional[str] = None
    is_default: bool = False


class AddressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    landmark: Optional[str] = None
    is_default: bool = False


class CheckoutReviewRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    address_id: Optional[int] = None
    address: Optional[AddressIn] = None
    is_shop_pickup: bool = False


class CreatePaymentRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    address_id: Optional[int] = None
    address: Optional[AddressIn] = None
    is_shop_pickup: bool = False


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    items: List[CheckoutItem] = Field(..., min_length=1)
    address: Optional[Dict[str, Any]] = None
    phone_number: Optional[str] = None
    is_shop_pickup: bool = False


# ----------------------- Orders -----------------------
class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    unit_id: Optional[int] = None
    product_name: Optional[str] = None
    selected_unit: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float


class PaymentTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    gateway_order_id: str
    gateway_payment_id: str
    amount: float
    status: str
    refund_id: Optional[str] = None
    refund_amount: Optional[float] = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    status: str
    total_amount: float
    phone_number: str
    shipping_address: Dict[str, Any]
    is_shop_pickup: bool
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    delivery_date: Optional[datetime] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemOut] = []
    payment_transaction: Optional[PaymentTransactionOut] = None


class ApproveOrderRequest(BaseModel):
    delivery_date: Optional[datetime] = None
    is_shop_pickup: bool = False


class RejectOrderRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# ----------------------- Moderation -----------------------
class ContactIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str
    message: str = Field(..., min_length=1)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return _ten_digit_phone(v)


class SellerIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str
    business_name: str = Field(..., min_length=1)
    business_type: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return _ten_digit_phone(v)


class ModerationUpdate(BaseModel):
    status: Optional[SubmissionStatus] = None
    admin_notes: Optional[str] = None


class ContactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[int] = None
    name: str
    email: str
    phone: str
    message: str
    status: str
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None


class SellerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    email: str
    phone: str
    business_name: str
    business_type: str
    description: str
    status: str
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None


class NewsletterIn(BaseModel):
    email: EmailStr


class NewsletterUpdate(BaseModel):
    is_active: bool


class SubscriberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    is_active: bool
    created_at: Optional[datetime] = None


class RoleUpdate(BaseModel):
    role: Role


class AdminUserOut(BaseModel):
    id: int
    name: str
    email: str
    role: str
    join_date: Optional[str] = None
    cart_items: int
    favorites: int
    orders: int


# ----------------------- AI helpers -----------------------
class DescriptionRequest(BaseModel):
    product_name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    language: str = "en"


class UnitSuggestionRequest(BaseModel):
    product_name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    current_unit: str = Field(..., min_length=1)
    existing_units: List[str] = Field(default_factory=list)


class ImageSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    count: int = Field(12, ge=1, le=30)
