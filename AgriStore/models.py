import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"


class ProductStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    LOW_STOCK = "LOW_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    CREATED = "CREATED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SubmissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    REVIEWED = "REVIEWED"
    RESPONDED = "RESPONDED"
    ARCHIVED = "ARCHIVED"


class TokenPurpose(str, enum.Enum):
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)  # null for OAuth-only accounts
    role = Column(String, default=Role.CUSTOMER.value, nullable=False)
    email_verified = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    cart_items = relationship("CartItem", back_populates="user", cascade="all, delete-orphan")
    favorites = relationship("Favorite", back_populates="user", cascade="all, delete-orphan")
    addresses = relationship("UserAddress", back_populates="user", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="user")


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, index=True, nullable=False)
    url_slug = Column(String, unique=True, index=True, nullable=False)
    category = Column(String, index=True, nullable=False)
    subcategory = Column(String, index=True, nullable=True)
    description = Column(Text, default="")
    images = Column(JSON, default=list)
    rating = Column(Float, default=0)  # average of Rating.stars
    review_count = Column(Integer, default=0)
    status = Column(String, default=ProductStatus.ACTIVE.value, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    units = relationship(
        "ProductUnit", back_populates="product", cascade="all, delete-orphan", order_by="ProductUnit.id"
    )
    ratings = relationship("Rating", back_populates="product", cascade="all, delete-orphan")
    reviews = relationship("Review", back_populates="product", cascade="all, delete-orphan")


class ProductUnit(Base):
    __tablename__ = "product_units"
    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    number = Column(Float, nullable=False)
    type = Column(String, nullable=False)  # kg, g, litre, packet...
    actual_price = Column(Float, nullable=False)
    discounted_price = Column(Float, nullable=False)
    stock = Column(Integer, nullable=True)  # None means unlimited
    status = Column(String, default=ProductStatus.ACTIVE.value, nullable=False)

    product = relationship("Product", back_populates="units")

    @property
    def label(self):
        return f"{self.number:g} {self.type}"


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (UniqueConstraint("user_id", "product_id"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    stars = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product", back_populates="ratings")


class Review(Base):
    __tablename__ = "reviews"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User")
    product = relationship("Product", back_populates="reviews")


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", "unit_id"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    unit_id = Column(Integer, ForeignKey("product_units.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    selected_unit = Column(String, nullable=True)  # display copy of ProductUnit.label
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="cart_items")
    product = relationship("Product")
    unit = relationship("ProductUnit")


class CartMigration(Base):
    __tablename__ = "cart_migrations"
    __table_args__ = (UniqueConstraint("user_id", "migration_key"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    migration_key = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "product_id"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="favorites")


class VerificationToken(Base):
    """One-time token mailed to a user: e-mail confirmation or password reset."""

    __tablename__ = "verification_tokens"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token = Column(String, unique=True, index=True, nullable=False)
    purpose = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User")


class RecentProduct(Base):
    __tablename__ = "recent_products"
    __table_args__ = (UniqueConstraint("user_id", "product_id"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    viewed_at = Column(DateTime, default=utcnow, nullable=False)

    product = relationship("Product")


class UserAddress(Base):
    __tablename__ = "user_addresses"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    address = Column(String, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    pincode = Column(String, nullable=False)
    landmark = Column(String, nullable=True)
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="addresses")


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, default=OrderStatus.PENDING.value, nullable=False)
    total_amount = Column(Float, nullable=False)
    phone_number = Column(String, nullable=False)
    shipping_address = Column(JSON, nullable=False)  # snapshot taken at checkout
    is_shop_pickup = Column(Boolean, default=False)
    payment_id = Column(String, unique=True, nullable=True)
    payment_status = Column(String, nullable=True)
    delivery_date = Column(DateTime, nullable=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payment_transaction = relationship("PaymentTransaction", back_populates="order", uselist=False)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    unit_id = Column(Integer, ForeignKey("product_units.id"), nullable=True)
    product_name = Column(String, nullable=True)
    selected_unit = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)  # price at the time of order
    total_price = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    id = Column(Integer, primary_key=True, index=True)
    gateway_order_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String, nullable=False)
    items = Column(JSON, nullable=False)
    shipping_address = Column(JSON, nullable=False)
    phone_number = Column(String, nullable=False)
    is_shop_pickup = Column(Boolean, default=False)
    status = Column(String, default=PaymentStatus.CREATED.value, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    gateway_order_id = Column(String, nullable=False)
    gateway_payment_id = Column(String, unique=True, index=True, nullable=False)
    gateway_signature = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(String, default=PaymentStatus.CAPTURED.value, nullable=False)
    refund_id = Column(String, nullable=True)
    refund_amount = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payment_transaction")


class ContactSubmission(Base):
    __tablename__ = "contact_submissions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String, default=SubmissionStatus.PENDING.value, nullable=False)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class SellerApplication(Base):
    __tablename__ = "seller_applications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    business_name = Column(String, nullable=False)
    business_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String, default=SubmissionStatus.PENDING.value, nullable=False)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class NewsletterSubscriber(Base):
    __tablename__ = "newsletter_subscribers"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
