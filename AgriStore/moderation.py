"""
Inbound customer submissions (contact form, seller applications, newsletter)
and the admin actions over them and over user accounts.
"""
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from errors import NotFoundError, StoreError
from models import (
    CartItem,
    ContactSubmission,
    Favorite,
    NewsletterSubscriber,
    Order,
    Product,
    SellerApplication,
    SubmissionStatus,
    User,
    utcnow,
)
from schemas import ContactIn, ModerationUpdate, SellerIn

logger = logging.getLogger(__name__)


def submit_contact(db: Session, user_id: int, data: ContactIn) -> ContactSubmission:
    submission = ContactSubmission(
        user_id=user_id,
        name=data.name.strip(),
        email=data.email.strip().lower(),
        phone=data.phone,
        message=data.message.strip(),
    )
    db.add(submission)
    db.commit()
    db.refresh(submission)
    return submission


def submit_seller_application(db: Session, user_id: int, data: SellerIn) -> SellerApplication:
    open_statuses = (SubmissionStatus.PENDING.value, SubmissionStatus.REVIEWED.value)
    existing = (
        db.query(SellerApplication)
        .filter(SellerApplication.user_id == user_id, SellerApplication.status.in_(open_statuses))
        .first()
    )
    if existing:
        raise StoreError("You already have a pending seller application")
    application = SellerApplication(
        user_id=user_id,
        name=data.name.strip(),
        email=data.email.strip().lower(),
        phone=data.phone,
        business_name=data.business_name.strip(),
        business_type=data.business_type.strip(),
        description=data.description.strip(),
    )
    db.add(application)
    db.commit()
    db.refresh(application)
    return application


def subscribe(db: Session, email: str) -> str:
    email = email.lower()
    subscriber = db.query(NewsletterSubscriber).filter(NewsletterSubscriber.email == email).first()
    if subscriber and subscriber.is_active:
        raise StoreError("Email is already subscribed to newsletter")
    if subscriber:
        subscriber.is_active = True
        subscriber.updated_at = utcnow()
        db.commit()
        return "Newsletter subscription reactivated successfully"
    db.add(NewsletterSubscriber(email=email, is_active=True))
    db.commit()
    return "Successfully subscribed to newsletter"


def unsubscribe(db: Session, email: str):
    subscriber = db.query(NewsletterSubscriber).filter(NewsletterSubscriber.email == email.lower()).first()
    if not subscriber:
        raise NotFoundError("Email not found in newsletter subscription")
    subscriber.is_active = False
    subscriber.updated_at = utcnow()
    db.commit()


def _get(db: Session, model, row_id: int):
    row = db.get(model, row_id)
    if row is None:
        raise NotFoundError(f"{model.__name__} not found")
    return row


def update_submission(db: Session, model, row_id: int, data: ModerationUpdate):
    """Status/notes update shared by contact submissions and seller applications."""
    row = _get(db, model, row_id)
    if data.status is not None:
        row.status = data.status.value
    if data.admin_notes is not None:
        row.admin_notes = data.admin_notes
    db.commit()
    db.refresh(row)
    return row


def set_subscriber_active(db: Session, subscriber_id: int, is_active: bool) -> NewsletterSubscriber:
    subscriber = _get(db, NewsletterSubscriber, subscriber_id)
    subscriber.is_active = is_active
    subscriber.updated_at = utcnow()
    db.commit()
    db.refresh(subscriber)
    return subscriber


def delete_row(db: Session, model, row_id: int):
    db.delete(_get(db, model, row_id))
    db.commit()


def user_rows(db: Session, user_id: int = None):
    cart_counts = dict(
        db.query(CartItem.user_id, func.coalesce(func.sum(CartItem.quantity), 0)).group_by(CartItem.user_id).all()
    )
    favorite_counts = dict(db.query(Favorite.user_id, func.count(Favorite.id)).group_by(Favorite.user_id).all())
    order_counts = dict(db.query(Order.user_id, func.count(Order.id)).group_by(Order.user_id).all())
    query = db.query(User).order_by(User.created_at.desc(), User.id.desc())
    if user_id is not None:
        query = query.filter(User.id == user_id)
    return [
        {
            "id": user.id,
            "name": user.name or "Unknown User",
            "email": user.email,
            "role": user.role,
            "join_date": user.created_at.date().isoformat() if user.created_at else None,
            "cart_items": int(cart_counts.get(user.id, 0)),
            "favorites": favorite_counts.get(user.id, 0),
            "orders": order_counts.get(user.id, 0),
        }
        for user in query.all()
    ]


def set_role(db: Session, user_id: int, role) -> dict:
    user = _get(db, User, user_id)
    user.role = role.value
    db.commit()
    logger.info("User %s role set to %s", user_id, user.role)
    return user_rows(db, user_id)[0]


def stats(db: Session) -> dict:
    return {
        "users": db.query(User).count(),
        "products": db.query(Product).count(),
        "orders": db.query(Order).count(),
        "pending_contacts": db.query(ContactSubmission)
        .filter(ContactSubmission.status == SubmissionStatus.PENDING.value)
        .count(),
        "pending_sellers": db.query(SellerApplication)
        .filter(SellerApplication.status == SubmissionStatus.PENDING.value)
        .count(),
        "subscribers": db.query(NewsletterSubscriber).filter(NewsletterSubscriber.is_active.is_(True)).count(),
    }
