from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from catalog import get_product
from models import ProductStatus, RecentProduct, utcnow

RECENT_LIMIT = 4


def record_view(db: Session, user_id: int, product_id) -> RecentProduct:
    """Move the product to the top of the user's recently viewed list."""
    product = get_product(db, product_id)
    row = (
        db.query(RecentProduct)
        .filter(RecentProduct.user_id == user_id, RecentProduct.product_id == product.id)
        .first()
    )
    if row is None:
        row = RecentProduct(user_id=user_id, product_id=product.id, viewed_at=utcnow())
        db.add(row)
    else:
        row.viewed_at = utcnow()
    try:
        db.commit()
    except IntegrityError:
        # another request recorded the same view first
        db.rollback()
        row = (
            db.query(RecentProduct)
            .filter(RecentProduct.user_id == user_id, RecentProduct.product_id == product.id)
            .one()
        )
        row.viewed_at = utcnow()
        db.commit()
    return row


def _card(row: RecentProduct) -> dict:
    product = row.product
    active = [u for u in product.units if u.status == ProductStatus.ACTIVE.value]
    cheapest = min(active, key=lambda u: u.discounted_price) if active else None
    images = product.images or []
    return {
        "id": product.id,
        "name": product.name,
        "url_slug": product.url_slug,
        "image": images[0] if images else None,
        "category": product.category,
        "subcategory": product.subcategory,
        "price": cheapest.discounted_price if cheapest else 0,
        "unit": cheapest.label if cheapest else "",
        "viewed_at": row.viewed_at,
    }


def list_recent(db: Session, user_id: int, limit: int = RECENT_LIMIT):
    """Most recently viewed products first, as search-palette cards."""
    rows = (
        db.query(RecentProduct)
        .options(selectinload(RecentProduct.product))
        .filter(RecentProduct.user_id == user_id)
        .order_by(RecentProduct.viewed_at.desc(), RecentProduct.id.desc())
        .limit(limit)
        .all()
    )
    return [_card(row) for row in rows]
