"""
Catalog reads and admin writes: products, their purchasable units, ratings and reviews.
"""
import logging
import re

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from errors import ForbiddenError, NotFoundError, StoreError
from models import CartItem, Favorite, Order, OrderItem, OrderStatus, Product, ProductStatus, ProductUnit, Rating, Review
from schemas import ProductIn, ProductUpdate

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "created_at": Product.created_at,
    "rating": Product.rating,
    "name": Product.name,
}


class CatalogError(StoreError):
    pass


class UnavailableError(CatalogError):
    pass


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "product"


def _split(value):
    return [part.strip() for part in value.split(",") if part.strip()]


def search_products(
    db: Session,
    category=None,
    subcategory=None,
    search=None,
    status=ProductStatus.ACTIVE.value,
    sort_by="created_at",
    sort_order="desc",
):
    """Build the product query used by both the storefront and the admin listing.

    ``category`` and ``subcategory`` accept comma separated alternatives.
    Pass ``status=None`` to include every status (admin view).
    """
    query = db.query(Product).options(selectinload(Product.units))
    if status:
        query = query.filter(Product.status == status)
    if category:
        query = query.filter(Product.category.in_(_split(category)))
    if subcategory:
        query = query.filter(Product.subcategory.in_(_split(subcategory)))
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Product.name.ilike(pattern),
                Product.description.ilike(pattern),
                Product.category.ilike(pattern),
                Product.subcategory.ilike(pattern),
            )
        )
    column = SORT_COLUMNS.get(sort_by, Product.created_at)
    query = query.order_by(column.asc() if sort_order == "asc" else column.desc(), Product.id.desc())
    return query


def get_product(db: Session, id_or_slug) -> Product:
    query = db.query(Product).options(selectinload(Product.units))
    if str(id_or_slug).isdigit():
        product = query.filter(Product.id == int(id_or_slug)).first()
    else:
        product = query.filter(Product.url_slug == str(id_or_slug)).first()
    if not product:
        raise NotFoundError("Product not found")
    return product


def resolve_unit(db: Session, product_id: int, unit_id: int, quantity: int = None):
    """Return (product, unit) when the pair can be bought in ``quantity``.

    Raises CatalogError (or NotFoundError) otherwise; never mutates anything.
    """
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    unit = (
        db.query(ProductUnit)
        .filter(ProductUnit.id == unit_id, ProductUnit.product_id == product.id)
        .first()
    )
    if not unit:
        raise NotFoundError(f"Unit not found for product {product.name}")
    if ProductStatus.OUT_OF_STOCK.value in (product.status, unit.status):
        raise UnavailableError(f"{product.name} ({unit.label}) is out of stock")
    if quantity is not None and unit.stock is not None and quantity > unit.stock:
        raise UnavailableError(f"Only {unit.stock} of {product.name} ({unit.label}) available")
    return product, unit


def _build_units(units):
    return [
        ProductUnit(
            number=u.number,
            type=u.type,
            actual_price=u.actual_price,
            discounted_price=u.discounted_price,
            stock=u.stock,
            status=u.status.value,
        )
        for u in units
    ]


def _ensure_unique_slug(db: Session, slug: str, product_id: int = None):
    query = db.query(Product).filter(Product.url_slug == slug)
    if product_id is not None:
        query = query.filter(Product.id != product_id)
    if query.first():
        raise CatalogError("Product with this URL slug already exists")


def create_product(db: Session, data: ProductIn) -> Product:
    slug = slugify(data.url_slug or data.name)
    _ensure_unique_slug(db, slug)
    product = Product(
        name=data.name,
        url_slug=slug,
        category=data.category,
        subcategory=data.subcategory,
        description=data.description,
        images=list(data.images),
        status=data.status.value,
        units=_build_units(data.units),
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    logger.info("Created product %s (%s) with %d units", product.id, slug, len(product.units))
    return product


def update_product(db: Session, product_id: int, data: ProductUpdate) -> Product:
    product = get_product(db, product_id)
    changes = data.model_dump(exclude_unset=True, exclude={"units"})
    if "url_slug" in changes and changes["url_slug"]:
        changes["url_slug"] = slugify(changes["url_slug"])
        _ensure_unique_slug(db, changes["url_slug"], product.id)
    for key, value in changes.items():
        if value is None and key in ("name", "category", "url_slug"):
            continue
        setattr(product, key, value.value if isinstance(value, ProductStatus) else value)
    if data.units is not None:
        _sync_units(db, product, data.units)
    db.commit()
    db.refresh(product)
    return product


def _sync_units(db: Session, product: Product, units):
    """Update listed units in place, add new ones and drop the rest.

    A dropped unit that carts or orders still reference is kept but marked
    OUT_OF_STOCK, so historic order lines stay resolvable.
    """
    existing = {u.id: u for u in product.units}
    kept = set()
    for data in units:
        unit = existing.get(data.id) if data.id is not None else None
        if unit is None:
            product.units.extend(_build_units([data]))
            continue
        unit.number = data.number
        unit.type = data.type
        unit.actual_price = data.actual_price
        unit.discounted_price = data.discounted_price
        unit.stock = data.stock
        unit.status = data.status.value
        kept.add(unit.id)
    for unit_id, unit in existing.items():
        if unit_id in kept:
            continue
        referenced = (
            db.query(CartItem).filter(CartItem.unit_id == unit_id).first()
            or db.query(OrderItem).filter(OrderItem.unit_id == unit_id).first()
        )
        if referenced:
            unit.status = ProductStatus.OUT_OF_STOCK.value
        else:
            product.units.remove(unit)


def delete_product(db: Session, product_id: int):
    product = get_product(db, product_id)
    if db.query(OrderItem).filter(OrderItem.product_id == product.id).first():
        raise CatalogError("Product has orders; mark it OUT_OF_STOCK instead")
    db.query(CartItem).filter(CartItem.product_id == product.id).delete()
    db.query(Favorite).filter(Favorite.product_id == product.id).delete()
    db.delete(product)
    db.commit()
    logger.info("Deleted product %s", product_id)


def has_purchased(db: Session, user_id: int, product_id: int) -> bool:
    return (
        db.query(OrderItem)
        .join(Order)
        .filter(
            OrderItem.product_id == product_id,
            Order.user_id == user_id,
            Order.status == OrderStatus.DELIVERED.value,
        )
        .first()
        is not None
    )


def rating_summary(db: Session, product_id: int) -> dict:
    stars = [s for (s,) in db.query(Rating.stars).filter(Rating.product_id == product_id).all()]
    average = round(sum(stars) / len(stars), 1) if stars else 0
    return {
        "averageRating": average,
        "totalRatings": len(stars),
        "ratingDistribution": {n: stars.count(n) for n in (5, 4, 3, 2, 1)},
    }


def rate_product(db: Session, user_id: int, product_id: int, stars: int) -> Rating:
    product = get_product(db, product_id)
    if not has_purchased(db, user_id, product.id):
        raise ForbiddenError("You can only rate products you have purchased")
    rating = db.query(Rating).filter(Rating.user_id == user_id, Rating.product_id == product.id).first()
    if rating:
        rating.stars = stars
    else:
        rating = Rating(user_id=user_id, product_id=product.id, stars=stars)
        db.add(rating)
    db.flush()
    average = db.query(func.avg(Rating.stars)).filter(Rating.product_id == product.id).scalar() or 0
    product.rating = round(float(average), 1)
    db.commit()
    db.refresh(rating)
    return rating


def add_review(db: Session, user_id: int, product_id: int, text: str) -> Review:
    product = get_product(db, product_id)
    if not has_purchased(db, user_id, product.id):
        raise ForbiddenError("You can only review products you have purchased")
    review = Review(user_id=user_id, product_id=product.id, text=text)
    db.add(review)
    db.flush()
    product.review_count = db.query(Review).filter(Review.product_id == product.id).count()
    db.commit()
    db.refresh(review)
    return review


def list_reviews(db: Session, product_id: int):
    return db.query(Review).filter(Review.product_id == product_id).order_by(Review.created_at.desc(), Review.id.desc())
