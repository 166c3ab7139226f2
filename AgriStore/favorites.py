from sqlalchemy.orm import Session, selectinload

from catalog import get_product
from models import Favorite, Product


def list_favorites(db: Session, user_id: int):
    """Favorite products of a user, most recently added first."""
    return (
        db.query(Product)
        .options(selectinload(Product.units))
        .join(Favorite, Favorite.product_id == Product.id)
        .filter(Favorite.user_id == user_id)
        .order_by(Favorite.created_at.desc(), Favorite.id.desc())
        .all()
    )


def _find(db: Session, user_id: int, product_id: int):
    return db.query(Favorite).filter(Favorite.user_id == user_id, Favorite.product_id == product_id).first()


def add_favorite(db: Session, user_id: int, product_id: int) -> bool:
    """Add if absent. Returns False when it was already a favorite."""
    product = get_product(db, product_id)
    if _find(db, user_id, product.id):
        return False
    db.add(Favorite(user_id=user_id, product_id=product.id))
    db.commit()
    return True


def remove_favorite(db: Session, user_id: int, product_id: int) -> bool:
    deleted = (
        db.query(Favorite)
        .filter(Favorite.user_id == user_id, Favorite.product_id == product_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def toggle_favorite(db: Session, user_id: int, product_id: int) -> bool:
    """Flip membership; returns whether the product is a favorite afterwards."""
    if _find(db, user_id, product_id):
        remove_favorite(db, user_id, product_id)
        return False
    add_favorite(db, user_id, product_id)
    return True
