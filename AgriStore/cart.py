"""
Cart state for guests and logged-in customers.

Both kinds of cart implement the same ``CartStore`` contract. ``LocalCartStore``
is the guest cart the browser keeps in local storage (serialized with
``to_json``/``from_json``); ``DatabaseCartStore`` is the CartItem table of one
user. Every change goes through ``apply_mutation``, which validates against the
catalog before the store is touched, so a mutation ends up either APPLIED or
FAILED and never half-applied.
"""
import enum
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from catalog import resolve_unit
from errors import StoreError
from models import CartItem, CartMigration, Product, ProductUnit

logger = logging.getLogger(__name__)


class CartError(StoreError):
    pass


@dataclass
class CartLine:
    product_id: int
    unit_id: int
    quantity: int
    selected_unit: Optional[str] = None
    id: Optional[int] = None

    @property
    def key(self):
        return (self.product_id, self.unit_id)


class CartStore:
    """Quantity by (product, unit). Quantities are always >= 1; a line at 0 is gone."""

    def items(self) -> List[CartLine]:
        raise NotImplementedError

    def get(self, product_id, unit_id) -> Optional[CartLine]:
        for line in self.items():
            if line.key == (product_id, unit_id):
                return line
        return None

    def upsert(self, line: CartLine, increment: bool = True) -> CartLine:
        raise NotImplementedError

    def set_quantity(self, product_id, unit_id, quantity, selected_unit=None) -> Optional[CartLine]:
        raise NotImplementedError

    def remove(self, product_id, unit_id=None) -> int:
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError

    def is_empty(self):
        return not self.items()

    def commit(self):
        pass

    def rollback(self):
        pass


class LocalCartStore(CartStore):
    def __init__(self, lines=None):
        self._lines: List[CartLine] = []
        for line in lines or []:
            self.upsert(line if isinstance(line, CartLine) else CartLine(**line))

    @classmethod
    def from_json(cls, raw: Optional[str]):
        if not raw:
            return cls()
        try:
            return cls(json.loads(raw))
        except (ValueError, TypeError) as exc:
            raise CartError("Invalid guest cart") from exc

    def to_json(self) -> str:
        return json.dumps([{k: v for k, v in asdict(line).items() if k != "id"} for line in self._lines])

    def items(self):
        return list(self._lines)

    def upsert(self, line, increment=True):
        existing = self.get(line.product_id, line.unit_id)
        if existing:
            existing.quantity = existing.quantity + line.quantity if increment else line.quantity
            if line.selected_unit:
                existing.selected_unit = line.selected_unit
            return existing
        stored = CartLine(line.product_id, line.unit_id, line.quantity, line.selected_unit)
        self._lines.append(stored)
        return stored

    def set_quantity(self, product_id, unit_id, quantity, selected_unit=None):
        existing = self.get(product_id, unit_id)
        if existing is None:
            return None
        if quantity <= 0:
            self._lines.remove(existing)
            return None
        existing.quantity = quantity
        if selected_unit:
            existing.selected_unit = selected_unit
        return existing

    def remove(self, product_id, unit_id=None):
        before = len(self._lines)
        self._lines = [
            line
            for line in self._lines
            if not (line.product_id == product_id and (unit_id is None or line.unit_id == unit_id))
        ]
        return before - len(self._lines)

    def clear(self):
        self._lines = []


class DatabaseCartStore(CartStore):
    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    def _query(self):
        return self.db.query(CartItem).filter(CartItem.user_id == self.user_id)

    @staticmethod
    def _line(row: CartItem) -> CartLine:
        return CartLine(row.product_id, row.unit_id, row.quantity, row.selected_unit, row.id)

    def _row(self, product_id, unit_id):
        return self._query().filter(CartItem.product_id == product_id, CartItem.unit_id == unit_id).first()

    def items(self):
        rows = self._query().order_by(CartItem.created_at.desc(), CartItem.id.desc()).all()
        return [self._line(row) for row in rows]

    def get(self, product_id, unit_id):
        row = self._row(product_id, unit_id)
        return self._line(row) if row else None

    def upsert(self, line, increment=True):
        row = self._row(line.product_id, line.unit_id)
        if row:
            row.quantity = row.quantity + line.quantity if increment else line.quantity
            if line.selected_unit:
                row.selected_unit = line.selected_unit
        else:
            row = CartItem(
                user_id=self.user_id,
                product_id=line.product_id,
                unit_id=line.unit_id,
                quantity=line.quantity,
                selected_unit=line.selected_unit,
            )
            self.db.add(row)
        self.db.flush()
        return self._line(row)

    def set_quantity(self, product_id, unit_id, quantity, selected_unit=None):
        row = self._row(product_id, unit_id)
        if row is None:
            return None
        if quantity <= 0:
            self.db.delete(row)
            self.db.flush()
            return None
        row.quantity = quantity
        if selected_unit:
            row.selected_unit = selected_unit
        self.db.flush()
        return self._line(row)

    def remove(self, product_id, unit_id=None):
        query = self._query().filter(CartItem.product_id == product_id)
        if unit_id is not None:
            query = query.filter(CartItem.unit_id == unit_id)
        return query.delete(synchronize_session=False)

    def clear(self):
        self._query().delete(synchronize_session=False)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()


class MutationState(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


class Action(str, enum.Enum):
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass
class CartMutation:
    action: Action
    product_id: int
    unit_id: Optional[int] = None
    quantity: int = 1
    new_unit_id: Optional[int] = None
    state: MutationState = MutationState.PENDING
    line: Optional[CartLine] = None
    error: Optional[StoreError] = field(default=None, repr=False)

    def fail(self, exc: StoreError):
        self.state = MutationState.FAILED
        self.error = exc

    def raise_for_state(self):
        if self.state is MutationState.FAILED:
            raise self.error


def _apply(db: Session, store: CartStore, mutation: CartMutation):
    # every catalog check happens before the store is written to
    if mutation.action is Action.REMOVE:
        store.remove(mutation.product_id, mutation.unit_id)
        return None

    if mutation.unit_id is None:
        raise CartError("Unit ID is required")

    if mutation.action is Action.ADD:
        if mutation.quantity < 1:
            raise CartError("Quantity must be at least 1")
        current = store.get(mutation.product_id, mutation.unit_id)
        wanted = mutation.quantity + (current.quantity if current else 0)
        _, unit = resolve_unit(db, mutation.product_id, mutation.unit_id, wanted)
        return store.upsert(CartLine(mutation.product_id, unit.id, mutation.quantity, unit.label))

    current = store.get(mutation.product_id, mutation.unit_id)
    if current is None:
        raise CartError("Item not in cart")
    if mutation.quantity <= 0:
        store.set_quantity(mutation.product_id, mutation.unit_id, 0)
        return None
    target_unit_id = mutation.new_unit_id or mutation.unit_id
    if target_unit_id == mutation.unit_id:
        _, unit = resolve_unit(db, mutation.product_id, target_unit_id, mutation.quantity)
        return store.set_quantity(mutation.product_id, unit.id, mutation.quantity, unit.label)
    moved = store.get(mutation.product_id, target_unit_id)
    wanted = mutation.quantity + (moved.quantity if moved else 0)
    _, unit = resolve_unit(db, mutation.product_id, target_unit_id, wanted)
    store.remove(mutation.product_id, mutation.unit_id)
    return store.upsert(CartLine(mutation.product_id, unit.id, mutation.quantity, unit.label))


def apply_mutation(db: Session, store: CartStore, mutation: CartMutation) -> CartMutation:
    """Validate and apply one cart change: PENDING -> APPLIED | FAILED."""
    try:
        mutation.line = _apply(db, store, mutation)
    except StoreError as exc:
        store.rollback()
        mutation.fail(exc)
        logger.warning("Cart %s of product %s failed: %s", mutation.action.value, mutation.product_id, exc.detail)
        return mutation
    except Exception:
        store.rollback()
        mutation.state = MutationState.FAILED
        raise
    store.commit()
    mutation.state = MutationState.APPLIED
    return mutation


def migrate_guest_cart(db: Session, local: LocalCartStore, server: DatabaseCartStore, migration_key: str):
    """Replay the guest cart into the user's server cart, once per ``migration_key``.

    Lines are merged by (product, unit), summing quantities. Lines that no
    longer validate against the catalog are skipped and returned as FAILED
    mutations. The guest store is empty afterwards in every case.
    """
    results = []
    exists = (
        db.query(CartMigration)
        .filter(CartMigration.user_id == server.user_id, CartMigration.migration_key == migration_key)
        .first()
    )
    if exists:
        logger.info("Guest cart %s already migrated for user %s", migration_key, server.user_id)
        local.clear()
        return results

    try:
        db.add(CartMigration(user_id=server.user_id, migration_key=migration_key))
        db.flush()
        for line in local.items():
            mutation = CartMutation(Action.ADD, line.product_id, line.unit_id, line.quantity)
            try:
                mutation.line = _apply(db, server, mutation)
                mutation.state = MutationState.APPLIED
            except StoreError as exc:
                mutation.fail(exc)
            results.append(mutation)
        db.commit()
    except IntegrityError:
        # a concurrent login already claimed this migration key
        db.rollback()
        logger.info("Concurrent migration of guest cart %s for user %s", migration_key, server.user_id)
        local.clear()
        return []

    local.clear()
    applied = sum(1 for m in results if m.state is MutationState.APPLIED)
    logger.info("Migrated %d/%d guest cart lines for user %s", applied, len(results), server.user_id)
    return results


def price_lines(db: Session, lines: List[CartLine]):
    """Price lines at the current discounted price of their unit.

    Returns (priced line dicts, total, item count). Lines whose product or unit
    has gone are left out. The cart never locks a price; that only happens when
    an order is created.
    """
    priced = []
    total = 0.0
    count = 0
    for line in lines:
        unit = (
            db.query(ProductUnit)
            .filter(ProductUnit.id == line.unit_id, ProductUnit.product_id == line.product_id)
            .first()
        )
        product = db.get(Product, line.product_id) if unit else None
        if not product:
            continue
        line_total = round(unit.discounted_price * line.quantity, 2)
        priced.append(
            {
                "id": line.id,
                "product_id": product.id,
                "unit_id": unit.id,
                "product_name": product.name,
                "selected_unit": unit.label,
                "quantity": line.quantity,
                "unit_price": unit.discounted_price,
                "actual_price": unit.actual_price,
                "line_total": line_total,
                "image": (product.images or [None])[0],
            }
        )
        total += line_total
        count += line.quantity
    return priced, round(total, 2), count
