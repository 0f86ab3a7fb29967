# Overview: Service-layer operations for branch stock; encapsulates business logic and database work.

"""
Stock ledger invariants (authoritative)

- ProductInventory.quantity never goes negative.
- A decrement is ONE conditional UPDATE (... WHERE quantity >= :q). Two
  sales racing for the last unit cannot both match; there is no
  read-then-write window to lose.
- validate_stock_availability is a read-only fail-fast pre-check. It gives
  the caller a descriptive error before other side effects start; it is
  NOT the correctness boundary, reduce_stock is.
- restore_stock is unconditional: it only ever undoes a prior valid decrement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, ProductInventory
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError


class InsufficientStockError(ConflictError):
    """409-level: the branch does not hold enough units. Never retried."""

    def __init__(self, product_id: int, product_name: str, available: int | None, required: int):
        if available is None:
            message = f"insufficient stock for {product_name}: required {required}"
        else:
            message = f"insufficient stock for {product_name}: available {available}, required {required}"
        super().__init__(message)
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.required = required


@dataclass
class StockValidation:
    is_valid: bool = True
    errors: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)
    summary: dict = field(default_factory=dict)

    def raise_for_errors(self) -> None:
        """Surface the first problem as the matching typed error."""
        if self.is_valid:
            return
        first = self.errors[0]
        reason = first["reason"]
        if reason == "not_found":
            raise NotFoundError(f"Product {first['product_id']} not found")
        if reason == "insufficient":
            raise InsufficientStockError(
                first["product_id"], first["product_name"], first["available"], first["required"]
            )
        raise ValidationError(first["message"])

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "summary": self.summary,
        }


def _item_fields(item: Any) -> tuple[Any, Any]:
    if isinstance(item, dict):
        return item.get("product_id"), item.get("quantity")
    return getattr(item, "product_id", None), getattr(item, "quantity", None)


def aggregate_quantities(items: Iterable[Any]) -> dict[int, int]:
    """Total requested quantity per product, in first-seen order."""
    totals: dict[int, Any] = {}
    for item in items:
        product_id, quantity = _item_fields(item)
        previous = totals.get(product_id, 0)
        if _is_count(quantity) and _is_count(previous):
            totals[product_id] = previous + quantity
        else:
            # Non-integer quantity poisons the product's total; validation reports it
            totals[product_id] = None
    return totals


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _current_quantity(product_id: int, branch_id: int, org_id: int) -> tuple[int, int] | None:
    # Column query: always reads the row, never a stale identity-map object
    row = (
        db.session.query(ProductInventory.quantity, ProductInventory.reorder_level)
        .filter_by(product_id=product_id, branch_id=branch_id, org_id=org_id)
        .first()
    )
    if row is None:
        return None
    return int(row[0]), int(row[1])


def get_available_stock(product_id: int, branch_id: int, org_id: int) -> int:
    current = _current_quantity(product_id, branch_id, org_id)
    return current[0] if current else 0


def _product_name(product_id: int, org_id: int) -> str:
    name = db.session.query(Product.name).filter_by(id=product_id, org_id=org_id).scalar()
    if name is None:
        raise NotFoundError(f"Product {product_id} not found")
    return name


def reduce_stock(items: Iterable[Any], branch_id: int, org_id: int) -> None:
    """
    Decrement branch stock for each product with a single guarded UPDATE.

    Raises InsufficientStockError naming the product with the quantity
    read after the failed update (when a record exists). Must run inside
    the caller's unit of work: a failure on the second product rolls back
    the first product's decrement along with everything else.
    """
    table = ProductInventory.__table__
    sold_ids = []
    for product_id, quantity in aggregate_quantities(items).items():
        if quantity is None or quantity <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be positive")

        result = db.session.execute(
            update(table)
            .where(
                table.c.product_id == product_id,
                table.c.branch_id == branch_id,
                table.c.org_id == org_id,
                table.c.quantity >= quantity,
            )
            .values(quantity=table.c.quantity - quantity, updated_at=utcnow())
        )
        if result.rowcount == 0:
            name = _product_name(product_id, org_id)
            current = _current_quantity(product_id, branch_id, org_id)
            raise InsufficientStockError(product_id, name, current[0] if current else 0, quantity)
        sold_ids.append(product_id)

    if sold_ids:
        db.session.execute(
            update(Product.__table__)
            .where(Product.__table__.c.id.in_(sold_ids))
            .values(last_sold_at=utcnow())
        )


def restore_stock(items: Iterable[Any], branch_id: int, org_id: int) -> None:
    """
    Unconditionally give stock back (cancellation / edit reversal).

    A missing inventory record is created; this always succeeds for
    products that exist in the organization.
    """
    table = ProductInventory.__table__
    for product_id, quantity in aggregate_quantities(items).items():
        if not quantity:
            continue

        result = db.session.execute(
            update(table)
            .where(
                table.c.product_id == product_id,
                table.c.branch_id == branch_id,
                table.c.org_id == org_id,
            )
            .values(quantity=table.c.quantity + quantity, updated_at=utcnow())
        )
        if result.rowcount:
            continue

        _product_name(product_id, org_id)
        try:
            with db.session.begin_nested():
                db.session.add(ProductInventory(
                    org_id=org_id,
                    product_id=product_id,
                    branch_id=branch_id,
                    quantity=quantity,
                ))
                db.session.flush()
        except IntegrityError:
            # Another writer created the record first; increment theirs
            result = db.session.execute(
                update(table)
                .where(
                    table.c.product_id == product_id,
                    table.c.branch_id == branch_id,
                    table.c.org_id == org_id,
                )
                .values(quantity=table.c.quantity + quantity, updated_at=utcnow())
            )
            if not result.rowcount:
                raise


def validate_stock_availability(items: Iterable[Any], branch_id: int, org_id: int) -> StockValidation:
    """
    Read-only availability check, aggregated per product.

    errors: invalid quantity, product missing, product inactive, insufficient stock.
    warnings: remaining stock after the sale at or below the reorder level.
    """
    items = list(items)
    result = StockValidation()

    for product_id, quantity in aggregate_quantities(items).items():
        if not _is_count(quantity) or quantity <= 0:
            result.errors.append({
                "product_id": product_id,
                "product_name": None,
                "available": None,
                "required": quantity,
                "reason": "invalid_quantity",
                "message": f"Quantity for product {product_id} must be a positive integer",
            })
            continue

        product = db.session.query(Product).filter_by(id=product_id, org_id=org_id).first()
        if product is None:
            result.errors.append({
                "product_id": product_id,
                "product_name": None,
                "available": None,
                "required": quantity,
                "reason": "not_found",
                "message": f"Product {product_id} not found",
            })
            continue

        if not product.is_active:
            result.errors.append({
                "product_id": product_id,
                "product_name": product.name,
                "available": None,
                "required": quantity,
                "reason": "inactive",
                "message": f"Product {product.name} is inactive",
            })
            continue

        current = _current_quantity(product_id, branch_id, org_id)
        available, reorder_level = current if current else (0, 0)

        if available < quantity:
            result.errors.append({
                "product_id": product_id,
                "product_name": product.name,
                "available": available,
                "required": quantity,
                "reason": "insufficient",
                "message": f"insufficient stock for {product.name}: available {available}, required {quantity}",
            })
            continue

        remaining = available - quantity
        if reorder_level > 0 and remaining <= reorder_level:
            result.warnings.append({
                "product_id": product_id,
                "product_name": product.name,
                "available": available,
                "remaining": remaining,
                "reorder_level": reorder_level,
                "message": f"{product.name} will be at {remaining} units (reorder level {reorder_level})",
            })

    result.is_valid = not result.errors
    result.summary = {
        "total_items": len(items),
        "error_count": len(result.errors),
        "warning_count": len(result.warnings),
    }
    return result


def check_stock(items: Iterable[Any], branch_id: int, org_id: int) -> dict:
    """Pre-flight view for a cart: per-product requested vs available plus validation errors/warnings."""
    items = list(items)
    validation = validate_stock_availability(items, branch_id, org_id)

    lines = []
    for product_id, quantity in aggregate_quantities(items).items():
        name = db.session.query(Product.name).filter_by(id=product_id, org_id=org_id).scalar()
        available = get_available_stock(product_id, branch_id, org_id) if name is not None else 0
        lines.append({
            "product_id": product_id,
            "product_name": name,
            "requested": quantity,
            "available": available,
            "is_available": name is not None and _is_count(quantity) and 0 < quantity <= available,
        })

    data = validation.to_dict()
    data["items"] = lines
    return data


def set_stock(product_id: int, branch_id: int, org_id: int, quantity: int, reorder_level: int | None = None) -> ProductInventory:
    """Set an absolute quantity (opening stock / physical count)."""
    if quantity < 0:
        raise ValidationError("quantity must be >= 0")
    _product_name(product_id, org_id)

    record = (
        db.session.query(ProductInventory)
        .filter_by(product_id=product_id, branch_id=branch_id, org_id=org_id)
        .populate_existing()
        .first()
    )
    if record is None:
        record = ProductInventory(org_id=org_id, product_id=product_id, branch_id=branch_id, quantity=quantity)
        db.session.add(record)
    else:
        record.quantity = quantity
    if reorder_level is not None:
        record.reorder_level = reorder_level
    db.session.flush()
    return record
