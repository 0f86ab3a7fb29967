from __future__ import annotations
from datetime import datetime
from invoicecore.time_utils import parse_iso_datetime

from dataclasses import dataclass, field
from typing import Any


# Maximum money amount: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_CENTS = 999_999_999
MAX_TAX_RATE_BPS = 10_000

PAYMENT_METHODS = ("cash", "bank", "cheque", "upi", "card", "other")
CREATE_STATUSES = ("draft", "issued")


class ValidationError(ValueError):
    """400-level input problem."""
    http_status = 400


class InvalidTransitionError(ValidationError):
    """400-level lifecycle violation (e.g., updating a cancelled invoice)."""


class NotFoundError(LookupError):
    """404-level missing invoice, product, customer or account."""
    http_status = 404


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate invoice number)."""
    http_status = 409


@dataclass(frozen=True)
class ActorContext:
    """Identity supplied by the caller; the core never authenticates."""
    org_id: int
    branch_id: int
    user_id: int | None = None


# =============================================================================
# Coercion helpers
# =============================================================================

def _coerce_int(name: str, value: Any, *, minimum: int | None = None, maximum: int | None = None) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{name} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{name} must be <= {maximum}")
    return result


def _optional_int(payload: dict, key: str, default: int | None = None, **bounds) -> int | None:
    value = payload.get(key)
    if value is None:
        return default
    return _coerce_int(key, value, **bounds)


def _optional_datetime(payload: dict, key: str) -> datetime | None:
    value = payload.get(key)
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be an ISO-8601 datetime string")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 datetime string")


def _optional_str(payload: dict, key: str, max_len: int = 255) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{key} must be at most {max_len} characters")
    return value or None


def _payment_method(payload: dict, key: str = "payment_method", default: str | None = None) -> str | None:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, str) or value.strip().lower() not in PAYMENT_METHODS:
        raise ValidationError(f"{key} must be one of: {', '.join(PAYMENT_METHODS)}")
    return value.strip().lower()


# =============================================================================
# Commands
# =============================================================================

@dataclass(frozen=True)
class InvoiceItemInput:
    """
    One requested line.

    unit_price_cents / tax_rate_bps default to the product's current values
    when omitted. Cost is never accepted from the caller; it is always
    snapshotted from the product.
    """
    product_id: int
    quantity: int
    unit_price_cents: int | None = None
    discount_cents: int = 0
    tax_rate_bps: int | None = None

    @classmethod
    def from_payload(cls, payload: Any, index: int = 0) -> "InvoiceItemInput":
        if not isinstance(payload, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if payload.get("product_id") is None:
            raise ValidationError(f"items[{index}].product_id is required")
        if payload.get("quantity") is None:
            raise ValidationError(f"items[{index}].quantity is required")

        quantity = _coerce_int(f"items[{index}].quantity", payload["quantity"])
        if quantity <= 0:
            raise ValidationError(f"items[{index}].quantity must be positive")

        price = payload.get("unit_price_cents")
        if price is not None:
            price = _coerce_int(f"items[{index}].unit_price_cents", price, minimum=0, maximum=MAX_AMOUNT_CENTS)

        tax = payload.get("tax_rate_bps")
        if tax is not None:
            tax = _coerce_int(f"items[{index}].tax_rate_bps", tax, minimum=0, maximum=MAX_TAX_RATE_BPS)

        return cls(
            product_id=_coerce_int(f"items[{index}].product_id", payload["product_id"], minimum=1),
            quantity=quantity,
            unit_price_cents=price,
            discount_cents=_coerce_int(
                f"items[{index}].discount_cents", payload.get("discount_cents", 0), minimum=0, maximum=MAX_AMOUNT_CENTS
            ),
            tax_rate_bps=tax,
        )


def _parse_items(raw: Any) -> tuple[InvoiceItemInput, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list")
    return tuple(InvoiceItemInput.from_payload(item, i) for i, item in enumerate(raw))


@dataclass(frozen=True)
class CreateInvoiceCommand:
    customer_id: int
    items: tuple[InvoiceItemInput, ...]
    status: str = "issued"
    invoice_number: str | None = None
    invoice_date: datetime | None = None
    due_date: datetime | None = None
    shipping_cents: int = 0
    discount_cents: int = 0
    round_off_cents: int = 0
    paid_amount_cents: int = 0
    payment_method: str | None = None
    payment_reference: str | None = None
    notes: str | None = None

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"

    @classmethod
    def from_payload(cls, payload: dict) -> "CreateInvoiceCommand":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object")
        if payload.get("customer_id") is None:
            raise ValidationError("customer_id is required")

        status = payload.get("status") or "issued"
        if status not in CREATE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(CREATE_STATUSES)}")

        paid = _optional_int(payload, "paid_amount_cents", 0, minimum=0, maximum=MAX_AMOUNT_CENTS)
        if status == "draft" and paid:
            raise ValidationError("paid_amount_cents is not allowed on a draft invoice")

        return cls(
            customer_id=_coerce_int("customer_id", payload["customer_id"], minimum=1),
            items=_parse_items(payload.get("items")),
            status=status,
            invoice_number=_optional_str(payload, "invoice_number", max_len=64),
            invoice_date=_optional_datetime(payload, "invoice_date"),
            due_date=_optional_datetime(payload, "due_date"),
            shipping_cents=_optional_int(payload, "shipping_cents", 0, minimum=0, maximum=MAX_AMOUNT_CENTS),
            discount_cents=_optional_int(payload, "discount_cents", 0, minimum=0, maximum=MAX_AMOUNT_CENTS),
            round_off_cents=_optional_int(payload, "round_off_cents", 0, minimum=-100, maximum=100),
            paid_amount_cents=paid,
            payment_method=_payment_method(payload, default="cash" if paid else None),
            payment_reference=_optional_str(payload, "payment_reference", max_len=64),
            notes=_optional_str(payload, "notes", max_len=2000),
        )


# Fields whose change alters totals, stock or postings
FINANCIAL_FIELDS = frozenset({"items", "shipping_cents", "discount_cents", "round_off_cents"})
INFO_FIELDS = frozenset({"notes", "due_date", "invoice_date", "payment_method", "customer_id"})


@dataclass(frozen=True)
class UpdateInvoiceCommand:
    """
    Partial update. Only keys present in the payload are applied;
    `changes` holds the already-coerced values keyed by field name.
    """
    changes: dict = field(default_factory=dict)

    def touches_financial(self) -> bool:
        return bool(FINANCIAL_FIELDS & self.changes.keys())

    @property
    def new_status(self) -> str | None:
        return self.changes.get("status")

    @classmethod
    def from_payload(cls, payload: dict) -> "UpdateInvoiceCommand":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object")

        allowed = FINANCIAL_FIELDS | INFO_FIELDS | {"status"}
        unknown = sorted(set(payload) - allowed)
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(unknown)}")

        changes: dict[str, Any] = {}
        if "items" in payload:
            changes["items"] = _parse_items(payload["items"])
        for key in ("shipping_cents", "discount_cents"):
            if key in payload:
                changes[key] = _coerce_int(key, payload[key], minimum=0, maximum=MAX_AMOUNT_CENTS)
        if "round_off_cents" in payload:
            changes["round_off_cents"] = _coerce_int("round_off_cents", payload["round_off_cents"], minimum=-100, maximum=100)
        if "customer_id" in payload:
            changes["customer_id"] = _coerce_int("customer_id", payload["customer_id"], minimum=1)
        if "notes" in payload:
            changes["notes"] = _optional_str(payload, "notes", max_len=2000)
        for key in ("due_date", "invoice_date"):
            if key in payload:
                changes[key] = _optional_datetime(payload, key)
        if "payment_method" in payload:
            changes["payment_method"] = _payment_method(payload)
        if "status" in payload:
            status = payload["status"]
            if status not in CREATE_STATUSES:
                raise ValidationError("status may only be set to draft or issued; use cancel/payment operations otherwise")
            changes["status"] = status

        if not changes:
            raise ValidationError("No updatable fields provided")
        return cls(changes=changes)


@dataclass(frozen=True)
class PaymentCommand:
    amount_cents: int
    payment_method: str = "cash"
    reference_number: str | None = None
    transaction_id: str | None = None
    notes: str | None = None
    paid_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "PaymentCommand":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object")
        if payload.get("amount_cents") is None:
            raise ValidationError("amount_cents is required")
        amount = _coerce_int("amount_cents", payload["amount_cents"], maximum=MAX_AMOUNT_CENTS)
        if amount <= 0:
            raise ValidationError("amount_cents must be positive")
        return cls(
            amount_cents=amount,
            payment_method=_payment_method(payload, default="cash"),
            reference_number=_optional_str(payload, "reference_number", max_len=64),
            transaction_id=_optional_str(payload, "transaction_id", max_len=128),
            notes=_optional_str(payload, "notes", max_len=2000),
            paid_at=_optional_datetime(payload, "paid_at"),
        )


@dataclass(frozen=True)
class CancelInvoiceCommand:
    reason: str
    restock: bool = True

    @classmethod
    def from_payload(cls, payload: dict) -> "CancelInvoiceCommand":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object")
        reason = _optional_str(payload, "reason", max_len=500)
        if not reason:
            raise ValidationError("reason is required")
        restock = payload.get("restock", True)
        if not isinstance(restock, bool):
            raise ValidationError("restock must be a boolean")
        return cls(reason=reason, restock=restock)
