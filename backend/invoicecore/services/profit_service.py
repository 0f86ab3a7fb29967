# Overview: Service-layer operations for profit reporting; encapsulates read-side aggregation over invoices.

"""
Profit invariants (authoritative)

- Cost is ALWAYS quantity x InvoiceItem.cost_price_cents (the snapshot
  taken at sale time). Product.cost_price_cents is never read here, so a
  later cost change cannot move historical figures.
- revenue        = grand_total + total_discount (sales value before discount, tax included)
- gross_profit   = revenue - tax - discount - cost
- net_profit     = grand_total - cost
- margin_pct     = gross_profit / (revenue - tax - discount) * 100
- markup_pct     = gross_profit / cost * 100
  Percentages are rounded to 2 places and are 0 when the denominator is 0.
- Item-level views (product, category, or a product/category filter) use
  line figures; invoice-level discount and shipping are not allocated to lines.
- Comparisons and trends are derived on every call, never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from flask import current_app
from sqlalchemy.orm import selectinload

from ..extensions import db
from ..models import Customer, Invoice, InvoiceItem, Product
from ..models.invoices import INVOICE_ISSUED, INVOICE_PAID
from ..time_utils import PERIODS, period_key, previous_window, to_utc_z
from ..validation import ValidationError


@dataclass(frozen=True)
class ProfitFilter:
    org_id: int
    start: datetime | None = None
    end: datetime | None = None
    branch_id: int | None = None
    customer_id: int | None = None
    product_id: int | None = None
    category: str | None = None
    statuses: tuple[str, ...] = (INVOICE_ISSUED, INVOICE_PAID)

    @property
    def item_level(self) -> bool:
        return self.product_id is not None or self.category is not None


def _pct(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


@dataclass
class ProfitFigures:
    revenue_cents: int = 0
    cost_cents: int = 0
    tax_cents: int = 0
    discount_cents: int = 0
    net_sales_cents: int = 0  # grand totals (or line totals)
    quantity: int = 0
    invoice_ids: set = field(default_factory=set)

    def add_invoice(self, invoice: Invoice) -> None:
        self.revenue_cents += invoice.grand_total_cents + invoice.total_discount_cents
        self.tax_cents += invoice.total_tax_cents
        self.discount_cents += invoice.total_discount_cents
        self.net_sales_cents += invoice.grand_total_cents
        for item in invoice.items:
            self.cost_cents += item.quantity * (item.cost_price_cents or 0)
            self.quantity += item.quantity
        self.invoice_ids.add(invoice.id)

    def add_item(self, item: InvoiceItem) -> None:
        discount = item.discount_cents or 0
        self.revenue_cents += item.line_total_cents + discount
        self.tax_cents += item.tax_cents or 0
        self.discount_cents += discount
        self.net_sales_cents += item.line_total_cents
        self.cost_cents += item.quantity * (item.cost_price_cents or 0)
        self.quantity += item.quantity
        self.invoice_ids.add(item.invoice_id)

    @property
    def invoice_count(self) -> int:
        return len(self.invoice_ids)

    @property
    def gross_profit_cents(self) -> int:
        return self.revenue_cents - self.tax_cents - self.discount_cents - self.cost_cents

    @property
    def net_profit_cents(self) -> int:
        return self.net_sales_cents - self.cost_cents

    @property
    def margin_pct(self) -> float:
        return _pct(self.gross_profit_cents, self.revenue_cents - self.tax_cents - self.discount_cents)

    @property
    def markup_pct(self) -> float:
        return _pct(self.gross_profit_cents, self.cost_cents)

    def to_dict(self) -> dict:
        count = self.invoice_count
        return {
            "invoice_count": count,
            "quantity": self.quantity,
            "revenue_cents": self.revenue_cents,
            "cost_cents": self.cost_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "gross_profit_cents": self.gross_profit_cents,
            "net_profit_cents": self.net_profit_cents,
            "margin_pct": self.margin_pct,
            "markup_pct": self.markup_pct,
            "average_revenue_per_invoice_cents": self.revenue_cents // count if count else 0,
            "average_profit_per_invoice_cents": self.gross_profit_cents // count if count else 0,
        }


def calculate_invoice_profit(invoice: Invoice, include_items: bool = False) -> dict:
    """Profit figures for one invoice, optionally with a per-line breakdown."""
    figures = ProfitFigures()
    figures.add_invoice(invoice)
    data = figures.to_dict()
    data["invoice_id"] = invoice.id
    data["invoice_number"] = invoice.invoice_number

    if include_items:
        lines = []
        for item in invoice.items:
            line = ProfitFigures()
            line.add_item(item)
            row = line.to_dict()
            row.pop("invoice_count")
            row.pop("average_revenue_per_invoice_cents")
            row.pop("average_profit_per_invoice_cents")
            row.update({
                "product_id": item.product_id,
                "name": item.name,
                "cost_price_cents": item.cost_price_cents,
            })
            lines.append(row)
        data["items"] = lines
    return data


def _load_invoices(flt: ProfitFilter) -> list[Invoice]:
    query = (
        db.session.query(Invoice)
        .options(selectinload(Invoice.items))
        .filter(Invoice.org_id == flt.org_id, Invoice.status.in_(flt.statuses))
    )
    if flt.start:
        query = query.filter(Invoice.invoice_date >= flt.start)
    if flt.end:
        query = query.filter(Invoice.invoice_date <= flt.end)
    if flt.branch_id is not None:
        query = query.filter(Invoice.branch_id == flt.branch_id)
    if flt.customer_id is not None:
        query = query.filter(Invoice.customer_id == flt.customer_id)
    if flt.item_level:
        matching = db.session.query(InvoiceItem.invoice_id).join(Product, Product.id == InvoiceItem.product_id)
        if flt.product_id is not None:
            matching = matching.filter(InvoiceItem.product_id == flt.product_id)
        if flt.category is not None:
            matching = matching.filter(Product.category == flt.category)
        query = query.filter(Invoice.id.in_(matching))
    return query.order_by(Invoice.invoice_date.asc(), Invoice.id.asc()).all()


def _categories(org_id: int, product_ids: set[int]) -> dict[int, str | None]:
    if not product_ids:
        return {}
    rows = (
        db.session.query(Product.id, Product.category)
        .filter(Product.org_id == org_id, Product.id.in_(product_ids))
        .all()
    )
    return {pid: category for pid, category in rows}


def _matching_items(flt: ProfitFilter, invoices: list[Invoice]) -> list[InvoiceItem]:
    items = [item for invoice in invoices for item in invoice.items]
    if flt.product_id is not None:
        items = [item for item in items if item.product_id == flt.product_id]
    if flt.category is not None:
        categories = _categories(flt.org_id, {item.product_id for item in items})
        items = [item for item in items if categories.get(item.product_id) == flt.category]
    return items


def _figures(flt: ProfitFilter, invoices: list[Invoice]) -> ProfitFigures:
    figures = ProfitFigures()
    if flt.item_level:
        for item in _matching_items(flt, invoices):
            figures.add_item(item)
    else:
        for invoice in invoices:
            figures.add_invoice(invoice)
    return figures


def _window(flt: ProfitFilter) -> dict:
    return {
        "start": to_utc_z(flt.start) if flt.start else None,
        "end": to_utc_z(flt.end) if flt.end else None,
    }


def profit_summary(flt: ProfitFilter) -> dict:
    invoices = _load_invoices(flt)
    data = _figures(flt, invoices).to_dict()
    data.update(_window(flt))
    return data


def profit_by_period(flt: ProfitFilter, group_by: str = "day") -> dict:
    if group_by not in PERIODS:
        raise ValidationError(f"group_by must be one of: {', '.join(PERIODS)}")

    buckets: dict[str, ProfitFigures] = {}
    invoices = _load_invoices(flt)
    for invoice in invoices:
        key = period_key(invoice.invoice_date, group_by)
        figures = buckets.setdefault(key, ProfitFigures())
        if flt.item_level:
            for item in _matching_items(flt, [invoice]):
                figures.add_item(item)
        else:
            figures.add_invoice(invoice)

    rows = []
    for key in sorted(buckets):
        row = buckets[key].to_dict()
        row["period"] = key
        rows.append(row)

    data = {"group_by": group_by, "rows": rows}
    data.update(_window(flt))
    return data


def profit_by_product(flt: ProfitFilter, limit: int | None = None) -> list[dict]:
    """Line-level figures per product, highest gross profit first."""
    invoices = _load_invoices(flt)
    per_product: dict[int, ProfitFigures] = {}
    names: dict[int, str] = {}
    for item in _matching_items(flt, invoices):
        per_product.setdefault(item.product_id, ProfitFigures()).add_item(item)
        names.setdefault(item.product_id, item.name)

    categories = _categories(flt.org_id, set(per_product))
    rows = []
    for product_id, figures in per_product.items():
        row = figures.to_dict()
        row.update({
            "product_id": product_id,
            "name": names[product_id],
            "category": categories.get(product_id),
            "average_selling_price_cents": (
                (figures.revenue_cents - figures.tax_cents) // figures.quantity if figures.quantity else 0
            ),
            "profit_per_unit_cents": figures.gross_profit_cents // figures.quantity if figures.quantity else 0,
        })
        rows.append(row)

    rows.sort(key=lambda r: (-r["gross_profit_cents"], r["product_id"]))
    return rows[:limit] if limit else rows


def profit_by_customer(flt: ProfitFilter, limit: int | None = None) -> list[dict]:
    invoices = _load_invoices(flt)
    per_customer: dict[int, ProfitFigures] = {}
    for invoice in invoices:
        figures = per_customer.setdefault(invoice.customer_id, ProfitFigures())
        if flt.item_level:
            for item in _matching_items(flt, [invoice]):
                figures.add_item(item)
        else:
            figures.add_invoice(invoice)

    names = {}
    if per_customer:
        names = dict(
            db.session.query(Customer.id, Customer.name)
            .filter(Customer.org_id == flt.org_id, Customer.id.in_(per_customer))
            .all()
        )

    rows = []
    for customer_id, figures in per_customer.items():
        row = figures.to_dict()
        row.update({"customer_id": customer_id, "name": names.get(customer_id)})
        rows.append(row)

    rows.sort(key=lambda r: (-r["gross_profit_cents"], r["customer_id"]))
    return rows[:limit] if limit else rows


def profit_by_category(flt: ProfitFilter) -> list[dict]:
    invoices = _load_invoices(flt)
    items = _matching_items(flt, invoices)
    categories = _categories(flt.org_id, {item.product_id for item in items})

    per_category: dict[str, ProfitFigures] = {}
    for item in items:
        key = categories.get(item.product_id) or "Uncategorized"
        per_category.setdefault(key, ProfitFigures()).add_item(item)

    rows = []
    for category, figures in per_category.items():
        row = figures.to_dict()
        row["category"] = category
        rows.append(row)

    rows.sort(key=lambda r: (-r["gross_profit_cents"], r["category"]))
    return rows


def _trend(change_pct: float, threshold: float) -> str:
    if change_pct >= threshold:
        return "up"
    if change_pct <= -threshold:
        return "down"
    return "stable"


def _change_pct(current: int, previous: int) -> float:
    if previous == 0:
        return 100.0 if current > 0 else (-100.0 if current < 0 else 0.0)
    return round((current - previous) / abs(previous) * 100, 2)


def compare_with_previous_period(flt: ProfitFilter) -> dict:
    """
    Current window vs the same-length window immediately before it.

    Trend is "stable" when the gross profit change is within
    PROFIT_TREND_STABLE_PCT percent.
    """
    if not flt.start or not flt.end:
        raise ValidationError("start and end are required for a period comparison")
    if flt.end < flt.start:
        raise ValidationError("end must not be before start")

    prev_start, prev_end = previous_window(flt.start, flt.end)
    current = profit_summary(flt)
    previous = profit_summary(replace(flt, start=prev_start, end=prev_end))

    threshold = current_app.config.get("PROFIT_TREND_STABLE_PCT", 1.0)
    changes = {}
    for key in ("revenue_cents", "cost_cents", "gross_profit_cents", "margin_pct"):
        if key == "margin_pct":
            change = round(current[key] - previous[key], 2)
        else:
            change = _change_pct(current[key], previous[key])
        changes[key] = change

    return {
        "current": current,
        "previous": previous,
        "change_pct": changes,
        "trend": _trend(changes["gross_profit_cents"], threshold),
    }
