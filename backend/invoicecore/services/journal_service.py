# Overview: Service-layer operations for double-entry journal postings; encapsulates business logic and database work.

"""
Journal posting invariants (authoritative)

- Every entry is one-sided: debit_cents > 0 XOR credit_cents > 0.
- Every set posted for one (reference_type, invoice) balances: sum(debit) == sum(credit).
- Zero-amount lines are never written (no zero-tax Tax Payable line, no zero-cost COGS pair).
- Entries are append-only. Cancellation posts a mirrored credit_note set;
  only a financial edit of an invoice removes that invoice's own
  invoice-type entries before reposting.
- COGS uses the cost snapshot stored on each invoice item, never the
  product's current cost.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func

from ..extensions import db
from ..models import AccountEntry, Invoice, InvoiceItem, LedgerAccount, Payment
from ..models.ledger import REF_INVOICE, REF_CREDIT_NOTE, REF_PAYMENT
from ..time_utils import utcnow
from . import account_service


class JournalError(Exception):
    """Raised when a posting request is invalid (programming fault, 500-level)."""
    http_status = 500


class UnbalancedJournalError(JournalError):
    """Raised when a posting set does not balance."""

    def __init__(self, debit_cents: int, credit_cents: int):
        super().__init__(f"Unbalanced journal: debit {debit_cents} != credit {credit_cents}")
        self.debit_cents = debit_cents
        self.credit_cents = credit_cents


@dataclass
class JournalLine:
    account: LedgerAccount
    debit_cents: int = 0
    credit_cents: int = 0
    description: str | None = None


def _debit(account: LedgerAccount, amount: int, description: str) -> JournalLine:
    # A negative natural-side amount flips to the other side
    if amount < 0:
        return JournalLine(account, credit_cents=-amount, description=description)
    return JournalLine(account, debit_cents=amount, description=description)


def _credit(account: LedgerAccount, amount: int, description: str) -> JournalLine:
    if amount < 0:
        return JournalLine(account, debit_cents=-amount, description=description)
    return JournalLine(account, credit_cents=amount, description=description)


def assert_balanced(lines: list[JournalLine]) -> None:
    debit = sum(line.debit_cents for line in lines)
    credit = sum(line.credit_cents for line in lines)
    if debit != credit:
        raise UnbalancedJournalError(debit, credit)


def _write_lines(
    invoice: Invoice,
    lines: list[JournalLine],
    *,
    reference_type: str,
    reference_number: str,
    actor_user_id: int | None,
    payment_id: int | None = None,
    entry_date=None,
) -> list[AccountEntry]:
    lines = [line for line in lines if line.debit_cents or line.credit_cents]
    for line in lines:
        if line.debit_cents < 0 or line.credit_cents < 0 or (line.debit_cents and line.credit_cents):
            raise JournalError(
                f"Invalid posting to {line.account.code}: debit {line.debit_cents}, credit {line.credit_cents}"
            )
    assert_balanced(lines)

    entry_date = entry_date or utcnow()
    entries = []
    for line in lines:
        entry = AccountEntry(
            org_id=invoice.org_id,
            branch_id=invoice.branch_id,
            account_id=line.account.id,
            customer_id=invoice.customer_id,
            entry_date=entry_date,
            debit_cents=line.debit_cents,
            credit_cents=line.credit_cents,
            reference_type=reference_type,
            reference_id=invoice.id,
            payment_id=payment_id,
            reference_number=reference_number,
            description=line.description,
            created_by_user_id=actor_user_id,
        )
        db.session.add(entry)
        entries.append(entry)
    db.session.flush()
    return entries


def cost_of_goods(items: list[InvoiceItem]) -> int:
    """Sum of quantity x cost snapshot."""
    return sum(item.quantity * (item.cost_price_cents or 0) for item in items)


def build_invoice_lines(invoice: Invoice, items: list[InvoiceItem]) -> list[JournalLine]:
    """
    Revenue recognition set for one invoice.

    Dr Accounts Receivable   grand_total
    Cr Sales                 grand_total - total_tax
    Cr Tax Payable           total_tax              (only when > 0)
    Dr COGS / Cr Inventory   sum(qty x cost snapshot) (only when > 0)
    """
    org_id = invoice.org_id
    number = invoice.invoice_number
    grand = invoice.grand_total_cents
    tax = invoice.total_tax_cents

    ar = account_service.get_system_account(org_id, account_service.ACCOUNTS_RECEIVABLE)
    sales = account_service.get_system_account(org_id, account_service.SALES)

    lines = [
        _debit(ar, grand, f"Invoice {number}"),
        _credit(sales, grand - tax, f"Sales - Invoice {number}"),
    ]

    if tax > 0:
        tax_payable = account_service.get_system_account(org_id, account_service.TAX_PAYABLE)
        lines.append(_credit(tax_payable, tax, f"Tax - Invoice {number}"))

    cogs_amount = cost_of_goods(items)
    if cogs_amount > 0:
        cogs = account_service.get_system_account(org_id, account_service.COGS)
        inventory = account_service.get_system_account(org_id, account_service.INVENTORY_ASSET)
        lines.append(_debit(cogs, cogs_amount, f"COGS - Invoice {number}"))
        lines.append(_credit(inventory, cogs_amount, f"Inventory - Invoice {number}"))

    return lines


def post_invoice_journal(invoice: Invoice, items: list[InvoiceItem], actor_user_id: int | None = None) -> list[AccountEntry]:
    """Post the balanced revenue set for a non-draft invoice."""
    if invoice.is_draft:
        raise JournalError(f"Draft invoice {invoice.invoice_number} cannot be posted")
    if invoice.id is None:
        raise JournalError("Invoice must be flushed before posting")

    lines = build_invoice_lines(invoice, items)
    return _write_lines(
        invoice,
        lines,
        reference_type=REF_INVOICE,
        reference_number=invoice.invoice_number,
        actor_user_id=actor_user_id,
        entry_date=invoice.invoice_date,
    )


def reverse_invoice_journal(invoice: Invoice, actor_user_id: int | None = None) -> list[AccountEntry]:
    """
    Post the exact mirror of the invoice's current invoice-type entries as a credit note.

    The originals are left untouched, so create + cancel nets to zero on
    every account. An invoice that was never posted (a draft) yields no
    entries. Reversing twice is refused.
    """
    already = (
        db.session.query(AccountEntry.id)
        .filter_by(org_id=invoice.org_id, reference_type=REF_CREDIT_NOTE, reference_id=invoice.id)
        .first()
    )
    if already:
        raise JournalError(f"Invoice {invoice.invoice_number} has already been reversed")

    originals = get_entries_for_invoice(invoice.org_id, invoice.id, reference_type=REF_INVOICE)
    number = invoice.invoice_number
    lines = [
        JournalLine(
            account=entry.account,
            debit_cents=entry.credit_cents,
            credit_cents=entry.debit_cents,
            description=f"Reversal - {entry.description}" if entry.description else f"Reversal - Invoice {number}",
        )
        for entry in originals
    ]
    if not lines:
        return []

    return _write_lines(
        invoice,
        lines,
        reference_type=REF_CREDIT_NOTE,
        reference_number=f"CN-{number}",
        actor_user_id=actor_user_id,
    )


def post_payment_journal(invoice: Invoice, payment: Payment, actor_user_id: int | None = None) -> list[AccountEntry]:
    """Dr cash/bank/UPI/card (by payment method), Cr Accounts Receivable, sized to the payment."""
    if payment.amount_cents <= 0:
        raise JournalError("Payment amount must be positive")

    org_id = invoice.org_id
    receiving = account_service.payment_account_for_method(org_id, payment.payment_method)
    ar = account_service.get_system_account(org_id, account_service.ACCOUNTS_RECEIVABLE)
    description = f"Payment {payment.payment_method} - Invoice {invoice.invoice_number}"

    lines = [
        JournalLine(receiving, debit_cents=payment.amount_cents, description=description),
        JournalLine(ar, credit_cents=payment.amount_cents, description=description),
    ]
    return _write_lines(
        invoice,
        lines,
        reference_type=REF_PAYMENT,
        reference_number=payment.reference_number or invoice.invoice_number,
        actor_user_id=actor_user_id,
        payment_id=payment.id,
        entry_date=payment.paid_at,
    )


def delete_invoice_journal(invoice: Invoice) -> int:
    """
    Remove the invoice-type entries of one invoice ahead of a repost.

    Only the financial-edit path calls this. Payment and credit-note
    entries are never removed.
    """
    deleted = (
        db.session.query(AccountEntry)
        .filter_by(org_id=invoice.org_id, reference_type=REF_INVOICE, reference_id=invoice.id)
        .delete(synchronize_session="fetch")
    )
    db.session.flush()
    return deleted


def get_entries_for_invoice(org_id: int, invoice_id: int, reference_type: str | None = None) -> list[AccountEntry]:
    query = db.session.query(AccountEntry).filter_by(org_id=org_id, reference_id=invoice_id)
    if reference_type:
        query = query.filter_by(reference_type=reference_type)
    return query.order_by(AccountEntry.id.asc()).all()


def verify_reference_balanced(org_id: int, invoice_id: int) -> dict:
    """Per reference type of one invoice: debit/credit totals and whether they balance."""
    rows = (
        db.session.query(
            AccountEntry.reference_type,
            func.coalesce(func.sum(AccountEntry.debit_cents), 0),
            func.coalesce(func.sum(AccountEntry.credit_cents), 0),
        )
        .filter_by(org_id=org_id, reference_id=invoice_id)
        .group_by(AccountEntry.reference_type)
        .all()
    )
    result = {}
    for reference_type, debit, credit in rows:
        result[reference_type] = {
            "debit_cents": int(debit),
            "credit_cents": int(credit),
            "balanced": int(debit) == int(credit),
        }
    return result


def invoice_net_by_account(org_id: int, invoice_id: int) -> dict[str, int]:
    """Net (debit - credit) per account code across every entry tied to an invoice."""
    rows = (
        db.session.query(
            LedgerAccount.code,
            func.coalesce(func.sum(AccountEntry.debit_cents - AccountEntry.credit_cents), 0),
        )
        .join(LedgerAccount, LedgerAccount.id == AccountEntry.account_id)
        .filter(AccountEntry.org_id == org_id, AccountEntry.reference_id == invoice_id)
        .group_by(LedgerAccount.code)
        .all()
    )
    return {code: int(net) for code, net in rows}


def account_balance(org_id: int, code: str) -> int:
    """Net debit - credit for one account."""
    account = account_service.get_account_by_code(org_id, code)
    debit, credit = (
        db.session.query(
            func.coalesce(func.sum(AccountEntry.debit_cents), 0),
            func.coalesce(func.sum(AccountEntry.credit_cents), 0),
        )
        .filter_by(org_id=org_id, account_id=account.id)
        .one()
    )
    return int(debit) - int(credit)


def trial_balance(org_id: int) -> dict:
    """Debit/credit totals per account plus an overall balanced flag."""
    rows = (
        db.session.query(
            LedgerAccount.code,
            LedgerAccount.name,
            LedgerAccount.account_type,
            func.coalesce(func.sum(AccountEntry.debit_cents), 0),
            func.coalesce(func.sum(AccountEntry.credit_cents), 0),
        )
        .join(AccountEntry, AccountEntry.account_id == LedgerAccount.id)
        .filter(LedgerAccount.org_id == org_id)
        .group_by(LedgerAccount.id, LedgerAccount.code, LedgerAccount.name, LedgerAccount.account_type)
        .order_by(LedgerAccount.code.asc())
        .all()
    )

    accounts = []
    total_debit = 0
    total_credit = 0
    for code, name, account_type, debit, credit in rows:
        debit, credit = int(debit), int(credit)
        total_debit += debit
        total_credit += credit
        accounts.append({
            "code": code,
            "name": name,
            "account_type": account_type,
            "debit_cents": debit,
            "credit_cents": credit,
            "balance_cents": debit - credit,
        })

    return {
        "accounts": accounts,
        "total_debit_cents": total_debit,
        "total_credit_cents": total_credit,
        "balanced": total_debit == total_credit,
    }
