# Overview: Service-layer operations for the chart of accounts; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import LedgerAccount, AccountEntry
from ..models.ledger import ACCOUNT_TYPES
from ..validation import ValidationError, ConflictError, NotFoundError


@dataclass(frozen=True)
class SystemAccount:
    code: str
    name: str
    account_type: str


# System chart: created lazily on first posting
CASH = SystemAccount("1001", "Cash", "asset")
BANK = SystemAccount("1002", "Bank", "asset")
UPI = SystemAccount("1003", "UPI Receivables", "asset")
CARD = SystemAccount("1004", "Card Receivables", "asset")
ACCOUNTS_RECEIVABLE = SystemAccount("1200", "Accounts Receivable", "asset")
INVENTORY_ASSET = SystemAccount("1500", "Inventory Asset", "asset")
TAX_PAYABLE = SystemAccount("2100", "Tax Payable", "liability")
SALES = SystemAccount("4000", "Sales", "income")
COGS = SystemAccount("5000", "Cost of Goods Sold", "expense")

SYSTEM_ACCOUNTS = (CASH, BANK, UPI, CARD, ACCOUNTS_RECEIVABLE, INVENTORY_ASSET, TAX_PAYABLE, SALES, COGS)

PAYMENT_METHOD_ACCOUNTS = {
    "cash": CASH,
    "bank": BANK,
    "cheque": BANK,
    "upi": UPI,
    "card": CARD,
    "other": CASH,
}


def _find_account(org_id: int, code: str) -> LedgerAccount | None:
    return db.session.query(LedgerAccount).filter_by(org_id=org_id, code=code).first()


def get_or_create_account(org_id: int, code: str, name: str, account_type: str) -> LedgerAccount:
    """
    Idempotent lookup/creation of a ledger account keyed by (org_id, code).

    CONCURRENCY: two postings may both miss on first use. The insert runs in
    a SAVEPOINT; whoever loses the unique constraint rolls back only the
    savepoint and re-reads the winner's row. The duplicate never reaches
    the caller and the surrounding transaction stays usable.
    """
    account = _find_account(org_id, code)
    if account:
        return account

    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(f"Invalid account type: {account_type}")

    try:
        with db.session.begin_nested():
            account = LedgerAccount(
                org_id=org_id,
                code=code,
                name=name,
                account_type=account_type,
                is_system=True,
            )
            db.session.add(account)
            db.session.flush()
    except IntegrityError:
        account = _find_account(org_id, code)
        if account is None:
            raise
    return account


def get_system_account(org_id: int, system_account: SystemAccount) -> LedgerAccount:
    return get_or_create_account(org_id, system_account.code, system_account.name, system_account.account_type)


def payment_account_for_method(org_id: int, method: str | None) -> LedgerAccount:
    """Asset account that receives money for a payment method (cash 1001, bank/cheque 1002, upi 1003, card 1004)."""
    system_account = PAYMENT_METHOD_ACCOUNTS.get((method or "cash").lower(), CASH)
    return get_system_account(org_id, system_account)


def seed_system_accounts(org_id: int) -> list[LedgerAccount]:
    """Create the whole system chart for an organization (idempotent)."""
    return [get_system_account(org_id, system_account) for system_account in SYSTEM_ACCOUNTS]


def get_account_by_code(org_id: int, code: str) -> LedgerAccount:
    account = _find_account(org_id, code)
    if not account:
        raise NotFoundError(f"Account {code} not found")
    return account


def list_accounts(org_id: int) -> list[LedgerAccount]:
    return (
        db.session.query(LedgerAccount)
        .filter_by(org_id=org_id)
        .order_by(LedgerAccount.code.asc())
        .all()
    )


def _get_account(org_id: int, account_id: int) -> LedgerAccount:
    account = db.session.query(LedgerAccount).filter_by(id=account_id, org_id=org_id).first()
    if not account:
        raise NotFoundError(f"Account {account_id} not found")
    return account


def _assert_no_cycle(account: LedgerAccount, parent: LedgerAccount) -> None:
    node = parent
    while node is not None:
        if node.id == account.id:
            raise ValidationError(f"Account {account.code} cannot be its own ancestor")
        node = node.parent


def create_account(
    org_id: int,
    code: str,
    name: str,
    account_type: str,
    parent_id: int | None = None,
) -> LedgerAccount:
    """Explicitly create a user-defined account. Duplicate codes are a conflict here, not a lookup."""
    code = (code or "").strip()
    name = (name or "").strip()
    if not code or not name:
        raise ValidationError("code and name are required")
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(f"account_type must be one of: {', '.join(ACCOUNT_TYPES)}")
    if _find_account(org_id, code):
        raise ConflictError(f"Account code {code} already exists")

    parent = _get_account(org_id, parent_id) if parent_id is not None else None

    try:
        with db.session.begin_nested():
            account = LedgerAccount(
                org_id=org_id,
                code=code,
                name=name,
                account_type=account_type,
                parent_id=parent.id if parent else None,
                is_system=False,
            )
            db.session.add(account)
            db.session.flush()
    except IntegrityError:
        raise ConflictError(f"Account code {code} already exists")
    return account


def set_parent(org_id: int, account_id: int, parent_id: int | None) -> LedgerAccount:
    account = _get_account(org_id, account_id)
    if parent_id is None:
        account.parent_id = None
        db.session.flush()
        return account

    parent = _get_account(org_id, parent_id)
    _assert_no_cycle(account, parent)
    account.parent_id = parent.id
    db.session.flush()
    return account


def delete_account(org_id: int, account_id: int) -> None:
    """
    Delete an account that has never been posted to.

    Accounts with postings or child accounts are refused: deleting them
    would orphan ledger history.
    """
    account = _get_account(org_id, account_id)

    has_entries = db.session.query(AccountEntry.id).filter_by(account_id=account.id).first()
    if has_entries:
        raise ConflictError(f"Account {account.code} has postings and cannot be deleted")

    has_children = db.session.query(LedgerAccount.id).filter_by(parent_id=account.id).first()
    if has_children:
        raise ConflictError(f"Account {account.code} has child accounts and cannot be deleted")

    db.session.delete(account)
    db.session.flush()
