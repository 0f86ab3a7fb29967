from .tenancy import Organization, Branch
from .catalog import Product, ProductInventory
from .customers import Customer
from .invoices import Invoice, InvoiceItem, InvoiceAudit, Payment
from .ledger import LedgerAccount, AccountEntry
from .reporting import SalesRecord, SalesRecordItem
from .events import DomainEvent

__all__ = [
    'Organization', 'Branch',
    'Product', 'ProductInventory',
    'Customer',
    'Invoice', 'InvoiceItem', 'InvoiceAudit', 'Payment',
    'LedgerAccount', 'AccountEntry',
    'SalesRecord', 'SalesRecordItem',
    'DomainEvent',
]
