from .branches import Branch
from .catalog import Product
from .clients import Client, ClientLedgerEntry
from .transactions import Transaction, TransactionItem, InvoiceCounter
from .audit import AuditLogEntry

__all__ = [
    'Branch',
    'Product',
    'Client', 'ClientLedgerEntry',
    'Transaction', 'TransactionItem', 'InvoiceCounter',
    'AuditLogEntry',
]
