from .tenancy import Business
from .rules import (
    PromotionalDiscount,
    VolumeDiscountTier,
    EarlyPaymentTerm,
    CustomerPaymentTerm,
    CategoryDiscountRule,
    PricingRule,
)
from .transactions import PosTransaction, PosTransactionItem, Invoice, InvoiceLineItem
from .allocations import DiscountAllocation, DiscountAllocationLine, DiscountApproval
from .ledger import ChartOfAccount, JournalEntry, JournalEntryLine
from .documents import DocumentSequence

__all__ = [
    'Business',
    'PromotionalDiscount', 'VolumeDiscountTier', 'EarlyPaymentTerm', 'CustomerPaymentTerm',
    'CategoryDiscountRule', 'PricingRule',
    'PosTransaction', 'PosTransactionItem', 'Invoice', 'InvoiceLineItem',
    'DiscountAllocation', 'DiscountAllocationLine', 'DiscountApproval',
    'ChartOfAccount', 'JournalEntry', 'JournalEntryLine',
    'DocumentSequence',
]
