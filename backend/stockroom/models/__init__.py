from .users import User
from .catalog import Category, Supplier, Customer
from .inventory import Product, StockMovement, ImmutableMovementError
from .sales import Sale, SaleItem, Payment, InvoiceSequence
from .notifications import SensibleCategory
from .settings import Setting

__all__ = [
    'User',
    'Category', 'Supplier', 'Customer',
    'Product', 'StockMovement', 'ImmutableMovementError',
    'Sale', 'SaleItem', 'Payment', 'InvoiceSequence',
    'SensibleCategory',
    'Setting',
]
