from .customers import Customer
from .inventory import Product, StockMovement
from .suppliers import Supplier
from .sales import Sale, SaleItem
from .purchasing import PurchaseOrder, PurchaseOrderItem
from .returns import Return, ReturnItem
from .promotions import Promotion, AppliedPromotion
from .documents import DocumentSequence

__all__ = [
    'Customer',
    'Product', 'StockMovement',
    'Supplier',
    'Sale', 'SaleItem',
    'PurchaseOrder', 'PurchaseOrderItem',
    'Return', 'ReturnItem',
    'Promotion', 'AppliedPromotion',
    'DocumentSequence',
]
