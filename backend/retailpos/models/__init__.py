from .catalog import Branch, Product, Customer
from .inventory import Stock, StockMovement
from .sales import Sale, SaleItem
from .orders import Order, OrderItem

__all__ = [
    'Branch', 'Product', 'Customer',
    'Stock', 'StockMovement',
    'Sale', 'SaleItem',
    'Order', 'OrderItem',
]
