from .catalog import Store, Warehouse, Supplier, Customer, LoyaltySetting, Product, Batch, NOT_TAXABLE
from .orders import Order, OrderItem, OrderItemBatch
from .vouchers import InventoryVoucher, InventoryVoucherLine, InventoryVoucherMovement
from .documents import DocumentSequence

__all__ = [
    'Store', 'Warehouse', 'Supplier', 'Customer', 'LoyaltySetting',
    'Product', 'Batch', 'NOT_TAXABLE',
    'Order', 'OrderItem', 'OrderItemBatch',
    'InventoryVoucher', 'InventoryVoucherLine', 'InventoryVoucherMovement',
    'DocumentSequence',
]
