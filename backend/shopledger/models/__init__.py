from .catalog import Product
from .inventory import StockRecord, StockMovement
from .customers import Customer, LoyaltyTransaction, LoyaltyReward, LoyaltyRedemption
from .orders import Order, OrderLine, OrderStatusEvent
from .sales import Sale, SaleLine, PaymentRecord, RefundRecord

__all__ = [
    'Product',
    'StockRecord', 'StockMovement',
    'Customer', 'LoyaltyTransaction', 'LoyaltyReward', 'LoyaltyRedemption',
    'Order', 'OrderLine', 'OrderStatusEvent',
    'Sale', 'SaleLine', 'PaymentRecord', 'RefundRecord',
]
