from .auth import User, SessionToken
from .catalog import Product
from .inventory import InventoryMutation
from .orders import Order, OrderLine, OrderSequence
from .payments import Payment, PaymentEvent, WebhookEvent

__all__ = [
    'User', 'SessionToken',
    'Product', 'InventoryMutation',
    'Order', 'OrderLine', 'OrderSequence',
    'Payment', 'PaymentEvent', 'WebhookEvent',
]
