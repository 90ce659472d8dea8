from .locations import Location, PaymentMethod, LocationPaymentMethod
from .inventory import InventoryItem, VALID_COLORS
from .lending import Transaction, Payment
from .audit import AuditLog, WebhookEvent
from .auth import User, SessionToken

__all__ = [
    'Location', 'PaymentMethod', 'LocationPaymentMethod',
    'InventoryItem', 'VALID_COLORS',
    'Transaction', 'Payment',
    'AuditLog', 'WebhookEvent',
    'User', 'SessionToken',
]
