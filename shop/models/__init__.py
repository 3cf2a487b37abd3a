# Import every model so Alembic can discover them.

from shop.models.order import Order  # noqa: F401
from shop.models.stock import StockRecord  # noqa: F401
from shop.models.stripe_event import StripeEvent  # noqa: F401
from shop.models.audit import AuditEvent  # noqa: F401
