# Importing every model registers its table with the metadata.

from billing_engine.models.customer import Customer  # noqa: F401
from billing_engine.models.price import Price  # noqa: F401
from billing_engine.models.subscription import Subscription  # noqa: F401
from billing_engine.models.payment import Payment  # noqa: F401
from billing_engine.models.invoice import Invoice, InvoiceLine  # noqa: F401
from billing_engine.models.entitlement import Entitlement, UsageLimit  # noqa: F401
from billing_engine.models.promo import PromoCode, PromoRedemption  # noqa: F401
from billing_engine.models.webhook_event import WebhookEvent  # noqa: F401
from billing_engine.models.audit import AuditEvent  # noqa: F401
