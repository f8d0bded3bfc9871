"""SQLAlchemy ORM models."""

from carbon_marketplace.models.audit import AnalyticsEvent, SecurityLog, WebhookLog
from carbon_marketplace.models.base import Base
from carbon_marketplace.models.checkout_session import CheckoutSessionRecord
from carbon_marketplace.models.option import Option
from carbon_marketplace.models.order import OrderRecord
from carbon_marketplace.models.portfolio import PortfolioRecord
from carbon_marketplace.models.project import ProjectRecord

__all__ = [
    "Base",
    "ProjectRecord",
    "PortfolioRecord",
    "OrderRecord",
    "CheckoutSessionRecord",
    "SecurityLog",
    "WebhookLog",
    "AnalyticsEvent",
    "Option",
]
