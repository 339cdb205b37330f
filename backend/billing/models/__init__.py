"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from billing.models.base import Base
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = ["Base", "Plan", "Subscription", "StripeEvent"]
