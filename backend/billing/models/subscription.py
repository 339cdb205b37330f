"""Subscription model"""
from sqlalchemy import Column, String, DateTime, Boolean
from datetime import datetime, timezone
from billing.core.config import MANUAL_SUBSCRIPTION_PREFIX
from billing.models.base import Base


class Subscription(Base):
    """Local mirror of a user's Stripe (or admin-granted) subscription"""
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)  # Stripe subscription ID or 'manual_<user_id>'
    user_id = Column(String(36), nullable=False, unique=True, index=True)  # one row per user
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    plan_id = Column(String(255), nullable=True)  # plan UUID, or the raw plan identifier when lookup failed
    status = Column(String(50), nullable=False)  # 'active', 'trialing', 'past_due', 'canceled', 'cancel_pending', ...
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancel_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    latest_invoice_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    @property
    def is_manual(self) -> bool:
        return self.id.startswith(MANUAL_SUBSCRIPTION_PREFIX)

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "stripe_customer_id": self.stripe_customer_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "cancel_at": _iso(self.cancel_at),
            "canceled_at": _iso(self.canceled_at),
            "ended_at": _iso(self.ended_at),
            "latest_invoice_id": self.latest_invoice_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
