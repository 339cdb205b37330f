"""Plan model"""
import uuid
from sqlalchemy import Column, String, Boolean, DateTime
from datetime import datetime, timezone
from billing.models.base import Base


class Plan(Base):
    """Purchasable plan mapped to a Stripe price"""
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    plan_type = Column(String(50), nullable=False, index=True)  # 'monthly', 'annual'
    stripe_price_id = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "plan_type": self.plan_type,
            "stripe_price_id": self.stripe_price_id,
            "active": self.active,
        }
