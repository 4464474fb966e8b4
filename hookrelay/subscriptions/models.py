"""Database models for subscription tracking."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class SubscriptionTracking(Base):
    """Durable mirror of a provider subscription."""

    __tablename__ = "subscription_tracking"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(255), nullable=False, index=True)
    resource = Column(Text, nullable=False, default="")
    resource_display_name = Column(String(255), nullable=False, default="")
    resource_kind = Column(String(50), nullable=False, default="List")  # 'List' or 'Library'
    site_url = Column(Text, nullable=False, default="")
    list_id = Column(String(255), nullable=False, default="")
    change_type = Column(String(100), nullable=False, default="")
    notification_url = Column(Text, nullable=False, default="")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    status = Column(String(20), nullable=False, default="Active")  # 'Active' or 'Deleted'

    # Locally owned, never refreshed from the provider
    notification_count = Column(Integer, nullable=False, default=0)
    last_forwarded_at = Column(DateTime(timezone=True), nullable=True)
    client_state = Column(Text, nullable=False, default="")
    forwarding_url = Column(Text, nullable=False, default="")
    is_proxy = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
