import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from config.settings import settings
from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    Profile row for an identity-provider subject.
    Created lazily the first time an authenticated subject is seen.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    full_name = Column(String, nullable=True)
    company = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    preferences = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class UserSubscription(Base):
    """
    Usage ledger: plan tier and trial counter, one row per user.
    Never hard-deleted.
    """
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    subscription_type = Column(String, nullable=False, default="trial")
    trial_analyses_used = Column(Integer, nullable=False, default=0)
    trial_analyses_limit = Column(Integer, nullable=False, default=lambda: settings.trial_analyses_limit)
    subscription_status = Column(String, nullable=False, default="active")
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Subscription(Base):
    """One row per purchase attempt. At most one row per user is active."""
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    plan_type = Column(String, nullable=False)
    billing_cycle = Column(String, nullable=False, default="monthly")
    status = Column(String, nullable=False, default="pending")
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="usd")
    payment_reference = Column(String, unique=True, nullable=False, index=True)
    checkout_session_id = Column(String, nullable=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class PaymentHistory(Base):
    __tablename__ = "payment_history"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, default="pending")
    payment_method = Column(String, nullable=False, default="stripe")
    transaction_reference = Column(String, nullable=False, index=True)
    provider_transaction_id = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class WebhookEvent(Base):
    """Processed webhook deliveries, unique per (event type, reference)."""
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("event_type", "reference", name="uq_webhook_event_type_reference"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False)
    reference = Column(String, nullable=False)
    provider_event_id = Column(String, nullable=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Contract(Base):
    __tablename__ = "contracts"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    contract_type = Column(String, nullable=False, default="other")
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=True)
    file_size = Column(Integer, nullable=False, default=0)
    file_type = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="uploaded")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Analysis(Base):
    __tablename__ = "analyses"

    id = Column(String, primary_key=True, default=new_id)
    contract_id = Column(String, ForeignKey("contracts.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="analyzing")
    analysis_type = Column(String, nullable=False, default="full")
    overall_risk_score = Column(Float, nullable=True)
    summary = Column(Text, nullable=True)
    key_findings = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    model_used = Column(String, nullable=True)
    analysis_duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    risk_clauses = relationship("RiskClause", cascade="all, delete-orphan", lazy="selectin")
    missing_clauses = relationship("MissingClause", cascade="all, delete-orphan", lazy="selectin")


class RiskClause(Base):
    __tablename__ = "risk_clauses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    analysis_id = Column(String, ForeignKey("analyses.id"), nullable=False, index=True)
    clause_text = Column(Text, nullable=False)
    risk_level = Column(String, nullable=False)
    risk_category = Column(String, nullable=True)
    explanation = Column(Text, nullable=True)
    recommendation = Column(Text, nullable=True)
    location = Column(String, nullable=True)


class MissingClause(Base):
    __tablename__ = "missing_clauses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    analysis_id = Column(String, ForeignKey("analyses.id"), nullable=False, index=True)
    clause_type = Column(String, nullable=False)
    importance = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    suggested_text = Column(Text, nullable=True)
    legal_impact = Column(Text, nullable=True)


class ContractChat(Base):
    __tablename__ = "contract_chats"

    id = Column(String, primary_key=True, default=new_id)
    contract_id = Column(String, ForeignKey("contracts.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=new_id)
    chat_id = Column(String, ForeignKey("contract_chats.id"), nullable=False, index=True)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    referenced_clauses = Column(JSON, nullable=True)
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
