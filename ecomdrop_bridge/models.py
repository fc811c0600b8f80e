from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, DeclarativeBase, mapped_column


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def offline_session_id(shop_domain: str) -> str:
    return f"offline_{shop_domain}"


class ShopSession(Base):
    __tablename__ = "shop_sessions"

    id: Mapped[str] = mapped_column(String(length=300), primary_key=True)
    shop: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(length=128), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ShopConfiguration(Base):
    __tablename__ = "shop_configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False, index=True)
    # Callback authentication looks shops up by this key, so it must be unique when set.
    ecomdrop_api_key: Mapped[str | None] = mapped_column(String(length=512), unique=True, nullable=True)
    nuevo_pedido_flow_id: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    carrito_abandonado_flow_id: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    dropi_store_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    dropi_country: Mapped[str | None] = mapped_column(String(length=8), nullable=True)
    dropi_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ProductAssociation(Base):
    __tablename__ = "product_associations"
    __table_args__ = (
        UniqueConstraint("shop", "dropi_product_id", name="uq_product_association_dropi_product"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    dropi_product_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    shopify_product_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    shopify_variant_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AIConfiguration(Base):
    __tablename__ = "ai_configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False, index=True)
    agent_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    company_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_policies: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_methods: Mapped[str | None] = mapped_column(Text, nullable=True)
    faq: Mapped[str | None] = mapped_column(Text, nullable=True)
    post_sale_faq: Mapped[str | None] = mapped_column(Text, nullable=True)
    rules: Mapped[str | None] = mapped_column(Text, nullable=True)
    notifications: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("shop_domain", "topic", "event_id", name="uq_processed_webhook_event"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_domain: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(length=128), nullable=False)
    event_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    status: Mapped[str] = mapped_column(String(length=64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
