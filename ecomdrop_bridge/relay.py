"""Shopify webhook to Ecomdrop flow relay.

Each delivery runs ``Received -> ConfigLoaded -> (Skipped | Normalized ->
Dispatched) -> Acknowledged``. Nothing here raises into the webhook route for
an expected failure; the route itself acknowledges on anything unexpected.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ecomdrop_bridge.config import settings
from ecomdrop_bridge.db import SessionLocal
from ecomdrop_bridge.ecomdrop_api import EcomdropApiClient, EcomdropApiError, dispatch_idempotency_key
from ecomdrop_bridge.models import (
    AIConfiguration,
    OAuthState,
    ProcessedWebhookEvent,
    ProductAssociation,
    ShopConfiguration,
    ShopSession,
    offline_session_id,
)
from ecomdrop_bridge.normalizer import EventType, normalize_event
from ecomdrop_bridge.orders import merge_order_tags, to_order_gid
from ecomdrop_bridge.shopify_api import ShopifyApiClient, ShopifyApiError

logger = logging.getLogger(__name__)

EVENT_TOPICS: dict[EventType, str] = {
    EventType.ORDER_CREATED: "ORDERS_CREATE",
    EventType.DRAFT_ORDER_CREATED: "DRAFT_ORDERS_CREATE",
}

PURGED_MODELS = (ShopSession, ShopConfiguration, ProductAssociation, AIConfiguration, OAuthState)

# Tables that name the owning shop something other than ``shop``.
SHOP_COLUMNS: dict[type, str] = {OAuthState: "shop_domain"}


@dataclass(frozen=True)
class RelayOutcome:
    status: str
    reason: str | None = None
    error: str | None = None
    fallback_tagged: bool = False


def get_configuration(session: Session, shop: str) -> ShopConfiguration | None:
    return session.scalars(select(ShopConfiguration).where(ShopConfiguration.shop == shop)).first()


def get_offline_session(session: Session, shop: str) -> ShopSession | None:
    return session.get(ShopSession, offline_session_id(shop))


def flow_id_for(configuration: ShopConfiguration, event_type: EventType) -> str | None:
    if event_type is EventType.ORDER_CREATED:
        return configuration.nuevo_pedido_flow_id
    return configuration.carrito_abandonado_flow_id


def skip_reason(configuration: ShopConfiguration | None, event_type: EventType) -> str | None:
    if configuration is None:
        return "no_configuration"
    if not configuration.ecomdrop_api_key:
        return "no_api_key"
    if not flow_id_for(configuration, event_type):
        return "no_flow_configured"
    return None


def build_event_document(
    payload: Any,
    event_type: EventType,
    *,
    shop: str,
    configuration: ShopConfiguration,
) -> dict[str, Any]:
    document = normalize_event(payload, event_type, shop=shop)
    document["callbackUrl"] = settings.callback_url
    document["callbackApiKey"] = configuration.ecomdrop_api_key
    return document


def _resource_id(document: dict[str, Any], event_type: EventType) -> Any:
    if event_type is EventType.ORDER_CREATED:
        return document.get("orderId")
    return document.get("draftOrderId")


def _already_dispatched(session: Session, *, shop: str, topic: str, event_id: str | None) -> bool:
    if not event_id:
        return False
    existing = session.scalars(
        select(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.shop_domain == shop,
            ProcessedWebhookEvent.topic == topic,
            ProcessedWebhookEvent.event_id == event_id,
        )
    ).first()
    return existing is not None


def _record_dispatch(session: Session, *, shop: str, topic: str, event_id: str | None) -> None:
    if not event_id:
        return
    session.add(ProcessedWebhookEvent(shop_domain=shop, topic=topic, event_id=event_id, status="dispatched"))
    try:
        session.commit()
    except IntegrityError:
        # Another delivery of the same event recorded it first.
        session.rollback()


async def apply_dispatch_failure_tag(
    session: Session,
    shopify: ShopifyApiClient,
    *,
    shop: str,
    order_id: Any,
) -> bool:
    order_gid = to_order_gid(order_id)
    shop_session = get_offline_session(session, shop)
    if not order_gid or shop_session is None or not shop_session.access_token:
        return False
    try:
        await merge_order_tags(
            shopify,
            shop_domain=shop,
            access_token=shop_session.access_token,
            order_gid=order_gid,
            tags=[settings.ECOMDROP_DISPATCH_FAILURE_TAG],
        )
    except ShopifyApiError as exc:
        logger.warning(
            "relay.failure_tag_not_applied",
            extra={"shop": shop, "order_gid": order_gid, "error": str(exc)},
        )
        return False
    return True


async def relay_event(
    session: Session,
    *,
    shop: str,
    payload: dict[str, Any],
    event_type: EventType,
    event_id: str | None,
    ecomdrop: EcomdropApiClient,
    shopify: ShopifyApiClient,
) -> RelayOutcome:
    topic = EVENT_TOPICS[event_type]
    configuration = get_configuration(session, shop)
    reason = skip_reason(configuration, event_type)
    if reason:
        logger.info("relay.skipped", extra={"shop": shop, "topic": topic, "reason": reason})
        return RelayOutcome(status="skipped", reason=reason)

    if _already_dispatched(session, shop=shop, topic=topic, event_id=event_id):
        logger.info("relay.duplicate_delivery", extra={"shop": shop, "topic": topic, "event_id": event_id})
        return RelayOutcome(status="duplicate")

    document = build_event_document(payload, event_type, shop=shop, configuration=configuration)
    resource_id = _resource_id(document, event_type)
    flow_id = flow_id_for(configuration, event_type)
    try:
        await ecomdrop.trigger_flow(
            api_key=configuration.ecomdrop_api_key,
            flow_id=flow_id,
            event=document,
            idempotency_key=dispatch_idempotency_key(
                shop=shop,
                resource_id=resource_id,
                event_type=event_type.value,
            ),
        )
    except EcomdropApiError as exc:
        logger.error(
            "relay.dispatch_failed",
            extra={"shop": shop, "topic": topic, "flow_id": flow_id, "resource_id": resource_id, "error": str(exc)},
        )
        fallback_tagged = False
        if event_type is EventType.ORDER_CREATED:
            fallback_tagged = await apply_dispatch_failure_tag(
                session,
                shopify,
                shop=shop,
                order_id=resource_id,
            )
        return RelayOutcome(status="dispatch_failed", error=str(exc), fallback_tagged=fallback_tagged)

    _record_dispatch(session, shop=shop, topic=topic, event_id=event_id)
    logger.info(
        "relay.dispatched",
        extra={"shop": shop, "topic": topic, "flow_id": flow_id, "resource_id": resource_id},
    )
    return RelayOutcome(status="dispatched")


def _delete_shop_rows(session_factory: Callable[[], Session], model: type, shop: str) -> int:
    with session_factory() as session:
        result = session.execute(delete(model).where(getattr(model, SHOP_COLUMNS.get(model, "shop")) == shop))
        session.commit()
        return result.rowcount or 0


async def purge_shop(shop: str, *, session_factory: Callable[[], Session] = SessionLocal) -> dict[str, Any]:
    """Delete every record owned by ``shop``; one failed table does not stop the others."""
    results = await asyncio.gather(
        *(asyncio.to_thread(_delete_shop_rows, session_factory, model, shop) for model in PURGED_MODELS),
        return_exceptions=True,
    )
    outcome: dict[str, Any] = {}
    for model, result in zip(PURGED_MODELS, results):
        table = model.__tablename__
        if isinstance(result, Exception):
            logger.error(
                "uninstall.purge_failed",
                extra={"shop": shop, "table": table, "error": str(result)},
            )
            outcome[table] = f"error: {result}"
        else:
            outcome[table] = result
    logger.info("uninstall.purged", extra={"shop": shop, "outcome": outcome})
    return outcome
