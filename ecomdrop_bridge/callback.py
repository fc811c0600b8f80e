"""Ecomdrop completion callbacks: authenticate, resolve the order, merge tags."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from ecomdrop_bridge.models import ShopConfiguration
from ecomdrop_bridge.orders import is_global_id, merge_order_tags, requested_tags, resolve_order_gid
from ecomdrop_bridge.relay import get_offline_session
from ecomdrop_bridge.security import mask_secret, normalize_shop_domain
from ecomdrop_bridge.shopify_api import (
    OrderNotFoundError,
    ShopifyApiClient,
    ShopifyApiError,
    ShopifyPermissionError,
)

logger = logging.getLogger(__name__)


class CallbackError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def _first_present(body: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = body.get(key)
        if value not in (None, ""):
            return value
    return None


def authenticate_api_key(session: Session, api_key: str) -> ShopConfiguration:
    matches = session.scalars(
        select(ShopConfiguration).where(ShopConfiguration.ecomdrop_api_key == api_key).limit(2)
    ).all()
    if not matches:
        logger.warning("callback.invalid_api_key", extra={"api_key": mask_secret(api_key)})
        raise CallbackError(401, "Invalid API key")
    if len(matches) > 1:
        logger.error("callback.ambiguous_api_key", extra={"api_key": mask_secret(api_key)})
        raise CallbackError(401, "API key is configured for more than one shop")
    return matches[0]


def _callback_shop(body: dict[str, Any], configuration: ShopConfiguration) -> str:
    override = body.get("shop")
    if not override:
        return configuration.shop
    try:
        shop = normalize_shop_domain(str(override))
    except HTTPException as exc:
        raise CallbackError(400, str(exc.detail)) from exc
    if shop != configuration.shop:
        raise CallbackError(401, f"API key is not valid for shop {shop}")
    return shop


async def process_callback(
    session: Session,
    body: dict[str, Any],
    *,
    shopify: ShopifyApiClient,
) -> dict[str, Any]:
    api_key = _first_present(body, "apiKey", "api_key", "token")
    if not isinstance(api_key, str):
        raise CallbackError(401, "API key is required for authentication")
    configuration = authenticate_api_key(session, api_key)
    shop = _callback_shop(body, configuration)

    order_id = _first_present(body, "orderId", "order_id")
    order_name = _first_present(body, "orderName", "order_name")
    if order_id is None and order_name is None:
        raise CallbackError(400, "orderName (e.g., '#1014') or orderId is required")
    if order_name is not None:
        order_name = str(order_name).strip()

    tags = requested_tags(tag=body.get("tag"), tags=body.get("tags"), status=body.get("status"))
    logger.info(
        "callback.received",
        extra={"shop": shop, "order_id": order_id, "order_name": order_name, "tags": tags},
    )

    shop_session = get_offline_session(session, shop)
    if shop_session is None:
        raise CallbackError(404, "No active session found for shop. Please ensure the app is installed.")
    if not shop_session.access_token:
        raise CallbackError(401, "No access token available in session")
    access_token = shop_session.access_token

    if not is_global_id(order_id) and not order_name:
        raise CallbackError(400, "orderName is required when orderId is not provided in GraphQL format")

    try:
        order_gid = await resolve_order_gid(
            shopify,
            shop_domain=shop,
            access_token=access_token,
            order_id=order_id,
            order_name=order_name,
        )
    except ShopifyPermissionError as exc:
        raise CallbackError(403, str(exc)) from exc
    except OrderNotFoundError as exc:
        raise CallbackError(404, str(exc)) from exc
    except ShopifyApiError as exc:
        raise CallbackError(500, f"Failed to search order: {exc}") from exc

    try:
        await merge_order_tags(
            shopify,
            shop_domain=shop,
            access_token=access_token,
            order_gid=order_gid,
            tags=tags,
        )
    except ShopifyPermissionError as exc:
        raise CallbackError(403, str(exc)) from exc
    except OrderNotFoundError as exc:
        raise CallbackError(404, str(exc)) from exc
    except ShopifyApiError as exc:
        raise CallbackError(500, str(exc)) from exc

    return {
        "success": True,
        "message": f"Tags added successfully: {', '.join(tags)}",
        "orderId": order_gid,
        "tags": tags,
    }
