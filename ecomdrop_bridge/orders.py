"""Order resolution and tag merging against the Shopify Admin API."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ecomdrop_bridge.config import settings
from ecomdrop_bridge.normalizer import parse_tags
from ecomdrop_bridge.shopify_api import ShopifyApiClient, ShopifyPermissionError

logger = logging.getLogger(__name__)

ORDER_GID_PREFIX = "gid://shopify/Order/"
DEFAULT_CALLBACK_TAG = "ecomdrop-processed"

STATUS_TAGS: dict[str, str] = {
    "success": "ecomdrop-processed",
    "completed": "ecomdrop-completed",
    "pending": "ecomdrop-pending",
    "error": "ecomdrop-error",
    "failed": "ecomdrop-error",
}


def is_global_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("gid://")


def to_order_gid(order_id: Any) -> str | None:
    """Global id for an order id in either REST (numeric) or GraphQL form."""
    if is_global_id(order_id):
        return order_id
    if isinstance(order_id, bool):
        return None
    if isinstance(order_id, int) or (isinstance(order_id, str) and order_id.strip().isdigit()):
        return f"{ORDER_GID_PREFIX}{str(order_id).strip()}"
    return None


def status_tag(status: Any) -> str | None:
    if not isinstance(status, str):
        return None
    return STATUS_TAGS.get(status)


def requested_tags(*, tag: Any = None, tags: Any = None, status: Any = None) -> list[str]:
    """Tags a completion callback asks for.

    An explicit ``tag`` wins over ``tags``; the status-derived tag is appended
    when not already present, and the default tag is used when nothing else
    was asked for.
    """
    if isinstance(tag, str) and tag.strip():
        resolved = [tag.strip()]
    else:
        resolved = parse_tags(tags)

    derived = status_tag(status)
    if derived:
        resolved.append(derived)

    resolved = merge_tag_lists([], resolved)
    return resolved or [DEFAULT_CALLBACK_TAG]


def merge_tag_lists(existing: Iterable[str], additions: Iterable[str]) -> list[str]:
    """Ordered union: existing tags first, then new tags in input order, exact-match dedup."""
    merged: list[str] = []
    seen: set[str] = set()
    for tag in (*existing, *additions):
        tag = tag.strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        merged.append(tag)
    return merged


async def resolve_order_gid(
    client: ShopifyApiClient,
    *,
    shop_domain: str,
    access_token: str,
    order_id: Any = None,
    order_name: str | None = None,
) -> str:
    """Resolve a callback's order reference to a Shopify order global id.

    A global id is returned as is without calling Shopify. Otherwise the order
    is looked up by exact name. Raises ``OrderNotFoundError`` or
    ``ShopifyPermissionError``; ``ValueError`` when no usable name was given.
    """
    if is_global_id(order_id):
        return order_id
    if not order_name:
        raise ValueError("orderName is required when orderId is not provided in GraphQL format")
    order_gid = await client.find_order_id_by_name(
        shop_domain=shop_domain,
        access_token=access_token,
        order_name=order_name,
    )
    logger.info(
        "orders.resolved_by_name",
        extra={"shop": shop_domain, "order_name": order_name, "order_gid": order_gid},
    )
    return order_gid


async def merge_order_tags(
    client: ShopifyApiClient,
    *,
    shop_domain: str,
    access_token: str,
    order_gid: str,
    tags: Iterable[str],
) -> list[str]:
    """Add ``tags`` to an order without removing any tag it already has.

    Two round trips with no concurrency control: a different tag written
    between the read and the write can be lost. When the read is denied for
    protected data and blind writes are enabled, the write proceeds from an
    empty base.
    """
    additions = list(tags)
    try:
        existing = await client.get_order_tags(
            shop_domain=shop_domain,
            access_token=access_token,
            order_gid=order_gid,
        )
    except ShopifyPermissionError:
        if not settings.ECOMDROP_BLIND_TAG_WRITE_ON_READ_DENIED:
            raise
        logger.warning(
            "orders.tag_read_denied",
            extra={"shop": shop_domain, "order_gid": order_gid},
        )
        existing = []

    merged = merge_tag_lists(existing, additions)
    await client.update_order_tags(
        shop_domain=shop_domain,
        access_token=access_token,
        order_gid=order_gid,
        tags=merged,
    )
    logger.info(
        "orders.tags_merged",
        extra={"shop": shop_domain, "order_gid": order_gid, "tags": merged},
    )
    return merged
