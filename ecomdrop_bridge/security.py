from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import Header, HTTPException, Request, status

from ecomdrop_bridge.config import settings

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


@dataclass(frozen=True)
class ShopifyWebhook:
    shop: str
    topic: str
    event_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)


def normalize_shop_domain(shop: str) -> str:
    normalized = shop.strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="shop must be a valid *.myshopify.com domain",
        )
    return normalized


def mask_secret(value: str | None, *, visible: int = 6) -> str:
    """Return a log-safe prefix of a credential."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}..."


def _signature(message: bytes) -> bytes:
    return hmac.new(settings.SHOPIFY_APP_API_SECRET.encode("utf-8"), message, hashlib.sha256).digest()


def verify_oauth_hmac(query_items: Sequence[tuple[str, str]]) -> bool:
    supplied_hmac = None
    signed: list[tuple[str, str]] = []
    for key, value in query_items:
        if key == "hmac":
            supplied_hmac = value
        elif key != "signature":
            signed.append((key, value))

    if not supplied_hmac:
        return False

    message = "&".join(f"{key}={value}" for key, value in sorted(signed, key=lambda item: item[0]))
    return hmac.compare_digest(_signature(message.encode("utf-8")).hex(), supplied_hmac)


def verify_webhook_hmac(*, body: bytes, supplied_hmac: str | None) -> bool:
    if not supplied_hmac:
        return False
    encoded = base64.b64encode(_signature(body)).decode("utf-8")
    return hmac.compare_digest(encoded, supplied_hmac)


async def authenticate_webhook(request: Request) -> ShopifyWebhook:
    """Verify a Shopify webhook delivery and return its shop, topic and JSON body.

    Signature and shop header problems are rejected here, before any relay
    logic runs. A body that is not a JSON object yields an empty payload so
    that the handler can still acknowledge the delivery.
    """
    body = await request.body()
    if not verify_webhook_hmac(body=body, supplied_hmac=request.headers.get("x-shopify-hmac-sha256")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook HMAC")

    shop_header = request.headers.get("x-shopify-shop-domain")
    if not shop_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing x-shopify-shop-domain header",
        )

    try:
        payload = json.loads(body) if body else {}
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    return ShopifyWebhook(
        shop=normalize_shop_domain(shop_header),
        topic=request.headers.get("x-shopify-topic", ""),
        event_id=request.headers.get("x-shopify-event-id") or None,
        payload=payload,
    )


def require_internal_api_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer authorization header",
        )
    token = authorization[7:].strip()
    if not hmac.compare_digest(token, settings.SHOPIFY_INTERNAL_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal API token",
        )
