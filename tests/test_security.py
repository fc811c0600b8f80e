from __future__ import annotations

import base64
import hashlib
import hmac

import pytest
from fastapi import HTTPException

from ecomdrop_bridge.security import mask_secret, normalize_shop_domain, verify_oauth_hmac, verify_webhook_hmac


def _oauth_hmac(query_items: list[tuple[str, str]], secret: str) -> str:
    pairs = [item for item in query_items if item[0] not in {"hmac", "signature"}]
    pairs.sort(key=lambda item: item[0])
    message = "&".join(f"{key}={value}" for key, value in pairs)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def test_normalize_shop_domain_accepts_valid_domain():
    assert normalize_shop_domain(" Example-Shop.myshopify.com ") == "example-shop.myshopify.com"


def test_normalize_shop_domain_rejects_other_hosts():
    with pytest.raises(HTTPException) as exc_info:
        normalize_shop_domain("evil.example.com")

    assert exc_info.value.status_code == 400


def test_verify_oauth_hmac_accepts_valid_signature():
    query_items = [
        ("code", "abc"),
        ("shop", "example-shop.myshopify.com"),
        ("state", "state-123"),
        ("timestamp", "1710000000"),
    ]
    digest = _oauth_hmac(query_items, "test_secret")
    query_items.append(("hmac", digest))

    assert verify_oauth_hmac(query_items)


def test_verify_oauth_hmac_rejects_invalid_signature():
    query_items = [
        ("code", "abc"),
        ("shop", "example-shop.myshopify.com"),
        ("state", "state-123"),
        ("hmac", "invalid"),
    ]

    assert not verify_oauth_hmac(query_items)


def test_verify_webhook_hmac():
    body = b'{"id": 1}'
    digest = base64.b64encode(hmac.new(b"test_secret", body, hashlib.sha256).digest()).decode("utf-8")

    assert verify_webhook_hmac(body=body, supplied_hmac=digest)
    assert not verify_webhook_hmac(body=b'{"id": 2}', supplied_hmac=digest)
    assert not verify_webhook_hmac(body=body, supplied_hmac=None)


def test_mask_secret_keeps_only_a_prefix():
    assert mask_secret("ecd_1234567890") == "ecd_12..."
    assert mask_secret("abc") == "***"
    assert mask_secret(None) == ""
