from __future__ import annotations

import asyncio

import pytest

from ecomdrop_bridge.config import settings
from ecomdrop_bridge.orders import (
    DEFAULT_CALLBACK_TAG,
    merge_order_tags,
    merge_tag_lists,
    requested_tags,
    resolve_order_gid,
    status_tag,
    to_order_gid,
)
from ecomdrop_bridge.shopify_api import ShopifyPermissionError


class FakeShopify:
    def __init__(self, *, existing_tags=None, read_error=None, order_gid="gid://shopify/Order/999"):
        self.existing_tags = list(existing_tags or [])
        self.read_error = read_error
        self.order_gid = order_gid
        self.lookups: list[str] = []
        self.writes: list[list[str]] = []

    async def find_order_id_by_name(self, *, shop_domain: str, access_token: str, order_name: str):
        self.lookups.append(order_name)
        return self.order_gid

    async def get_order_tags(self, *, shop_domain: str, access_token: str, order_gid: str):
        if self.read_error is not None:
            raise self.read_error
        return list(self.existing_tags)

    async def update_order_tags(self, *, shop_domain: str, access_token: str, order_gid: str, tags: list[str]):
        self.writes.append(list(tags))
        self.existing_tags = list(tags)
        return list(tags)


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ("success", "ecomdrop-processed"),
        ("completed", "ecomdrop-completed"),
        ("pending", "ecomdrop-pending"),
        ("error", "ecomdrop-error"),
        ("failed", "ecomdrop-error"),
        ("SUCCESS", None),
        ("cancelled", None),
        (None, None),
    ],
)
def test_status_tag_mapping(status, expected):
    assert status_tag(status) == expected


def test_requested_tags_defaults_to_processed_tag():
    assert requested_tags() == [DEFAULT_CALLBACK_TAG]
    assert requested_tags(tag="  ", tags=[], status="unknown") == [DEFAULT_CALLBACK_TAG]


def test_requested_tags_combines_explicit_and_status_tags():
    assert requested_tags(tags="shipped, vip", status="completed") == ["shipped", "vip", "ecomdrop-completed"]
    assert requested_tags(tag="confirmed", tags=["ignored"], status="success") == ["confirmed", "ecomdrop-processed"]
    assert requested_tags(tag="ecomdrop-error", status="failed") == ["ecomdrop-error"]


def test_merge_tag_lists_is_idempotent_and_keeps_existing_tags_first():
    existing = ["vip", "wholesale"]
    additions = ["ecomdrop-processed", "vip"]

    once = merge_tag_lists(existing, additions)
    twice = merge_tag_lists(once, additions)

    assert once == ["vip", "wholesale", "ecomdrop-processed"]
    assert twice == once
    assert set(existing) | set(additions) <= set(once)


def test_to_order_gid():
    assert to_order_gid(999) == "gid://shopify/Order/999"
    assert to_order_gid("999") == "gid://shopify/Order/999"
    assert to_order_gid("gid://shopify/Order/5") == "gid://shopify/Order/5"
    assert to_order_gid("#1014") is None
    assert to_order_gid(None) is None


def test_resolve_order_gid_prefers_global_id_without_lookup():
    client = FakeShopify()

    result = asyncio.run(
        resolve_order_gid(
            client,
            shop_domain="x.myshopify.com",
            access_token="token",
            order_id="gid://shopify/Order/1",
            order_name="#1014",
        )
    )

    assert result == "gid://shopify/Order/1"
    assert client.lookups == []


def test_resolve_order_gid_looks_up_by_name():
    client = FakeShopify(order_gid="gid://shopify/Order/999")

    result = asyncio.run(
        resolve_order_gid(client, shop_domain="x.myshopify.com", access_token="token", order_name="#1014")
    )

    assert result == "gid://shopify/Order/999"
    assert client.lookups == ["#1014"]


def test_resolve_order_gid_requires_name_for_numeric_id():
    with pytest.raises(ValueError, match="orderName is required"):
        asyncio.run(
            resolve_order_gid(FakeShopify(), shop_domain="x.myshopify.com", access_token="token", order_id="999")
        )


def test_merge_order_tags_preserves_existing_tags():
    client = FakeShopify(existing_tags=["vip"])

    merged = asyncio.run(
        merge_order_tags(
            client,
            shop_domain="x.myshopify.com",
            access_token="token",
            order_gid="gid://shopify/Order/999",
            tags=["ecomdrop-processed"],
        )
    )

    assert merged == ["vip", "ecomdrop-processed"]
    assert client.writes == [["vip", "ecomdrop-processed"]]


def test_merge_order_tags_writes_blind_when_read_is_denied(monkeypatch):
    monkeypatch.setattr(settings, "ECOMDROP_BLIND_TAG_WRITE_ON_READ_DENIED", True)
    client = FakeShopify(existing_tags=["vip"], read_error=ShopifyPermissionError())

    merged = asyncio.run(
        merge_order_tags(
            client,
            shop_domain="x.myshopify.com",
            access_token="token",
            order_gid="gid://shopify/Order/999",
            tags=["ecomdrop-processed"],
        )
    )

    assert merged == ["ecomdrop-processed"]
    assert client.writes == [["ecomdrop-processed"]]


def test_merge_order_tags_raises_when_blind_write_disabled(monkeypatch):
    monkeypatch.setattr(settings, "ECOMDROP_BLIND_TAG_WRITE_ON_READ_DENIED", False)
    client = FakeShopify(read_error=ShopifyPermissionError())

    with pytest.raises(ShopifyPermissionError):
        asyncio.run(
            merge_order_tags(
                client,
                shop_domain="x.myshopify.com",
                access_token="token",
                order_gid="gid://shopify/Order/999",
                tags=["ecomdrop-processed"],
            )
        )

    assert client.writes == []
