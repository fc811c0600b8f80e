"""Canonical event documents for Shopify order and draft-order webhooks.

Shopify delivers the same resource in two shapes: the legacy REST payload
(snake_case keys, flat money strings, ``line_items`` lists) and the GraphQL
payload (camelCase keys, ``{amount, currencyCode}`` money objects and
``{edges: [{node: ...}]}`` connections). Every output field is described by a
``FieldRule`` listing its input paths in priority order, GraphQL shape first.
Supporting another shape means adding paths to the tables below.

Money amounts stay decimal strings end to end. Order and draft order ids are
always emitted as global ids, so a REST numeric id becomes ``gid://shopify/Order/N``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple

Path = tuple[str, ...]


class EventType(str, Enum):
    ORDER_CREATED = "order_created"
    DRAFT_ORDER_CREATED = "draft_order_created"


class FieldRule(NamedTuple):
    output: str
    paths: tuple[Path, ...]
    coerce: Callable[[Any], Any] | None = None


def _money(value: Any) -> str | None:
    if isinstance(value, dict):
        return _money(value.get("amount"))
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    return None


def _currency(value: Any) -> str | None:
    if isinstance(value, dict):
        return _currency(value.get("currencyCode"))
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _global_id(resource: str) -> Callable[[Any], str | None]:
    """Coerce a REST numeric id or a GraphQL global id to the global id form."""

    def coerce(value: Any) -> str | None:
        if isinstance(value, str) and value.startswith("gid://"):
            return value
        if isinstance(value, bool):
            return None
        if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
            return f"gid://shopify/{resource}/{str(value).strip()}"
        return None

    return coerce


def _text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        return str(value).strip() or None
    return None


def parse_tags(value: Any) -> list[str]:
    """Split a tag list or a comma-joined tag string into trimmed tags."""
    if isinstance(value, str):
        raw = value.split(",")
    elif isinstance(value, (list, tuple)):
        raw = [item for item in value if isinstance(item, (str, int, float))]
    else:
        return []
    tags: list[str] = []
    for item in raw:
        tag = str(item).strip()
        if tag:
            tags.append(tag)
    return tags


def _nodes(value: Any) -> list[dict[str, Any]] | None:
    if isinstance(value, dict):
        if isinstance(value.get("edges"), list):
            value = [edge.get("node") for edge in value["edges"] if isinstance(edge, dict)]
        elif isinstance(value.get("nodes"), list):
            value = value["nodes"]
        else:
            return None
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, dict)]


def _attributes(value: Any) -> list[dict[str, Any]] | None:
    if not isinstance(value, list):
        return None
    attributes: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        name = item.get("name", item.get("key"))
        if name is None:
            continue
        attributes.append({"name": str(name), "value": item.get("value")})
    return attributes


def _dig(source: Any, path: Path) -> Any:
    current = source
    for segment in path:
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def _first(source: Any, paths: Sequence[Path], coerce: Callable[[Any], Any] | None = None) -> Any:
    for path in paths:
        value = _dig(source, path)
        if value is not None and coerce is not None:
            value = coerce(value)
        if value is not None:
            return value
    return None


def _apply(source: dict[str, Any], rules: Sequence[FieldRule]) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for rule in rules:
        value = _first(source, rule.paths, rule.coerce)
        if value is not None:
            document[rule.output] = value
    return document


def _record(source: dict[str, Any], paths: Sequence[Path], rules: Sequence[FieldRule]) -> dict[str, Any] | None:
    record = _first(source, paths)
    if not isinstance(record, dict):
        return None
    return _apply(record, rules) or None


_LINE_ITEM_RULES: tuple[FieldRule, ...] = (
    FieldRule("id", (("id",),)),
    FieldRule("name", (("name",), ("title",))),
    FieldRule("title", (("title",), ("name",))),
    FieldRule("quantity", (("quantity",), ("currentQuantity",))),
    FieldRule(
        "price",
        (
            ("originalUnitPriceSet", "shopMoney"),
            ("originalUnitPrice",),
            ("price",),
        ),
        _money,
    ),
    FieldRule("sku", (("variant", "sku"), ("sku",))),
    FieldRule("variantId", (("variant", "id"), ("variantId",), ("variant_id",))),
    FieldRule("productId", (("product", "id"), ("productId",), ("product_id",))),
    FieldRule("variantTitle", (("variant", "title"), ("variantTitle",), ("variant_title",))),
    FieldRule("vendor", (("vendor",),)),
    FieldRule("requiresShipping", (("requiresShipping",), ("requires_shipping",))),
    FieldRule("taxable", (("taxable",),)),
)

_ORDER_LINE_ITEM_RULES: tuple[FieldRule, ...] = _LINE_ITEM_RULES + (
    FieldRule("fulfillmentStatus", (("fulfillmentStatus",), ("fulfillment_status",))),
)

_CUSTOMER_RULES: tuple[FieldRule, ...] = (
    FieldRule("id", (("id",),)),
    FieldRule("email", (("email",),)),
    FieldRule("firstName", (("firstName",), ("first_name",))),
    FieldRule("lastName", (("lastName",), ("last_name",))),
    FieldRule("phone", (("phone",),)),
    FieldRule("acceptsMarketing", (("acceptsMarketing",), ("accepts_marketing",))),
    FieldRule("totalSpent", (("amountSpent",), ("totalSpent",), ("total_spent",)), _money),
    FieldRule("ordersCount", (("numberOfOrders",), ("ordersCount",), ("orders_count",))),
)

_ADDRESS_RULES: tuple[FieldRule, ...] = (
    FieldRule("firstName", (("firstName",), ("first_name",))),
    FieldRule("lastName", (("lastName",), ("last_name",))),
    FieldRule("name", (("name",),)),
    FieldRule("company", (("company",),)),
    FieldRule("address1", (("address1",),)),
    FieldRule("address2", (("address2",),)),
    FieldRule("city", (("city",),)),
    FieldRule("province", (("province",),)),
    FieldRule("country", (("country",),)),
    FieldRule("zip", (("zip",),)),
    FieldRule("phone", (("phone",),)),
    FieldRule("countryCode", (("countryCodeV2",), ("countryCode",), ("country_code",))),
    FieldRule("provinceCode", (("provinceCode",), ("province_code",))),
)

_SHARED_RULES: tuple[FieldRule, ...] = (
    FieldRule("createdAt", (("createdAt",), ("created_at",))),
    FieldRule("updatedAt", (("updatedAt",), ("updated_at",))),
    FieldRule("totalPrice", (("totalPriceSet", "shopMoney"), ("totalPrice",), ("total_price",)), _money),
    FieldRule(
        "subtotalPrice",
        (("subtotalPriceSet", "shopMoney"), ("subtotalPrice",), ("subtotal_price",)),
        _money,
    ),
    FieldRule("totalTax", (("totalTaxSet", "shopMoney"), ("totalTax",), ("total_tax",)), _money),
    FieldRule(
        "currency",
        (("currencyCode",), ("totalPriceSet", "shopMoney"), ("presentmentCurrencyCode",), ("currency",)),
        _currency,
    ),
    FieldRule("email", (("email",),)),
    FieldRule("note", (("note",),)),
    FieldRule("noteAttributes", (("customAttributes",), ("note_attributes",)), _attributes),
)

_ORDER_RULES: tuple[FieldRule, ...] = (
    FieldRule("orderId", (("id",), ("admin_graphql_api_id",)), _global_id("Order")),
    FieldRule("orderName", (("name",), ("orderNumber",), ("order_number",)), _text),
    FieldRule("orderNumber", (("orderNumber",), ("order_number",))),
    *_SHARED_RULES,
    FieldRule(
        "totalDiscounts",
        (("totalDiscountsSet", "shopMoney"), ("totalDiscounts",), ("total_discounts",)),
        _money,
    ),
    FieldRule("financialStatus", (("displayFinancialStatus",), ("financialStatus",), ("financial_status",))),
    FieldRule(
        "fulfillmentStatus",
        (("displayFulfillmentStatus",), ("fulfillmentStatus",), ("fulfillment_status",)),
    ),
    FieldRule("sourceName", (("sourceName",), ("source_name",))),
    FieldRule("processingMethod", (("processingMethod",), ("processing_method",))),
    FieldRule("checkoutId", (("checkoutId",), ("checkout_id",))),
    FieldRule("checkoutToken", (("checkoutToken",), ("checkout_token",))),
    FieldRule("gateway", (("gateway",),)),
)

_DRAFT_ORDER_RULES: tuple[FieldRule, ...] = (
    FieldRule("draftOrderId", (("id",), ("admin_graphql_api_id",)), _global_id("DraftOrder")),
    FieldRule("draftOrderName", (("name",),)),
    *_SHARED_RULES,
    FieldRule("status", (("status",),)),
)

_ENVELOPE_KEYS: dict[EventType, tuple[str, ...]] = {
    EventType.ORDER_CREATED: ("order",),
    EventType.DRAFT_ORDER_CREATED: ("draftOrder", "draft_order"),
}

_LINE_ITEM_PATHS: tuple[Path, ...] = (("lineItems",), ("line_items",))
_CUSTOMER_PATHS: tuple[Path, ...] = (("customer",),)
_SHIPPING_PATHS: tuple[Path, ...] = (("shippingAddress",), ("shipping_address",))
_BILLING_PATHS: tuple[Path, ...] = (("billingAddress",), ("billing_address",))


def unwrap_resource(payload: Any, event_type: EventType) -> dict[str, Any]:
    """Return the order or draft order object, with or without a GraphQL envelope."""
    if not isinstance(payload, dict):
        return {}
    for key in _ENVELOPE_KEYS[event_type]:
        inner = payload.get(key)
        if isinstance(inner, dict):
            return inner
    return payload


def normalize_event(payload: Any, event_type: EventType | str, shop: str | None = None) -> dict[str, Any]:
    """Build the canonical event document for an order or draft-order payload.

    Pure and total: absent or malformed optional fields are left out of the
    result, never raised on. Line items keep their input order.
    """
    event_type = EventType(event_type)
    resource = unwrap_resource(payload, event_type)

    if event_type is EventType.ORDER_CREATED:
        document = _apply(resource, _ORDER_RULES)
        item_rules = _ORDER_LINE_ITEM_RULES
    else:
        document = _apply(resource, _DRAFT_ORDER_RULES)
        item_rules = _LINE_ITEM_RULES

    line_items = _first(resource, _LINE_ITEM_PATHS, _nodes) or []
    document["lineItems"] = [_apply(item, item_rules) for item in line_items]

    for output, paths, rules in (
        ("customer", _CUSTOMER_PATHS, _CUSTOMER_RULES),
        ("shippingAddress", _SHIPPING_PATHS, _ADDRESS_RULES),
        ("billingAddress", _BILLING_PATHS, _ADDRESS_RULES),
    ):
        record = _record(resource, paths, rules)
        if record is not None:
            document[output] = record

    document["tags"] = parse_tags(resource.get("tags"))
    if shop:
        document["shop"] = shop
    document["eventType"] = event_type.value
    return document
