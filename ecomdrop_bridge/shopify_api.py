from __future__ import annotations

from typing import Any

import httpx

from ecomdrop_bridge.config import settings
from ecomdrop_bridge.normalizer import parse_tags

PENDING_APPROVAL_MESSAGE = "App requires approval for protected customer data. Will work after publication."


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShopifyPermissionError(ShopifyApiError):
    """Shopify refused access to protected customer data (app not yet approved)."""

    def __init__(self, *, message: str = PENDING_APPROVAL_MESSAGE) -> None:
        super().__init__(message=message, status_code=403)


class OrderNotFoundError(ShopifyApiError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=404)


def is_protected_data_error(errors: list[Any]) -> bool:
    for error in errors:
        if not isinstance(error, dict):
            continue
        message = error.get("message")
        if isinstance(message, str) and "protected" in message.lower():
            return True
        extensions = error.get("extensions") or {}
        if isinstance(extensions, dict) and extensions.get("code") == "ACCESS_DENIED":
            return True
    return False


def _first_error_message(errors: list[Any]) -> str:
    for error in errors:
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return "Unknown error"


class ShopifyApiClient:
    def __init__(self) -> None:
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "client_secret": settings.SHOPIFY_APP_API_SECRET,
            "code": code,
        }
        response = await self._post_json(url=url, payload=payload)
        access_token = response.get("access_token")
        scopes = response.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scopes, str):
            raise ShopifyApiError(message="OAuth token exchange response is missing scope")
        return access_token, scopes

    async def register_webhook(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        query = """
        mutation webhookSubscriptionCreate(
            $topic: WebhookSubscriptionTopic!
            $webhookSubscription: WebhookSubscriptionInput!
        ) {
            webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
                webhookSubscription {
                    id
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        payload = {
            "query": query,
            "variables": {
                "topic": topic,
                "webhookSubscription": {
                    "callbackUrl": callback_url,
                    "format": "JSON",
                },
            },
        }
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        create_data = response.get("webhookSubscriptionCreate") or {}
        user_errors = create_data.get("userErrors") or []
        if user_errors:
            if self._has_duplicate_webhook_address_error(user_errors):
                existing_id = await self._find_existing_http_webhook_id(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    topic=topic,
                    callback_url=callback_url,
                )
                if existing_id:
                    return existing_id
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise ShopifyApiError(message=f"Webhook registration failed for {topic}: {messages}")
        webhook_id = (create_data.get("webhookSubscription") or {}).get("id")
        if not isinstance(webhook_id, str) or not webhook_id:
            raise ShopifyApiError(message=f"Webhook registration for {topic} returned no id")
        return webhook_id

    @staticmethod
    def _has_duplicate_webhook_address_error(user_errors: list[dict[str, Any]]) -> bool:
        return any(
            isinstance(error.get("message"), str) and "already been taken" in error["message"].lower()
            for error in user_errors
        )

    async def _find_existing_http_webhook_id(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        query = """
        query webhookSubscriptionsByTopic($topics: [WebhookSubscriptionTopic!]) {
            webhookSubscriptions(first: 50, topics: $topics) {
                edges {
                    node {
                        id
                        endpoint {
                            __typename
                            ... on WebhookHttpEndpoint {
                                callbackUrl
                            }
                        }
                    }
                }
            }
        }
        """
        payload = {"query": query, "variables": {"topics": [topic]}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        target_url = callback_url.rstrip("/")
        for edge in (response.get("webhookSubscriptions") or {}).get("edges") or []:
            node = edge.get("node") or {}
            endpoint = node.get("endpoint") or {}
            if endpoint.get("__typename") != "WebhookHttpEndpoint":
                continue
            endpoint_callback = endpoint.get("callbackUrl")
            if isinstance(endpoint_callback, str) and endpoint_callback.rstrip("/") == target_url:
                webhook_id = node.get("id")
                if isinstance(webhook_id, str) and webhook_id:
                    return webhook_id
        return None

    async def find_order_id_by_name(
        self,
        *,
        shop_domain: str,
        access_token: str,
        order_name: str,
    ) -> str:
        query = """
        query orderByName($query: String!) {
            orders(first: 1, query: $query) {
                edges {
                    node {
                        id
                        name
                    }
                }
            }
        }
        """
        escaped = order_name.replace("\\", "\\\\").replace('"', '\\"')
        payload = {"query": query, "variables": {"query": f'name:"{escaped}"'}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        edges = (response.get("orders") or {}).get("edges") or []
        for edge in edges:
            order_id = (edge.get("node") or {}).get("id")
            if isinstance(order_id, str) and order_id:
                return order_id
        raise OrderNotFoundError(message=f"Order {order_name} not found in shop {shop_domain}")

    async def get_order_tags(
        self,
        *,
        shop_domain: str,
        access_token: str,
        order_gid: str,
    ) -> list[str]:
        query = """
        query orderTags($id: ID!) {
            order(id: $id) {
                id
                tags
            }
        }
        """
        payload = {"query": query, "variables": {"id": order_gid}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        order = response.get("order")
        if not isinstance(order, dict):
            raise OrderNotFoundError(message=f"Order not found for GID: {order_gid}")
        return parse_tags(order.get("tags"))

    async def update_order_tags(
        self,
        *,
        shop_domain: str,
        access_token: str,
        order_gid: str,
        tags: list[str],
    ) -> list[str]:
        query = """
        mutation orderUpdateTags($input: OrderInput!) {
            orderUpdate(input: $input) {
                order {
                    id
                    tags
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        payload = {"query": query, "variables": {"input": {"id": order_gid, "tags": tags}}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        update_data = response.get("orderUpdate") or {}
        user_errors = update_data.get("userErrors") or []
        if user_errors:
            if is_protected_data_error(user_errors):
                raise ShopifyPermissionError()
            raise ShopifyApiError(
                message=f"Failed to update tags: {_first_error_message(user_errors)}",
                status_code=422,
            )
        order = update_data.get("order")
        if not isinstance(order, dict):
            raise OrderNotFoundError(message=f"Order not found for GID: {order_gid}")
        return parse_tags(order.get("tags"))

    async def _admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        url = f"https://{shop_domain}/admin/api/{settings.SHOPIFY_ADMIN_API_VERSION}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        response = await self._post_json(url=url, payload=payload, headers=headers)
        errors = response.get("errors")
        if errors:
            if isinstance(errors, list) and is_protected_data_error(errors):
                raise ShopifyPermissionError()
            detail = _first_error_message(errors) if isinstance(errors, list) else str(errors)
            raise ShopifyApiError(message=f"Admin GraphQL errors: {detail}")
        data = response.get("data")
        if not isinstance(data, dict):
            raise ShopifyApiError(message="Admin GraphQL response is missing data")
        return data

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ShopifyApiError(message=f"Timed out calling Shopify: {exc}", status_code=504) from exc
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code}): {response.text}",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body
