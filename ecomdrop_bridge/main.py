from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from ecomdrop_bridge.callback import CallbackError, process_callback
from ecomdrop_bridge.config import settings
from ecomdrop_bridge.db import get_session, init_db
from ecomdrop_bridge.ecomdrop_api import EcomdropApiClient, EcomdropApiError
from ecomdrop_bridge.models import AIConfiguration, OAuthState, ShopConfiguration, ShopSession, offline_session_id
from ecomdrop_bridge.normalizer import EventType
from ecomdrop_bridge.relay import (
    build_event_document,
    get_configuration,
    purge_shop,
    relay_event,
)
from ecomdrop_bridge.schemas import (
    AIConfigurationResponse,
    ConfigurationOverviewResponse,
    ConfigurationResponse,
    EcomdropFlow,
    FlowsSyncResponse,
    SaveDropiIntegrationRequest,
    TestWebhookResponse,
    UpdateAIConfigurationRequest,
    UpdateApiKeyRequest,
    UpdateFlowsRequest,
)
from ecomdrop_bridge.security import (
    ShopifyWebhook,
    authenticate_webhook,
    mask_secret,
    normalize_shop_domain,
    require_internal_api_token,
    verify_oauth_hmac,
)
from ecomdrop_bridge.shopify_api import ShopifyApiClient, ShopifyApiError

logger = logging.getLogger(__name__)

CALLBACK_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

# Topic, route path.
REQUIRED_WEBHOOKS: tuple[tuple[str, str], ...] = (
    ("APP_UNINSTALLED", "/webhooks/app/uninstalled"),
    ("ORDERS_CREATE", "/webhooks/orders/create"),
    ("DRAFT_ORDERS_CREATE", "/webhooks/draft_orders/create"),
)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(
    title="Ecomdrop Shopify Bridge",
    default_response_class=ORJSONResponse,
    lifespan=_app_lifespan,
)
shopify_api = ShopifyApiClient()
ecomdrop_api = EcomdropApiClient()


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


def _build_shopify_oauth_url(*, shop_domain: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "scope": settings.admin_scopes_csv,
            "redirect_uri": f"{settings.app_base_url}/auth/callback",
            "state": state,
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


async def _register_required_webhooks(*, shop_domain: str, admin_access_token: str) -> None:
    for topic, path in REQUIRED_WEBHOOKS:
        await shopify_api.register_webhook(
            shop_domain=shop_domain,
            access_token=admin_access_token,
            topic=topic,
            callback_url=f"{settings.app_base_url}{path}",
        )


@app.get("/auth/install")
def auth_install(shop: str, session: Session = Depends(get_session)):
    shop_domain = normalize_shop_domain(shop)
    state = uuid4().hex
    session.add(OAuthState(state=state, shop_domain=shop_domain))
    session.commit()

    return RedirectResponse(url=_build_shopify_oauth_url(shop_domain=shop_domain, state=state), status_code=302)


@app.get("/auth/callback")
async def auth_callback(request: Request, session: Session = Depends(get_session)):
    query_items = list(request.query_params.multi_items())
    if not verify_oauth_hmac(query_items):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth HMAC")

    shop = request.query_params.get("shop")
    code = request.query_params.get("code")
    state_value = request.query_params.get("state")
    if not shop or not code or not state_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth callback params: shop, code, state",
        )

    shop_domain = normalize_shop_domain(shop)
    oauth_state = session.get(OAuthState, state_value)
    if not oauth_state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    if oauth_state.shop_domain != shop_domain:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OAuth state does not match the shop domain",
        )

    try:
        admin_access_token, scopes_csv = await shopify_api.exchange_code_for_access_token(
            shop_domain=shop_domain,
            code=code,
        )

        shop_session = session.get(ShopSession, offline_session_id(shop_domain))
        if shop_session is None:
            shop_session = ShopSession(
                id=offline_session_id(shop_domain),
                shop=shop_domain,
                access_token=admin_access_token,
                scope=scopes_csv,
            )
            session.add(shop_session)
        else:
            shop_session.access_token = admin_access_token
            shop_session.scope = scopes_csv
            shop_session.updated_at = datetime.now(timezone.utc)

        await _register_required_webhooks(
            shop_domain=shop_domain,
            admin_access_token=admin_access_token,
        )
        session.delete(oauth_state)
        session.commit()

    except ShopifyApiError as exc:
        session.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    logger.info("auth.installed", extra={"shop": shop_domain, "scopes": scopes_csv})
    return {
        "ok": True,
        "shop": shop_domain,
        "scopes": [scope.strip() for scope in scopes_csv.split(",") if scope.strip()],
        "next": "Set the Ecomdrop API key via PUT /admin/configuration/{shop}/api-key.",
    }


async def _relay_webhook(webhook: ShopifyWebhook, event_type: EventType, session: Session) -> dict[str, Any]:
    try:
        outcome = await relay_event(
            session,
            shop=webhook.shop,
            payload=webhook.payload,
            event_type=event_type,
            event_id=webhook.event_id,
            ecomdrop=ecomdrop_api,
            shopify=shopify_api,
        )
    except Exception:
        # Acknowledge every delivery; Shopify retries anything else.
        session.rollback()
        logger.exception(
            "webhook.relay_failed",
            extra={"shop": webhook.shop, "topic": webhook.topic, "event_id": webhook.event_id},
        )
        return {"received": True, "status": "error"}

    response: dict[str, Any] = {"received": True, "status": outcome.status}
    if outcome.reason:
        response["reason"] = outcome.reason
    return response


@app.post("/webhooks/orders/create")
async def orders_create_webhook(request: Request, session: Session = Depends(get_session)):
    webhook = await authenticate_webhook(request)
    return await _relay_webhook(webhook, EventType.ORDER_CREATED, session)


@app.post("/webhooks/draft_orders/create")
async def draft_orders_create_webhook(request: Request, session: Session = Depends(get_session)):
    webhook = await authenticate_webhook(request)
    return await _relay_webhook(webhook, EventType.DRAFT_ORDER_CREATED, session)


@app.post("/webhooks/app/uninstalled")
async def app_uninstalled_webhook(request: Request):
    webhook = await authenticate_webhook(request)
    try:
        purged = await purge_shop(webhook.shop)
    except Exception:
        logger.exception("uninstall.purge_crashed", extra={"shop": webhook.shop})
        return {"received": True}
    return {"received": True, "purged": purged}


def _callback_error(status_code: int, message: str) -> ORJSONResponse:
    return ORJSONResponse({"success": False, "error": message}, status_code=status_code)


@app.api_route("/api/ecomdrop/callback", methods=CALLBACK_METHODS)
async def ecomdrop_callback(request: Request, session: Session = Depends(get_session)):
    if request.method != "POST":
        return _callback_error(status.HTTP_405_METHOD_NOT_ALLOWED, "Method not allowed")

    try:
        body = await request.json()
    except ValueError:
        return _callback_error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")
    if not isinstance(body, dict):
        return _callback_error(status.HTTP_400_BAD_REQUEST, "Callback payload must be a JSON object")

    try:
        result = await process_callback(session, body, shopify=shopify_api)
    except CallbackError as exc:
        logger.warning("callback.rejected", extra={"status_code": exc.status_code, "error": exc.message})
        return _callback_error(exc.status_code, exc.message)
    except Exception as exc:
        session.rollback()
        logger.exception("callback.failed")
        return _callback_error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or "Unknown error occurred")

    logger.info("callback.tagged", extra={"order_gid": result["orderId"], "tags": result["tags"]})
    return result


def _serialize_configuration(configuration: ShopConfiguration) -> ConfigurationResponse:
    return ConfigurationResponse(
        shop=configuration.shop,
        hasEcomdropApiKey=bool(configuration.ecomdrop_api_key),
        nuevoPedidoFlowId=configuration.nuevo_pedido_flow_id,
        carritoAbandonadoFlowId=configuration.carrito_abandonado_flow_id,
        dropiStoreName=configuration.dropi_store_name,
        dropiCountry=configuration.dropi_country,
        hasDropiToken=bool(configuration.dropi_token),
        updatedAt=configuration.updated_at,
    )


def _serialize_ai_configuration(ai_configuration: AIConfiguration) -> AIConfigurationResponse:
    return AIConfigurationResponse(
        shop=ai_configuration.shop,
        agentName=ai_configuration.agent_name,
        companyName=ai_configuration.company_name,
        companyDescription=ai_configuration.company_description,
        companyPolicies=ai_configuration.company_policies,
        paymentMethods=ai_configuration.payment_methods,
        faq=ai_configuration.faq,
        postSaleFaq=ai_configuration.post_sale_faq,
        rules=ai_configuration.rules,
        notifications=ai_configuration.notifications,
        updatedAt=ai_configuration.updated_at,
    )


def _get_or_create_configuration(session: Session, shop: str) -> ShopConfiguration:
    configuration = get_configuration(session, shop)
    if configuration is None:
        configuration = ShopConfiguration(shop=shop)
        session.add(configuration)
    return configuration


def _save(session: Session, instance: Any) -> None:
    session.add(instance)
    session.commit()
    session.refresh(instance)


@app.get(
    "/admin/configuration/{shop_domain}",
    response_model=ConfigurationOverviewResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def get_shop_configuration(shop_domain: str, session: Session = Depends(get_session)):
    shop = normalize_shop_domain(shop_domain)
    configuration = get_configuration(session, shop)
    ai_configuration = session.scalars(select(AIConfiguration).where(AIConfiguration.shop == shop)).first()

    flows: list[EcomdropFlow] = []
    flows_error: str | None = None
    if configuration is not None and configuration.ecomdrop_api_key:
        try:
            raw_flows = await ecomdrop_api.list_flows(api_key=configuration.ecomdrop_api_key)
        except EcomdropApiError as exc:
            logger.warning("configuration.flows_unavailable", extra={"shop": shop, "error": str(exc)})
            flows_error = str(exc)
        else:
            flows = [EcomdropFlow.model_validate(flow) for flow in raw_flows if flow.get("id") is not None]

    return ConfigurationOverviewResponse(
        configuration=_serialize_configuration(configuration) if configuration else None,
        aiConfiguration=_serialize_ai_configuration(ai_configuration) if ai_configuration else None,
        flows=flows,
        flowsError=flows_error,
    )


@app.put(
    "/admin/configuration/{shop_domain}/api-key",
    response_model=ConfigurationResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def update_api_key(
    shop_domain: str,
    payload: UpdateApiKeyRequest,
    session: Session = Depends(get_session),
):
    shop = normalize_shop_domain(shop_domain)
    holder = session.scalars(
        select(ShopConfiguration).where(
            ShopConfiguration.ecomdrop_api_key == payload.apiKey,
            ShopConfiguration.shop != shop,
        )
    ).first()
    if holder is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This Ecomdrop API key is already connected to another shop",
        )

    configuration = _get_or_create_configuration(session, shop)
    previous_key = configuration.ecomdrop_api_key
    configuration.ecomdrop_api_key = payload.apiKey
    configuration.updated_at = datetime.now(timezone.utc)
    _save(session, configuration)

    if previous_key and previous_key != payload.apiKey:
        ecomdrop_api.clear_flows_cache(previous_key)
    logger.info("configuration.api_key_saved", extra={"shop": shop, "api_key": mask_secret(payload.apiKey)})
    return _serialize_configuration(configuration)


@app.put(
    "/admin/configuration/{shop_domain}/flows",
    response_model=ConfigurationResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def update_flows(
    shop_domain: str,
    payload: UpdateFlowsRequest,
    session: Session = Depends(get_session),
):
    shop = normalize_shop_domain(shop_domain)
    configuration = _get_or_create_configuration(session, shop)
    configuration.nuevo_pedido_flow_id = payload.nuevoPedidoFlowId
    configuration.carrito_abandonado_flow_id = payload.carritoAbandonadoFlowId
    configuration.updated_at = datetime.now(timezone.utc)
    _save(session, configuration)
    logger.info(
        "configuration.flows_saved",
        extra={
            "shop": shop,
            "nuevo_pedido_flow_id": configuration.nuevo_pedido_flow_id,
            "carrito_abandonado_flow_id": configuration.carrito_abandonado_flow_id,
        },
    )
    return _serialize_configuration(configuration)


@app.post(
    "/admin/configuration/{shop_domain}/flows/sync",
    response_model=FlowsSyncResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def sync_flows(shop_domain: str, session: Session = Depends(get_session)):
    shop = normalize_shop_domain(shop_domain)
    configuration = get_configuration(session, shop)
    if configuration is None or not configuration.ecomdrop_api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Ecomdrop API key is not configured for this shop",
        )
    ecomdrop_api.clear_flows_cache(configuration.ecomdrop_api_key)
    return FlowsSyncResponse(shop=shop, synced=True)


@app.put(
    "/admin/configuration/{shop_domain}/ai",
    response_model=AIConfigurationResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def update_ai_configuration(
    shop_domain: str,
    payload: UpdateAIConfigurationRequest,
    session: Session = Depends(get_session),
):
    shop = normalize_shop_domain(shop_domain)
    ai_configuration = session.scalars(select(AIConfiguration).where(AIConfiguration.shop == shop)).first()
    if ai_configuration is None:
        ai_configuration = AIConfiguration(shop=shop)

    ai_configuration.agent_name = payload.agentName
    ai_configuration.company_name = payload.companyName
    ai_configuration.company_description = payload.companyDescription
    ai_configuration.company_policies = payload.companyPolicies
    ai_configuration.payment_methods = payload.paymentMethods
    ai_configuration.faq = payload.faq
    ai_configuration.post_sale_faq = payload.postSaleFaq
    ai_configuration.rules = payload.rules
    ai_configuration.notifications = payload.notifications
    ai_configuration.updated_at = datetime.now(timezone.utc)
    _save(session, ai_configuration)
    return _serialize_ai_configuration(ai_configuration)


@app.put(
    "/admin/configuration/{shop_domain}/dropi",
    response_model=ConfigurationResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def save_dropi_integration(
    shop_domain: str,
    payload: SaveDropiIntegrationRequest,
    session: Session = Depends(get_session),
):
    shop = normalize_shop_domain(shop_domain)
    if not payload.storeName:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El nombre de la tienda es requerido")
    if not payload.country:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El país es requerido")

    configuration = get_configuration(session, shop)
    if configuration is None or not configuration.ecomdrop_api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Primero debe configurar su clave API de Ecomdrop",
        )
    if not configuration.dropi_token and not payload.dropiToken:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El token de Dropi es requerido")

    if payload.dropiToken:
        try:
            await ecomdrop_api.validate_dropi_integration(
                api_key=configuration.ecomdrop_api_key,
                country=payload.country,
                dropi_token=payload.dropiToken,
            )
        except EcomdropApiError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        configuration.dropi_token = payload.dropiToken

    configuration.dropi_store_name = payload.storeName
    configuration.dropi_country = payload.country.upper()
    configuration.updated_at = datetime.now(timezone.utc)
    _save(session, configuration)
    logger.info("configuration.dropi_saved", extra={"shop": shop, "country": configuration.dropi_country})
    return _serialize_configuration(configuration)


def _sample_order() -> dict[str, Any]:
    now = datetime.now(timezone.utc).isoformat()
    address = {
        "first_name": "Test",
        "last_name": "Customer",
        "address1": "123 Test Street",
        "city": "Test City",
        "province": "Test Province",
        "country": "United States",
        "zip": "12345",
        "phone": "+1234567890",
        "country_code": "US",
        "province_code": "TS",
    }
    return {
        "id": 1234567890,
        "name": "#TEST-1001",
        "order_number": 1001,
        "created_at": now,
        "updated_at": now,
        "total_price": "99.99",
        "subtotal_price": "89.99",
        "total_tax": "10.00",
        "total_discounts": "0.00",
        "currency": "USD",
        "financial_status": "paid",
        "fulfillment_status": "unfulfilled",
        "line_items": [
            {
                "id": 1111111111,
                "name": "Test Product - Variant",
                "title": "Test Product",
                "quantity": 2,
                "price": "49.99",
                "sku": "TEST-SKU-123",
                "variant_id": 2222222222,
                "product_id": 3333333333,
                "variant_title": "Default Title",
                "vendor": "Test Vendor",
                "requires_shipping": True,
                "taxable": True,
            }
        ],
        "customer": {
            "id": 4444444444,
            "email": "test@example.com",
            "first_name": "Test",
            "last_name": "Customer",
            "phone": "+1234567890",
            "accepts_marketing": True,
            "total_spent": "199.98",
            "orders_count": 1,
        },
        "shipping_address": address,
        "billing_address": dict(address),
        "tags": "test, demo",
        "note": "Test order from webhook endpoint",
        "note_attributes": [],
        "source_name": "web",
        "processing_method": "direct",
        "gateway": "test_gateway",
    }


@app.post("/api/test-webhook/orders", response_model=TestWebhookResponse)
async def simulate_orders_webhook(session: Session = Depends(get_session)):
    if settings.is_production:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not available in production")

    configuration = session.scalars(
        select(ShopConfiguration)
        .where(ShopConfiguration.ecomdrop_api_key.is_not(None))
        .order_by(ShopConfiguration.id)
    ).first()
    if configuration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No configuration found with API Key")
    if not configuration.nuevo_pedido_flow_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No 'Nuevo Pedido' flow configured")

    event = build_event_document(
        _sample_order(),
        EventType.ORDER_CREATED,
        shop=configuration.shop,
        configuration=configuration,
    )
    error: str | None = None
    try:
        await ecomdrop_api.trigger_flow(
            api_key=configuration.ecomdrop_api_key,
            flow_id=configuration.nuevo_pedido_flow_id,
            event=event,
        )
    except EcomdropApiError as exc:
        error = str(exc)
        logger.warning("test_webhook.dispatch_failed", extra={"shop": configuration.shop, "error": error})

    return TestWebhookResponse(
        success=error is None,
        shop=configuration.shop,
        flowId=configuration.nuevo_pedido_flow_id,
        event=event,
        error=error,
    )
