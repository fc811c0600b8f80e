from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]


class UpdateApiKeyRequest(BaseModel):
    apiKey: str = Field(min_length=1)

    @field_validator("apiKey")
    @classmethod
    def strip_api_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("apiKey cannot be blank")
        return value


class UpdateFlowsRequest(BaseModel):
    nuevoPedidoFlowId: OptionalText = None
    carritoAbandonadoFlowId: OptionalText = None


class UpdateAIConfigurationRequest(BaseModel):
    agentName: OptionalText = None
    companyName: OptionalText = None
    companyDescription: OptionalText = None
    companyPolicies: OptionalText = None
    paymentMethods: OptionalText = None
    faq: OptionalText = None
    postSaleFaq: OptionalText = None
    rules: OptionalText = None
    notifications: OptionalText = None


class SaveDropiIntegrationRequest(BaseModel):
    storeName: str = ""
    country: str = ""
    dropiToken: str = ""

    @field_validator("storeName", "country", "dropiToken", mode="before")
    @classmethod
    def strip_values(cls, value: Any) -> str:
        return str(value or "").strip()


class EcomdropFlow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str | None = None
    description: str | None = None
    status: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)


class ConfigurationResponse(BaseModel):
    shop: str
    hasEcomdropApiKey: bool
    nuevoPedidoFlowId: str | None
    carritoAbandonadoFlowId: str | None
    dropiStoreName: str | None
    dropiCountry: str | None
    hasDropiToken: bool
    updatedAt: datetime


class AIConfigurationResponse(BaseModel):
    shop: str
    agentName: str | None
    companyName: str | None
    companyDescription: str | None
    companyPolicies: str | None
    paymentMethods: str | None
    faq: str | None
    postSaleFaq: str | None
    rules: str | None
    notifications: str | None
    updatedAt: datetime


class ConfigurationOverviewResponse(BaseModel):
    configuration: ConfigurationResponse | None
    aiConfiguration: AIConfigurationResponse | None
    flows: list[EcomdropFlow] = Field(default_factory=list)
    flowsError: str | None = None


class FlowsSyncResponse(BaseModel):
    shop: str
    synced: bool


class TestWebhookResponse(BaseModel):
    success: bool
    shop: str
    flowId: str
    event: dict[str, Any]
    error: str | None = None
