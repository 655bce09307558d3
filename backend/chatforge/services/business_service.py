"""Client for the business-profile service's internal chat-config endpoint."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

from chatforge.config import settings
from chatforge.errors import BusinessNotAvailable, BusinessServiceUnavailable

logger = logging.getLogger(__name__)


class BusinessChatConfig(BaseModel):
    """Subset of the business profile the chat flow needs."""

    namespace: str
    business_name: str
    business_description: Optional[str] = None
    chatbot_tone: str = "Friendly"
    chatbot_greeting: Optional[str] = None
    chatbot_restrictions: Optional[str] = None
    vector_status: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class BusinessService:
    """Answers "may this tenant chat right now?" and returns its chat config.

    A refusal from the business service (frozen, inactive, unknown business)
    raises ``BusinessNotAvailable``; a transport failure or a 5xx raises
    ``BusinessServiceUnavailable`` so callers can tell the two apart.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        service_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base = (base_url or settings.business_service_url).rstrip("/")
        self._token = service_token or settings.internal_service_secret
        self._timeout = timeout if timeout is not None else settings.business_service_timeout_seconds
        self._transport = transport

    async def get_chat_config(self, tenant_id: str) -> BusinessChatConfig:
        url = f"{self._base}/api/v1/internal/businesses/{tenant_id}/chat-config"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"x-service-token": self._token})
        except httpx.HTTPError as exc:
            logger.error("Business service call failed", extra={"tenant": tenant_id, "error": str(exc)})
            raise BusinessServiceUnavailable("Unable to verify business access") from exc

        if response.status_code >= 500:
            logger.error(
                "Business service error",
                extra={"tenant": tenant_id, "status": response.status_code},
            )
            raise BusinessServiceUnavailable("Unable to verify business access")

        body = self._json(response)
        if response.status_code >= 400 or not body.get("success"):
            reason = (body.get("error") or {}).get("message") if isinstance(body.get("error"), dict) else None
            logger.warning(
                "Business access denied",
                extra={"tenant": tenant_id, "status": response.status_code, "reason": reason},
            )
            raise BusinessNotAvailable(reason or "Business not available")

        data = body.get("data") or {}
        if not data.get("allowed", True):
            raise BusinessNotAvailable("Business not available")
        try:
            config = BusinessChatConfig.model_validate(data.get("config") or {})
        except ValidationError as exc:
            logger.error("Malformed chat config", extra={"tenant": tenant_id, "error": str(exc)})
            raise BusinessServiceUnavailable("Business service returned an invalid chat config") from exc

        logger.info("Business access granted", extra={"tenant": tenant_id, "business": config.business_name})
        return config

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
