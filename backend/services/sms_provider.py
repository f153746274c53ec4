"""
SMS Provider Client - SMSnotifyGh HTTP API.
send / check-status / balance over a bearer credential.

Outside production (or without SMS_API_KEY) every call short-circuits to a
deterministic local stand-in and no network request is made.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from config import (
    BULK_SEND_TIMEOUT_SECONDS,
    SEND_TIMEOUT_SECONDS,
    STATUS_TIMEOUT_SECONDS,
    Settings,
)
from models import DeliveryStatus, DeliveryStatusResult, ProviderMode, ProviderSendResult, utc_now
from services.sms_errors import ProviderError

logger = logging.getLogger(__name__)

MOCK_BALANCE = 1000.0

# Provider status string -> delivery status
STATUS_MAPPING = {
    "delivered": DeliveryStatus.DELIVERED,
    "sent": DeliveryStatus.PENDING,
    "pending": DeliveryStatus.PENDING,
    "queued": DeliveryStatus.PENDING,
    "accepted": DeliveryStatus.PENDING,
    "failed": DeliveryStatus.FAILED,
    "expired": DeliveryStatus.FAILED,
    "rejected": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.FAILED,
}


def map_provider_status(provider_status: Optional[str]) -> DeliveryStatus:
    return STATUS_MAPPING.get((provider_status or "").strip().lower(), DeliveryStatus.PENDING)


def mask_phone(phone: str) -> str:
    return f"{phone[:7]}***" if phone else ""


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class SMSProviderClient:
    """SMSnotifyGh API client."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.sms_base_url
        self.api_key = settings.sms_api_key
        self.sender_id = settings.sms_sender_id
        self.provider_name = settings.sms_provider_name
        self.transport = transport

    @property
    def mode(self) -> ProviderMode:
        return ProviderMode(self.settings.provider_mode)

    def is_live(self) -> bool:
        return self.mode == ProviderMode.LIVE

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, timeout: float, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.request(method, url, headers=self._headers(), timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"SMS provider timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"SMS provider request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"SMS provider error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("SMS provider returned a non-JSON response", status_code=response.status_code) from e
        if not isinstance(data, dict):
            raise ProviderError("SMS provider returned an unexpected payload", status_code=response.status_code)
        return data

    async def send(self, phone: str, message: str, record_id: str, bulk: bool = False) -> ProviderSendResult:
        """
        Send one message.

        Args:
            phone: canonical destination (+<digits>)
            message: rendered message text
            record_id: Notification Record id (used for the mock external id)
            bulk: use the longer bulk timeout

        Raises:
            ProviderError: network error, timeout, non-2xx or malformed response
        """
        if not self.is_live():
            logger.info(f"[MOCK] SMS to {mask_phone(phone)} ({len(message)} chars)")
            return ProviderSendResult(
                external_id=f"mock_{record_id}",
                provider_status="sent",
                mode=ProviderMode.MOCK,
            )

        timeout = BULK_SEND_TIMEOUT_SECONDS if bulk else SEND_TIMEOUT_SECONDS
        data = await self._request(
            "POST",
            "/send",
            timeout,
            json={"sender": self.sender_id, "recipient": phone, "message": message},
        )

        status = str(data.get("status", "")).lower()
        message_id = data.get("message_id")
        if status in ("error", "failed", "rejected") or not message_id:
            raise ProviderError(
                f"SMS API error: {data.get('message') or data.get('error') or 'missing message_id'}"
            )

        logger.info(f"SMS sent to {mask_phone(phone)} (ID: {message_id})")
        return ProviderSendResult(
            external_id=str(message_id),
            provider_status=status or "sent",
            mode=ProviderMode.LIVE,
            raw=data,
        )

    async def check_status(self, external_id: str) -> DeliveryStatusResult:
        if not self.is_live():
            return DeliveryStatusResult(
                status=DeliveryStatus.DELIVERED,
                delivered_at=utc_now(),
                provider_status="delivered",
                details=f"Mock status check for {external_id}",
            )

        data = await self._request("GET", f"/status/{external_id}", STATUS_TIMEOUT_SECONDS)
        provider_status = data.get("status")
        mapped = map_provider_status(provider_status)
        return DeliveryStatusResult(
            status=mapped,
            delivered_at=(_parse_timestamp(data.get("delivered_at")) or utc_now())
            if mapped == DeliveryStatus.DELIVERED else None,
            failure_reason=data.get("failure_reason") if mapped == DeliveryStatus.FAILED else None,
            provider_status=provider_status,
            details=data.get("details") or "Status check completed",
        )

    async def get_balance(self) -> Dict[str, Any]:
        if not self.is_live():
            return {"balance": MOCK_BALANCE, "currency": self.settings.currency, "mode": ProviderMode.MOCK.value}

        data = await self._request("GET", "/balance", STATUS_TIMEOUT_SECONDS)
        try:
            balance = float(data.get("balance"))
        except (TypeError, ValueError) as e:
            raise ProviderError("SMS provider returned an invalid balance") from e
        return {
            "balance": balance,
            "currency": data.get("currency") or self.settings.currency,
            "mode": ProviderMode.LIVE.value,
        }
