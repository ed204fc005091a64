from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx

from ordercore.core import metrics
from ordercore.core.config import settings
from ordercore.core.errors import InternalFailure, Unauthorized, UpstreamFailure, ValidationFailed

logger = logging.getLogger(__name__)

_token_cache: dict[str, dict[str, object]] = {}
_PAYPAL_ID_RE = re.compile(r"^[A-Z0-9-]{8,64}$")


def _paypal_env() -> str:
    env = (settings.paypal_env or "sandbox").strip().lower()
    return "live" if env == "live" else "sandbox"


def _effective_client_id() -> str:
    if _paypal_env() == "live":
        return (settings.paypal_client_id_live or settings.paypal_client_id or "").strip()
    return (settings.paypal_client_id_sandbox or settings.paypal_client_id or "").strip()


def _effective_client_secret() -> str:
    if _paypal_env() == "live":
        return (settings.paypal_client_secret_live or settings.paypal_client_secret or "").strip()
    return (settings.paypal_client_secret_sandbox or settings.paypal_client_secret or "").strip()


def _effective_webhook_id() -> str:
    if _paypal_env() == "live":
        return (settings.paypal_webhook_id_live or settings.paypal_webhook_id or "").strip()
    return (settings.paypal_webhook_id_sandbox or settings.paypal_webhook_id or "").strip()


def is_paypal_configured() -> bool:
    return bool(_effective_client_id() and _effective_client_secret())


def is_paypal_webhook_configured() -> bool:
    return bool(_effective_webhook_id())


def _base_url() -> str:
    return "https://api-m.paypal.com" if _paypal_env() == "live" else "https://api-m.sandbox.paypal.com"


def _timeout() -> float:
    return float(settings.paypal_timeout_seconds)


def _cache_bucket() -> dict[str, object]:
    return _token_cache.setdefault(_paypal_env(), {"access_token": None, "expires_at": None})


def _cached_access_token(now: datetime) -> str | None:
    bucket = _cache_bucket()
    cached_token = bucket.get("access_token")
    cached_expires_at = bucket.get("expires_at")
    if isinstance(cached_token, str) and isinstance(cached_expires_at, datetime):
        # Refresh a bit early to avoid edge-of-expiry failures.
        if cached_expires_at - now > timedelta(seconds=30):
            return cached_token
    return None


def _cache_access_token(*, access_token: str, expires_in: Any, now: datetime) -> None:
    expiry_seconds = int(expires_in) if isinstance(expires_in, (int, float)) else 300
    bucket = _cache_bucket()
    bucket["access_token"] = access_token
    bucket["expires_at"] = now + timedelta(seconds=expiry_seconds)


async def _get_access_token() -> str:
    if not is_paypal_configured():
        raise InternalFailure("PayPal not configured")

    now = datetime.now(timezone.utc)
    cached_token = _cached_access_token(now)
    if cached_token:
        return cached_token

    try:
        async with httpx.AsyncClient(base_url=_base_url(), timeout=_timeout()) as client:
            resp = await client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(_effective_client_id(), _effective_client_secret()),
                headers={"Accept": "application/json", "Accept-Language": "en_US"},
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as exc:
        raise UpstreamFailure("PayPal token request failed") from exc

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise UpstreamFailure("PayPal token missing")
    _cache_access_token(access_token=access_token, expires_in=data.get("expires_in"), now=now)
    return access_token


def _sanitize_paypal_id(paypal_id: str) -> str:
    """Capture ids go into a URL path segment: letters, digits and hyphens only."""
    value = (paypal_id or "").strip().upper()
    if not _PAYPAL_ID_RE.fullmatch(value):
        raise ValidationFailed("Invalid PayPal capture id")
    return value


def _refund_path(capture_id: str) -> str:
    return f"/v2/payments/captures/{quote(_sanitize_paypal_id(capture_id), safe='')}/refund"


def _format_amount(value: Decimal) -> str:
    return f"{Decimal(value).quantize(Decimal('0.01'))}"


async def refund_capture(*, capture_id: str, amount: Decimal, currency: str, request_id: str) -> str:
    """Refund a captured PayPal payment and return the PayPal refund id.

    ``request_id`` is sent as ``PayPal-Request-Id`` so a retried call is
    answered with the original refund.
    """
    path = _refund_path(capture_id)
    token = await _get_access_token()
    payload = {"amount": {"value": _format_amount(amount), "currency_code": currency.upper()}}
    try:
        async with httpx.AsyncClient(base_url=_base_url(), timeout=_timeout()) as client:
            resp = await client.post(
                path,
                json=payload,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "PayPal-Request-Id": request_id,
                },
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as exc:
        metrics.record_payment_failure()
        logger.error(
            "paypal_refund_failed",
            extra={"provider": "paypal", "capture_id": capture_id, "refund_request_id": request_id, "error": str(exc)},
        )
        raise UpstreamFailure("PayPal refund failed") from exc

    refund_id = data.get("id")
    return refund_id if isinstance(refund_id, str) else ""


def _get_header(headers: dict[str, str], name: str) -> str | None:
    for key in (name, name.lower()):
        value = headers.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _required_header(headers: dict[str, str], name: str) -> str:
    value = _get_header(headers, name)
    if value is None:
        metrics.record_webhook_rejected()
        raise Unauthorized("Missing PayPal signature headers")
    return value


def _webhook_verification_payload(*, headers: dict[str, str], event: dict[str, Any], webhook_id: str) -> dict[str, Any]:
    return {
        "auth_algo": _required_header(headers, "paypal-auth-algo"),
        "cert_url": _required_header(headers, "paypal-cert-url"),
        "transmission_id": _required_header(headers, "paypal-transmission-id"),
        "transmission_sig": _required_header(headers, "paypal-transmission-sig"),
        "transmission_time": _required_header(headers, "paypal-transmission-time"),
        "webhook_id": webhook_id,
        "webhook_event": event,
    }


async def verify_webhook_signature(*, headers: dict[str, str], event: dict[str, Any]) -> bool:
    if not is_paypal_webhook_configured():
        logger.error("paypal_webhook_id_missing")
        raise InternalFailure("PayPal webhook id not configured")

    payload = _webhook_verification_payload(headers=headers, event=event, webhook_id=_effective_webhook_id())
    token = await _get_access_token()
    try:
        async with httpx.AsyncClient(base_url=_base_url(), timeout=_timeout()) as client:
            resp = await client.post(
                "/v1/notifications/verify-webhook-signature",
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as exc:
        raise UpstreamFailure("PayPal signature verification failed") from exc

    return str(data.get("verification_status") or "").strip().upper() == "SUCCESS"


async def verify_webhook(payload: bytes, headers: dict[str, str]) -> dict[str, Any]:
    """Parse the body, then reject it with 401 unless PayPal vouches for the signature."""
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationFailed("Invalid payload") from exc
    if not isinstance(event, dict):
        raise ValidationFailed("Invalid payload")
    if not await verify_webhook_signature(headers=headers, event=event):
        metrics.record_webhook_rejected()
        logger.warning("paypal_webhook_rejected", extra={"provider": "paypal", "event_id": str(event.get("id") or "")})
        raise Unauthorized("Invalid PayPal signature")
    return event
