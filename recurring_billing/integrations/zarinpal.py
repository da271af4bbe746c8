from __future__ import annotations

import re
from typing import Any

import httpx

from recurring_billing.billing.errors import GatewayError
from recurring_billing.billing.models import GATEWAY_SUCCESS_CODE, DirectDebitResult, PaymentIntent
from recurring_billing.core.settings import Settings

_USER_AGENT = "RecurringBilling/1.0"
_MERCHANT_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_PLACEHOLDER_MERCHANT_IDS = (
    "YOUR_",
    "your-merchant-id",
    "REPLACE_",
    "PLACEHOLDER",
    "36e0ea98-43fa-400d-a421-f7593b1c73bc",
    "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx",
)

RESULT_MESSAGES: dict[int, str] = {
    -9: "Validation error",
    -10: "Terminal is not valid",
    -11: "Terminal is not active",
    -12: "Too many attempts",
    -15: "Payment has been suspended",
    -16: "Access level is not sufficient",
    -30: "Terminal does not allow to perform the operation",
    -31: "IP is not allowed",
    -32: "Merchant code is not correct",
    -33: "Amount should be above 100 Toman",
    -34: "Amount limit exceeded",
    -40: "Merchant access to method is not allowed",
    -41: "Additional Data related to information validation error",
    -42: "Validation error in payment request",
    -50: "Amount should be above 500 Toman",
    -51: "Amount limit exceeded",
    -52: "Card holder information is not correct",
    -53: "Redirect address is not correct",
    -54: "Request archived",
    -55: "Request time exceeded",
    100: "Operation was successful",
    101: "Operation was successful, previously verified",
}


def result_message(code: int) -> str:
    return RESULT_MESSAGES.get(code, f"Unknown error ({code})")


def validate_merchant_id(merchant_id: str | None) -> str:
    value = (merchant_id or "").strip()
    if not value:
        raise ValueError("ZarinPal merchant ID not configured. Set ZARINPAL_MERCHANT_ID.")
    if not _MERCHANT_ID_PATTERN.match(value):
        raise ValueError("Invalid ZarinPal merchant ID format. Must be a valid UUID.")
    if any(pattern in value for pattern in _PLACEHOLDER_MERCHANT_IDS):
        raise ValueError("Invalid ZarinPal merchant ID. Replace the placeholder with a real merchant ID.")
    return value


def _result_code(body: dict[str, Any]) -> tuple[int | None, dict[str, Any]]:
    data = body.get("data")
    if isinstance(data, dict) and data.get("code") is not None:
        return _safe_code(data.get("code")), data
    errors = body.get("errors")
    if isinstance(errors, dict) and errors.get("code") is not None:
        return _safe_code(errors.get("code")), errors
    return None, {}


def _safe_code(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ZarinPalClient:
    """Payment request + Payman (direct debit) checkout against the ZarinPal v4 API."""

    def __init__(
        self,
        *,
        merchant_id: str,
        base_url: str = "https://api.zarinpal.com",
        timeout_seconds: float = 10.0,
    ) -> None:
        self.merchant_id = merchant_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "ZarinPalClient":
        return cls(
            merchant_id=validate_merchant_id(settings.ZARINPAL_MERCHANT_ID),
            base_url=settings.ZARINPAL_BASE_URL,
            timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    async def request_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        callback_url: str,
        metadata: dict[str, Any],
    ) -> PaymentIntent:
        status_code, body = await self._post(
            "/pg/v4/payment/request.json",
            {
                "merchant_id": self.merchant_id,
                "amount": amount,
                "currency": currency,
                "description": description,
                "callback_url": callback_url,
                "metadata": metadata,
            },
            operation="request payment",
        )
        code, data = _result_code(body)
        if code is None:
            raise GatewayError(f"Invalid payment request response from ZarinPal (HTTP {status_code})")
        if code != GATEWAY_SUCCESS_CODE:
            raise GatewayError(f"Payment request failed: {result_message(code)} (Code: {code})")

        authority = str(data.get("authority") or "").strip()
        if not authority:
            raise GatewayError("Failed to create ZarinPal payment request: missing authority")
        return PaymentIntent(authority=authority, code=code, message=data.get("message"))

    async def execute_direct_debit(self, *, authority: str, contract_signature: str) -> DirectDebitResult:
        status_code, body = await self._post(
            "/pg/v4/payman/checkout.json",
            {
                "merchant_id": self.merchant_id,
                "authority": authority,
                "signature": contract_signature,
            },
            operation="execute direct transaction",
        )
        if status_code >= 500:
            raise GatewayError(f"ZarinPal direct transaction failed with HTTP {status_code}")

        code, data = _result_code(body)
        if code is None:
            raise GatewayError(f"Invalid direct transaction response from ZarinPal (HTTP {status_code})")

        reference_id = data.get("refrence_id", data.get("reference_id"))
        message = str(data.get("message") or "").strip() or result_message(code)
        return DirectDebitResult(
            code=code,
            reference_id=str(reference_id) if reference_id is not None else None,
            message=message,
        )

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        operation: str,
    ) -> tuple[int, dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": _USER_AGENT,
        }
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise GatewayError(f"Failed to {operation}: {type(exc).__name__}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"Failed to {operation}: invalid JSON response (HTTP {response.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise GatewayError(f"Failed to {operation}: unexpected response shape")
        return int(response.status_code), body
