from datetime import UTC, datetime
from typing import Any

import httpx

from recurring_billing.billing.errors import PersistenceError
from recurring_billing.core.settings import get_settings

SUBSCRIPTION_COLUMNS = (
    "id,user_id,product_id,status,billing_period,current_price,next_billing_date,"
    "direct_debit_contract_id,end_date,metadata"
)
PAYMENT_METHOD_COLUMNS = "id,user_id,contract_signature,contract_type,contract_status,is_active,last_used_at"
PAYMENT_COLUMNS = (
    "id,user_id,subscription_id,product_id,amount,currency,status,payment_method,retry_count,"
    "max_retries,next_retry_at,failure_reason,gateway_authority,gateway_ref_id,created_at,"
    "paid_at,failed_at,metadata"
)


def iso_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def json_ready(value: Any) -> Any:
    if isinstance(value, datetime):
        return iso_timestamp(value)
    if isinstance(value, dict):
        return {str(k): json_ready(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [json_ready(item) for item in value]
    return value


def supabase_service_role_headers() -> dict[str, str]:
    settings = get_settings()
    service_role_key = settings.SUPABASE_SERVICE_ROLE_KEY
    if not service_role_key or not service_role_key.strip():
        raise PersistenceError("Supabase service role key is not configured.")
    return {
        "Authorization": f"Bearer {service_role_key}",
        "apikey": service_role_key,
        "Accept": "application/json",
    }


def _rest_url(path: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1/{path}"


def _validated_list_payload(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise PersistenceError(error_message)

    for item in payload:
        if not isinstance(item, dict):
            raise PersistenceError(error_message)

    return payload


async def _service_role_select(
    table: str,
    params: dict[str, str],
    *,
    error_detail: str,
) -> list[dict[str, Any]]:
    settings = get_settings()
    headers = supabase_service_role_headers()

    try:
        async with httpx.AsyncClient(timeout=settings.SUPABASE_TIMEOUT_SECONDS) as client:
            response = await client.get(_rest_url(table), params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPError as exc:
        raise PersistenceError(error_detail) from exc
    except ValueError as exc:
        raise PersistenceError(f"{error_detail} Invalid JSON response.") from exc

    return _validated_list_payload(payload, f"{error_detail} Unexpected response shape.")


async def select_due_subscriptions(as_of: datetime, limit: int) -> list[dict[str, Any]]:
    params = {
        "select": SUBSCRIPTION_COLUMNS,
        "status": "eq.active",
        "billing_period": "eq.monthly",
        "next_billing_date": f"lte.{iso_timestamp(as_of)}",
        "end_date": "is.null",
        "order": "next_billing_date.asc,id.asc",
        "limit": str(max(1, limit)),
    }
    return await _service_role_select(
        "subscription",
        params,
        error_detail="Failed to fetch due subscriptions from Supabase.",
    )


async def select_active_direct_debit_contract(
    user_id: str,
    contract_signature: str,
) -> dict[str, Any] | None:
    params = {
        "select": PAYMENT_METHOD_COLUMNS,
        "user_id": f"eq.{user_id}",
        "contract_signature": f"eq.{contract_signature}",
        "is_active": "eq.true",
        "contract_type": "eq.direct_debit_contract",
        "limit": "1",
    }
    rows = await _service_role_select(
        "payment_method",
        params,
        error_detail="Failed to fetch direct debit contract from Supabase.",
    )
    return rows[0] if rows else None


async def select_pending_payment(subscription_id: str) -> dict[str, Any] | None:
    params = {
        "select": PAYMENT_COLUMNS,
        "subscription_id": f"eq.{subscription_id}",
        "status": "eq.pending",
        "limit": "1",
    }
    rows = await _service_role_select(
        "payment",
        params,
        error_detail="Failed to fetch pending payments from Supabase.",
    )
    return rows[0] if rows else None


async def select_latest_failed_payment(
    subscription_id: str,
    *,
    retry_due_before: datetime | None = None,
) -> dict[str, Any] | None:
    params = {
        "select": PAYMENT_COLUMNS,
        "subscription_id": f"eq.{subscription_id}",
        "status": "eq.failed",
        "order": "created_at.desc",
        "limit": "1",
    }
    if retry_due_before is not None:
        params["next_retry_at"] = f"lte.{iso_timestamp(retry_due_before)}"
    rows = await _service_role_select(
        "payment",
        params,
        error_detail="Failed to fetch failed payments from Supabase.",
    )
    return rows[0] if rows else None


async def rpc_apply_billing_operations(function_name: str, operations: list[dict[str, Any]]) -> None:
    settings = get_settings()
    headers = supabase_service_role_headers()
    headers["Prefer"] = "return=minimal"

    try:
        async with httpx.AsyncClient(timeout=settings.SUPABASE_TIMEOUT_SECONDS) as client:
            response = await client.post(
                _rest_url(f"rpc/{function_name}"),
                json={"p_operations": json_ready(operations)},
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise PersistenceError("Failed to apply billing operations in Supabase.") from exc
