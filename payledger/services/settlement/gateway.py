"""Opaque payment gateway boundary.

The settlement driver only needs to know whether a dispatched job was paid.
Transport, rails and provider retries live behind `PaymentGateway`.
"""

from dataclasses import dataclass, field
from typing import Protocol

import httpx

from payledger.common.logging import logger
from payledger.common.metrics import gateway_requests_total


@dataclass
class JobDispatch:
    job_type: str
    job_id: str
    business_id: str
    amount_cents: int
    currency: str
    idempotency_key: str
    beneficiary: dict = field(default_factory=dict)


@dataclass
class GatewayResult:
    succeeded: bool
    reference: str | None = None
    error: str | None = None
    # False when the payout may or may not have happened (transport error, 5xx).
    outcome_known: bool = True


class PaymentGateway(Protocol):
    def execute(self, dispatch: JobDispatch) -> GatewayResult: ...


class HttpPaymentGateway:
    """Posts dispatches to an HTTP payment service."""

    def __init__(self, settings) -> None:
        self.base_url = settings.gateway_url.rstrip("/")
        self.timeout = settings.gateway_timeout_seconds

    def execute(self, dispatch: JobDispatch) -> GatewayResult:
        body = {
            "job_type": dispatch.job_type,
            "job_id": dispatch.job_id,
            "business_id": dispatch.business_id,
            "amount_cents": dispatch.amount_cents,
            "currency": dispatch.currency,
            "beneficiary": dispatch.beneficiary,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    f"{self.base_url}/v1/payouts",
                    json=body,
                    headers={"Idempotency-Key": dispatch.idempotency_key},
                )
        except httpx.HTTPError as exc:
            gateway_requests_total.labels(outcome="transport_error").inc()
            logger.warning("gateway_transport_error job=%s:%s error=%s", dispatch.job_type, dispatch.job_id, exc)
            return GatewayResult(
                succeeded=False, error=f"gateway unavailable: {exc.__class__.__name__}", outcome_known=False
            )
        if resp.status_code >= 400:
            gateway_requests_total.labels(outcome="rejected").inc()
            return GatewayResult(
                succeeded=False,
                error=f"gateway rejected payout (status={resp.status_code})",
                outcome_known=resp.status_code < 500,
            )
        payload = resp.json()
        if payload.get("status") != "paid":
            gateway_requests_total.labels(outcome="declined").inc()
            return GatewayResult(succeeded=False, error=payload.get("error") or "payout declined")
        gateway_requests_total.labels(outcome="paid").inc()
        return GatewayResult(succeeded=True, reference=payload.get("reference"))
