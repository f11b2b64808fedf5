import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from ..api.models.payment_models import InvoiceSummary
from ..core.config.settings import Settings, get_settings
from ..core.exceptions import ExternalSyncError, NotFoundError
from ..core.monitoring.app_metrics import MetricsCollector

logger = structlog.get_logger(__name__)

CENTS = Decimal(100)


def dollars_to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * CENTS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def cents_to_dollars(cents: Any) -> Decimal:
    return (Decimal(str(cents or 0)) / CENTS).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class InvoicingClient:
    """
    Client for the external invoicing API (GoHighLevel invoices).

    Amounts cross this boundary in cents and are converted to dollars here, so
    callers only ever see Decimal dollars. No retries: a failed call is reported
    to the caller, which records it per allocation line.
    """

    def __init__(self, settings: Optional[Settings] = None, metrics_collector: Optional[MetricsCollector] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self.metrics_collector = metrics_collector
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.GHL_API_BASE_URL,
            timeout=self.settings.INVOICING_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, location_id: str, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        api_key = self.settings.LOCATION_API_KEYS.get(location_id) or self.settings.GHL_API_KEY
        if not api_key:
            raise ExternalSyncError(f"No invoicing API key configured for location '{location_id}'.")
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {api_key}",
            "Version": self.settings.GHL_API_VERSION,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, operation: str, method: str, path: str, location_id: str,
                       invoice_id: str, json: Optional[dict] = None,
                       idempotency_key: Optional[str] = None) -> httpx.Response:
        headers = self._headers(location_id, idempotency_key)
        params = {"altId": location_id, "altType": "location"}
        start_time = time.perf_counter()
        outcome = "error"
        try:
            response = await self._client.request(method, path, headers=headers, params=params, json=json)
            outcome = "success" if response.is_success else f"http_{response.status_code}"
            return response
        except httpx.TimeoutException as e:
            outcome = "timeout"
            logger.warn("Invoicing API call timed out", operation=operation, invoice_id=invoice_id, error=str(e))
            raise ExternalSyncError(
                f"Invoicing API timed out after {self.settings.INVOICING_TIMEOUT_SECONDS}s.", invoice_ref=invoice_id
            ) from e
        except httpx.HTTPError as e:
            logger.warn("Invoicing API call failed", operation=operation, invoice_id=invoice_id, error=str(e))
            raise ExternalSyncError(f"Invoicing API unreachable: {e}", invoice_ref=invoice_id) from e
        finally:
            if self.metrics_collector:
                self.metrics_collector.record_invoicing_request(operation, outcome, time.perf_counter() - start_time)

    async def get_invoice(self, location_id: str, invoice_id: str) -> InvoiceSummary:
        response = await self._request("get_invoice", "GET", f"/invoices/{invoice_id}", location_id, invoice_id)
        if response.status_code == 404:
            raise NotFoundError("Invoice", invoice_id)
        if not response.is_success:
            raise ExternalSyncError(
                f"Invoicing API error {response.status_code} fetching invoice: {response.text[:200]}",
                invoice_ref=invoice_id, status_code=response.status_code,
            )

        payload = response.json()
        invoice = payload.get("invoice", payload)
        return InvoiceSummary(
            invoice_id=invoice.get("_id") or invoice.get("id") or invoice_id,
            total=cents_to_dollars(invoice.get("total")),
            amount_paid=cents_to_dollars(invoice.get("amountPaid")),
            status=invoice.get("status"),
        )

    async def record_payment(self, location_id: str, invoice_id: str, amount: Decimal, notes: str,
                             idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """Records a manual payment of `amount` dollars against an invoice."""
        body = {"amount": dollars_to_cents(amount), "notes": notes}
        response = await self._request("record_payment", "POST", f"/invoices/{invoice_id}/record-payment",
                                       location_id, invoice_id, json=body, idempotency_key=idempotency_key)
        if not response.is_success:
            raise ExternalSyncError(
                f"Invoicing API error {response.status_code} recording payment: {response.text[:200]}",
                invoice_ref=invoice_id, status_code=response.status_code,
            )
        logger.info("Payment recorded on invoice", invoice_id=invoice_id, location_id=location_id,
                    amount_cents=body["amount"])
        try:
            return response.json()
        except ValueError:
            # The endpoint sometimes answers 200 with an empty or non-JSON body
            return {}
