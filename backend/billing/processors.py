"""
Payment Processor Clients
=========================
Thin httpx bindings for the two processors' REST APIs.

Credentials are frozen models built once at startup and passed to each
client; nothing is configured globally. Every call has a bounded timeout
and fails closed. No call is retried here: retry policy belongs to the
caller (or, for webhooks, to the processor's own redelivery).

pip install httpx pydantic structlog
"""

from typing import Any, Dict, Optional, Tuple, Type

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from billing.errors import GatewayError, PaymentLookupError
from billing.models import Processor

logger = structlog.get_logger().bind(component="processor_client")

CONEKTA_API_VERSION = "2.0.0"


# =============================================================================
# CREDENTIALS
# =============================================================================

class ProcessorCredentials(BaseModel):
    """Immutable per-processor client configuration"""
    model_config = ConfigDict(frozen=True)

    processor: Processor
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_url: str
    timeout_seconds: float = 5.0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


def credentials_from_config(cfg) -> Dict[Processor, ProcessorCredentials]:
    return {
        Processor.CONEKTA: ProcessorCredentials(
            processor=Processor.CONEKTA,
            api_key=cfg.CONEKTA_PRIVATE_KEY,
            webhook_secret=cfg.CONEKTA_WEBHOOK_SECRET,
            api_url=cfg.CONEKTA_API_URL,
            timeout_seconds=cfg.PROCESSOR_TIMEOUT_SECONDS,
        ),
        Processor.MERCADOPAGO: ProcessorCredentials(
            processor=Processor.MERCADOPAGO,
            api_key=cfg.MERCADOPAGO_ACCESS_TOKEN,
            webhook_secret=cfg.MERCADOPAGO_WEBHOOK_SECRET,
            api_url=cfg.MERCADOPAGO_API_URL,
            timeout_seconds=cfg.PROCESSOR_TIMEOUT_SECONDS,
        ),
    }


# =============================================================================
# CLIENTS
# =============================================================================

class ProcessorClient:
    """Base client: builds a short-lived AsyncClient per call."""

    def __init__(self, credentials: ProcessorCredentials, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.credentials = credentials
        self._transport = transport

    @property
    def processor(self) -> Processor:
        return self.credentials.processor

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.credentials.api_url,
            timeout=self.credentials.timeout_seconds,
            headers=self._headers(),
            transport=self._transport,
        )

    @staticmethod
    def _json_object(response: httpx.Response) -> Optional[dict]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _error_message(response: httpx.Response) -> Tuple[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}", None
        return f"HTTP {response.status_code}", body

    async def _post(self, path: str, payload: dict, extra_headers: Optional[dict] = None) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload, headers=extra_headers)
        except httpx.TimeoutException as e:
            logger.error("processor_timeout", processor=self.processor.value, path=path)
            raise GatewayError(f"{self.processor.value} did not answer in time", timeout=True) from e
        except httpx.HTTPError as e:
            logger.error("processor_unreachable", processor=self.processor.value, path=path, error=str(e))
            raise GatewayError(f"{self.processor.value} is unreachable: {e}") from e

        if response.status_code >= 400:
            message, body = self._error_message(response)
            message = self._processor_message(body) or message
            logger.error("processor_rejected",
                         processor=self.processor.value,
                         path=path,
                         status_code=response.status_code,
                         message=message)
            raise GatewayError(message, details=body)

        body = self._json_object(response)
        if body is None:
            logger.error("processor_unreadable_response",
                         processor=self.processor.value,
                         path=path,
                         status_code=response.status_code)
            raise GatewayError(f"{self.processor.value} returned an unreadable response",
                               details={"status_code": response.status_code})
        return body

    def _processor_message(self, body: Any) -> Optional[str]:
        return None


class ConektaClient(ProcessorClient):
    """Conekta orders API (SPEI charges)"""

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Accept"] = f"application/vnd.conekta-v{CONEKTA_API_VERSION}+json"
        headers["Accept-Language"] = "es"
        return headers

    def _processor_message(self, body: Any) -> Optional[str]:
        if isinstance(body, dict):
            details = body.get("details")
            if isinstance(details, list) and details:
                messages = [d.get("message") or str(d) if isinstance(d, dict) else str(d) for d in details]
                return ", ".join(messages)
            return body.get("message")
        return None

    async def create_order(self, payload: dict) -> dict:
        return await self._post("/orders", payload)


class MercadoPagoClient(ProcessorClient):
    """Mercado Pago payments API"""

    def _processor_message(self, body: Any) -> Optional[str]:
        if isinstance(body, dict):
            cause = body.get("cause")
            if isinstance(cause, list) and cause and isinstance(cause[0], dict):
                return cause[0].get("description") or body.get("message")
            return body.get("message")
        return None

    async def create_payment(self, payload: dict, idempotency_key: str) -> dict:
        return await self._post("/v1/payments", payload, extra_headers={"X-Idempotency-Key": idempotency_key})

    async def get_payment(self, payment_id: str) -> Optional[dict]:
        """
        Fetch the full payment object behind a notification.

        Returns None when the processor does not know the id (test
        notifications, or a forged id that still carried a valid manifest).

        Raises:
            PaymentLookupError: timeout, transport failure or 5xx/other 4xx.
        """
        try:
            async with self._client() as client:
                response = await client.get(f"/v1/payments/{payment_id}")
        except httpx.HTTPError as e:
            logger.error("payment_lookup_failed", processor=self.processor.value, payment_id=payment_id, error=str(e))
            raise PaymentLookupError(f"Could not fetch payment {payment_id}: {e}") from e

        if response.status_code == 404:
            logger.warning("payment_lookup_not_found", processor=self.processor.value, payment_id=payment_id)
            return None
        if response.status_code != 200:
            logger.error("payment_lookup_failed",
                         processor=self.processor.value,
                         payment_id=payment_id,
                         status_code=response.status_code)
            raise PaymentLookupError(f"Could not fetch payment {payment_id}: HTTP {response.status_code}")

        payment = self._json_object(response)
        if payment is None:
            logger.error("payment_lookup_unreadable", processor=self.processor.value, payment_id=payment_id)
            raise PaymentLookupError(f"Could not read payment {payment_id} from processor")
        return payment


CLIENTS: Dict[Processor, Type[ProcessorClient]] = {
    Processor.CONEKTA: ConektaClient,
    Processor.MERCADOPAGO: MercadoPagoClient,
}


def build_clients(
    credentials: Dict[Processor, ProcessorCredentials],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[Processor, ProcessorClient]:
    return {p: CLIENTS[p](creds, transport=transport) for p, creds in credentials.items()}
