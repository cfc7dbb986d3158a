"""
Webhook Signature Verification
==============================
Establishes that an inbound webhook genuinely came from the processor.

Both processors send a header of comma-separated key=value pairs holding
a timestamp `ts` and a hex HMAC-SHA256 digest `v1`. What gets signed
differs:

- mercadopago: "id:<data.id>;request-id:<x-request-id>;ts:<ts>;"
  (the payload itself is re-fetched from the processor, so only the id matters)
- conekta:     "<ts>." + raw body
  (the payload is trusted inline, so the whole body must be covered)

Digests are compared in constant time. A missing secret is a bypass that
is only honoured outside production and is always logged at warning level.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Mapping, Optional, Type

import structlog

from billing.errors import AuthenticationError, ProcessorNotConfiguredError
from billing.models import Processor

logger = structlog.get_logger().bind(component="signature_verifier")


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    BYPASSED = "bypassed"


# =============================================================================
# PRIMITIVES
# =============================================================================

def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """Split "ts=...,v1=..." into a dict; unknown keys are kept."""
    parts: Dict[str, str] = {}
    if not header:
        return parts
    for part in header.split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            parts[key.strip()] = value.strip()
    return parts


def compute_signature(shared_secret: str, manifest: bytes) -> str:
    return hmac.new(shared_secret.encode("utf-8"), manifest, hashlib.sha256).hexdigest()


def mercadopago_manifest(data_id: str, request_id: str, ts: str) -> bytes:
    # Alphanumeric ids are signed lower-cased
    return f"id:{data_id.lower()};request-id:{request_id};ts:{ts};".encode("utf-8")


def conekta_manifest(raw_body: bytes, ts: str) -> bytes:
    return f"{ts}.".encode("utf-8") + raw_body


# =============================================================================
# VERIFIERS
# =============================================================================

class SignatureVerifier(ABC):
    """Per-processor verifier bound to one webhook secret."""

    processor: Processor
    signature_header: str

    def __init__(self, shared_secret: Optional[str], production: bool = False):
        self._secret = shared_secret or None
        self._production = production

    @abstractmethod
    def manifest(self, raw_body: bytes, ts: str, headers: Mapping[str, str], payload: dict) -> bytes:
        """Canonical bytes the processor signed."""

    def verify(self, raw_body: bytes, header_signature: Optional[str], headers: Mapping[str, str], payload: dict) -> bool:
        """True only if the header's v1 digest matches the recomputed one."""
        if not self._secret:
            return False
        parts = parse_signature_header(header_signature)
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not ts or not v1:
            return False
        try:
            manifest = self.manifest(raw_body, ts, headers, payload)
        except ValueError:
            return False
        expected = compute_signature(self._secret, manifest)
        return hmac.compare_digest(expected.encode("ascii"), v1.encode("ascii", "replace"))

    def check(self, raw_body: bytes, headers: Mapping[str, str], payload: dict) -> VerificationStatus:
        """
        Verify or explicitly bypass.

        Raises:
            ProcessorNotConfiguredError: no secret configured in production.
            AuthenticationError: signature missing, malformed or mismatched.
        """
        if not self._secret:
            if self._production:
                logger.error("webhook_secret_missing", processor=self.processor.value)
                raise ProcessorNotConfiguredError(
                    f"Webhook signing secret for {self.processor.value} is not configured"
                )
            logger.warning(
                "webhook_signature_bypassed",
                processor=self.processor.value,
                reason="no signing secret configured (non-production)",
            )
            return VerificationStatus.BYPASSED

        header_signature = headers.get(self.signature_header)
        if not header_signature:
            logger.warning("webhook_signature_missing", processor=self.processor.value)
            raise AuthenticationError("Missing webhook signature")

        if not self.verify(raw_body, header_signature, headers, payload):
            logger.warning("webhook_signature_invalid", processor=self.processor.value)
            raise AuthenticationError("Invalid webhook signature")

        return VerificationStatus.VERIFIED


class MercadoPagoSignatureVerifier(SignatureVerifier):
    processor = Processor.MERCADOPAGO
    signature_header = "x-signature"
    request_id_header = "x-request-id"

    def manifest(self, raw_body, ts, headers, payload):
        data = payload.get("data") if isinstance(payload, dict) else None
        data_id = data.get("id") if isinstance(data, dict) else None
        request_id = headers.get(self.request_id_header)
        if data_id is None or not request_id:
            raise ValueError("data.id and x-request-id are required to build the manifest")
        return mercadopago_manifest(str(data_id), request_id, ts)


class ConektaSignatureVerifier(SignatureVerifier):
    processor = Processor.CONEKTA
    signature_header = "conekta-signature"

    def manifest(self, raw_body, ts, headers, payload):
        return conekta_manifest(raw_body, ts)


VERIFIERS: Dict[Processor, Type[SignatureVerifier]] = {
    Processor.CONEKTA: ConektaSignatureVerifier,
    Processor.MERCADOPAGO: MercadoPagoSignatureVerifier,
}


def get_verifier(processor: Processor, shared_secret: Optional[str], production: bool = False) -> SignatureVerifier:
    return VERIFIERS[processor](shared_secret, production=production)
