"""
HTTP client for the external payment processor
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional
import requests
from common.error_handling import ExternalProcessorError
from common.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class GatewayAuthorization:
    reference_id: str
    client_token: str

@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    status: str

class GatewayUnavailable(Exception):
    """Transient failure: timeout, connection error or 5xx. Safe to retry."""

class PaymentGateway:
    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None, session: Optional[requests.Session] = None,
                 sleep=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=8.0,
                                                        retryable_exceptions=[GatewayUnavailable])
        self.session = session or requests.Session()
        self.sleep = sleep

    def open_authorization(self, amount: int, currency: str, metadata: Dict[str, str],
                           idempotency_key: str) -> GatewayAuthorization:
        """Open an authorization at the processor.

        Retries transient failures with backoff. Every attempt carries the same
        idempotency key, so a request that timed out after reaching the
        processor is not authorized twice.
        """
        body = self._call("/v1/authorizations",
                          {"amount": amount, "currency": currency.lower(), "metadata": metadata},
                          idempotency_key)
        try:
            return GatewayAuthorization(reference_id=str(body["id"]), client_token=str(body["client_secret"]))
        except KeyError as e:
            raise ExternalProcessorError("Payment processor returned an unreadable response") from e

    def create_refund(self, reference_id: str, metadata: Dict[str, str], idempotency_key: str) -> GatewayRefund:
        """Ask the processor to refund a captured payment in full.

        Local state does not change here; the processor confirms with a
        refunded event once the money has moved.
        """
        body = self._call("/v1/refunds", {"payment_intent": reference_id, "metadata": metadata}, idempotency_key)
        try:
            return GatewayRefund(refund_id=str(body["id"]), status=str(body.get("status", "pending")))
        except KeyError as e:
            raise ExternalProcessorError("Payment processor returned an unreadable response") from e

    def _call(self, path: str, payload: Dict, idempotency_key: str) -> Dict:
        # Every attempt carries the same idempotency key, so a request that
        # timed out after reaching the processor is not applied twice.
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        try:
            return retry_call(self._post, self.retry_config, path, payload, idempotency_key, **kwargs)
        except GatewayUnavailable as e:
            raise ExternalProcessorError("Payment processor is unavailable, please retry later",
                                         context={"cause": "unavailable"}) from e

    def _post(self, path: str, payload: Dict, idempotency_key: str) -> Dict:
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}", "Idempotency-Key": idempotency_key},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise GatewayUnavailable(str(e)) from e

        if response.status_code >= 500:
            raise GatewayUnavailable(f"processor returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning(f"Processor rejected {path}: {response.status_code} {response.text[:200]}")
            raise ExternalProcessorError("Payment processor rejected the request", rejected=True,
                                         context={"cause": "rejected"})

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalProcessorError("Payment processor returned an unreadable response") from e
        if not isinstance(body, dict):
            raise ExternalProcessorError("Payment processor returned an unreadable response")
        return body
