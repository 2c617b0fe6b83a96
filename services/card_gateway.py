import base64
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from core.clock import utcnow
from core.config import settings
from core.errors import BusinessRuleViolation, GatewayUnavailable
from core.logging import get_logger
from services.pricing import round_money

logger = get_logger(__name__)

SUCCESS_CODE = "000"

SESSION_ENDPOINTS = (
    "/payment-intent/api/v2/direct/session",
    "/payment-intent/api/v1/direct/session",
)
AMOUNT_ENCODINGS = ("decimal", "string", "minor_units")
TIMESTAMP_FORMATS = ("%Y/%m/%d %H:%M:%S", "%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class SessionCandidate:
    endpoint: str
    amount_encoding: str
    timestamp_format: str


# The provider has accepted different amount and timestamp shapes on different
# API versions, so session creation walks this list until one attempt succeeds.
DEFAULT_CANDIDATES: List[SessionCandidate] = [
    SessionCandidate(endpoint, encoding, ts_format)
    for endpoint in SESSION_ENDPOINTS
    for encoding in AMOUNT_ENCODINGS
    for ts_format in TIMESTAMP_FORMATS
]


@dataclass
class GatewaySession:
    session_id: str
    candidate: SessionCandidate
    response: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1


def format_amount(amount: Decimal | float | str) -> str:
    return f"{round_money(amount):.2f}"


def encode_amount(amount: Decimal | float | str, encoding: str) -> Any:
    value = round_money(amount)
    if encoding == "decimal":
        return float(value)
    if encoding == "string":
        return f"{value:.2f}"
    if encoding == "minor_units":
        return int(value * 100)
    raise ValueError(f"Unknown amount encoding: {encoding}")


def generate_signature(
    merchant_public_key: str,
    amount: Decimal | float | str,
    currency: str,
    merchant_reference_id: str,
    api_password: str,
    timestamp: str,
) -> str:
    """Base64 HMAC-SHA256 of key + amount(2dp) + currency + reference + timestamp."""
    message = f"{merchant_public_key}{format_amount(amount)}{currency.upper()}{merchant_reference_id}{timestamp}"
    digest = hmac.new(api_password.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_callback_signature(
    merchant_public_key: str,
    amount: Decimal | float | str,
    currency: str,
    gateway_order_id: str,
    status: str,
    merchant_reference_id: str,
    timestamp: str,
    api_password: str,
) -> str:
    message = (
        f"{merchant_public_key}{format_amount(amount)}{currency.upper()}"
        f"{gateway_order_id}{status}{merchant_reference_id}{timestamp}"
    )
    digest = hmac.new(api_password.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class CardGatewayClient:
    def __init__(
        self,
        base_url: str,
        merchant_public_key: str,
        api_password: str,
        timeout: float = 30.0,
        deadline: float = 45.0,
        candidates: Optional[Sequence[SessionCandidate]] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.merchant_public_key = merchant_public_key
        self.api_password = api_password
        self.timeout = timeout
        self.deadline = deadline
        self.candidates = list(candidates or DEFAULT_CANDIDATES)
        self.clock = clock
        self.monotonic = monotonic

    @classmethod
    def from_settings(cls) -> "CardGatewayClient":
        return cls(
            base_url=settings.GATEWAY_BASE_URL,
            merchant_public_key=settings.GATEWAY_MERCHANT_PUBLIC_KEY,
            api_password=settings.GATEWAY_API_PASSWORD,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            deadline=settings.GATEWAY_SESSION_DEADLINE_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.merchant_public_key and self.api_password)

    def _payload(
        self,
        candidate: SessionCandidate,
        amount: Decimal,
        currency: str,
        merchant_reference_id: str,
        callback_url: str,
        extra: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        timestamp = self.clock().strftime(candidate.timestamp_format)
        payload = dict(extra or {})
        payload.update({
            "amount": encode_amount(amount, candidate.amount_encoding),
            "currency": currency.upper(),
            "merchantReferenceId": merchant_reference_id,
            "timestamp": timestamp,
            "signature": generate_signature(
                self.merchant_public_key, amount, currency, merchant_reference_id, self.api_password, timestamp
            ),
            "callbackUrl": callback_url,
        })
        return payload

    def create_session(
        self,
        amount: Decimal,
        currency: str,
        merchant_reference_id: str,
        callback_url: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        """Create a payment session, trying each candidate until the provider accepts one.

        An attempt counts only if the HTTP call succeeds and the body carries the
        success response code and a session id. Every other outcome is logged and
        the next candidate is tried. All attempts share one ``deadline``; no single
        request may outlive what is left of it. Raises ``GatewayUnavailable`` when
        none work or the deadline runs out.
        """
        if not self.configured:
            raise BusinessRuleViolation(
                "Card gateway credentials are not configured",
                code="gateway_not_configured",
            )

        last_error = "Gateway session creation failed"
        started = self.monotonic()
        attempts = 0
        for attempt, candidate in enumerate(self.candidates, start=1):
            remaining = self.deadline - (self.monotonic() - started)
            if remaining <= 0:
                logger.warning(
                    "Gateway session deadline exceeded",
                    extra={"merchant_reference_id": merchant_reference_id, "attempts": attempts, "deadline": self.deadline},
                )
                raise GatewayUnavailable(
                    f"{last_error} (gave up after {self.deadline:g}s)",
                    code="gateway_session_failed",
                    details={"attempts": attempts, "deadline_exceeded": True},
                )
            attempts = attempt
            url = f"{self.base_url}{candidate.endpoint}"
            payload = self._payload(candidate, amount, currency, merchant_reference_id, callback_url, extra)
            log_context = {
                "merchant_reference_id": merchant_reference_id,
                "endpoint": candidate.endpoint,
                "amount_encoding": candidate.amount_encoding,
                "timestamp_format": candidate.timestamp_format,
                "attempt": attempt,
            }
            try:
                resp = requests.post(
                    url,
                    json=payload,
                    auth=(self.merchant_public_key, self.api_password),
                    timeout=min(self.timeout, remaining),
                )
            except requests.RequestException as exc:
                last_error = f"Gateway request failed: {exc}"
                logger.warning("Gateway session attempt failed", extra={**log_context, "error": str(exc)})
                continue

            try:
                body = resp.json()
            except ValueError:
                last_error = f"Gateway returned a non-JSON response (HTTP {resp.status_code})"
                logger.warning("Gateway session attempt returned malformed JSON", extra={**log_context, "http_status": resp.status_code})
                continue

            if not isinstance(body, dict):
                last_error = "Gateway returned an unexpected response body"
                logger.warning("Gateway session attempt returned unexpected body", extra=log_context)
                continue

            session_id = (body.get("session") or {}).get("id")
            if resp.ok and body.get("responseCode") == SUCCESS_CODE and session_id:
                logger.info("Gateway session created", extra={**log_context, "session_id": session_id})
                return GatewaySession(session_id=session_id, candidate=candidate, response=body, attempts=attempt)

            last_error = body.get("detailedResponseMessage") or body.get("responseMessage") or f"HTTP {resp.status_code}"
            logger.warning(
                "Gateway session attempt rejected",
                extra={**log_context, "http_status": resp.status_code, "response_code": body.get("responseCode"), "error": last_error},
            )

        raise GatewayUnavailable(
            last_error,
            code="gateway_session_failed",
            details={"attempts": len(self.candidates)},
        )

    def verify_callback_signature(self, payload: Dict[str, Any]) -> bool:
        order = payload.get("order") or {}
        signature = payload.get("signature")
        if not signature:
            return False
        expected = generate_callback_signature(
            self.merchant_public_key,
            order.get("amount", 0),
            order.get("currency", ""),
            str(order.get("orderId", "")),
            str(order.get("status", "")),
            str(order.get("merchantReferenceId", "")),
            str(payload.get("timeStamp", "")),
            self.api_password,
        )
        return hmac.compare_digest(expected, signature)
