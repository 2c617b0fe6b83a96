from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.config import settings
from core.errors import BusinessRuleViolation, ValidationFailed
from core.logging import get_logger
from services.card_gateway import CardGatewayClient, SUCCESS_CODE
from services.config_provider import ConfigProvider
from services.pricing import to_decimal

logger = get_logger(__name__)

PAID = "paid"
FAILED = "failed"


@dataclass
class PaymentDraft:
    """What a payment method sees of an order that is not persisted yet."""

    order_number: str
    total: Decimal
    currency: str
    user_id: int
    shipping_area: Optional[str] = None
    customer_email: Optional[str] = None


@dataclass
class PaymentResult:
    status: str
    method: str
    message: str = ""
    session_id: Optional[str] = None
    transaction_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "method": self.method,
            "message": self.message,
            "session_id": self.session_id,
            "transaction_ref": self.transaction_ref,
        }


@dataclass
class CallbackOutcome:
    status: str
    merchant_reference: Optional[str]
    session_id: Optional[str]
    transaction_id: Optional[str]
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentMethod:
    identifier = ""
    name = ""
    description = ""
    requires_session = False

    def __init__(self, config_provider: ConfigProvider):
        self.config_provider = config_provider

    @property
    def config_group(self) -> str:
        return f"payment.{self.identifier}"

    def configuration_fields(self) -> Dict[str, Dict[str, Any]]:
        return {
            "enabled": {
                "type": "boolean",
                "label": "Enabled",
                "default": False,
                "required": True,
            },
        }

    def config(self) -> Dict[str, Any]:
        values = {key: field_def.get("default") for key, field_def in self.configuration_fields().items()}
        values.update(self.config_provider.get_group(self.config_group))
        return values

    def get_config(self, key: str, default: Any = None) -> Any:
        value = self.config().get(key)
        return default if value is None else value

    def is_enabled(self) -> bool:
        try:
            return bool(self.get_config("enabled", False))
        except Exception:
            logger.exception("Error checking payment method enabled status", extra={"method": self.identifier})
            return False

    def process_payment(self, draft: PaymentDraft, payment_data: Optional[Dict[str, Any]] = None) -> PaymentResult:
        raise NotImplementedError

    def handle_callback(self, payload: Dict[str, Any]) -> CallbackOutcome:
        raise BusinessRuleViolation(f"Callbacks are not supported for {self.name}", code="callbacks_unsupported")

    def describe(self) -> Dict[str, Any]:
        return {"identifier": self.identifier, "name": self.name, "description": self.description}


class CashOnDeliveryPayment(PaymentMethod):
    identifier = "cash_on_delivery"
    name = "Cash on Delivery"
    description = "Pay with cash upon delivery"

    def configuration_fields(self) -> Dict[str, Dict[str, Any]]:
        fields = super().configuration_fields()
        fields.update({
            "enabled": {
                "type": "boolean",
                "label": "Enable Cash on Delivery",
                "description": "Enable or disable Cash on Delivery payment method",
                "default": True,
                "required": True,
            },
            "minimum_order_amount": {
                "type": "number",
                "label": "Minimum Order Amount",
                "description": "Minimum order amount required for Cash on Delivery",
                "default": 0,
                "required": True,
            },
            "maximum_order_amount": {
                "type": "number",
                "label": "Maximum Order Amount",
                "description": "Maximum order amount allowed for Cash on Delivery (leave empty for no limit)",
                "default": None,
                "required": False,
            },
            "available_areas": {
                "type": "array",
                "label": "Available Delivery Areas",
                "description": "List of areas where Cash on Delivery is available",
                "default": [],
                "required": False,
            },
        })
        return fields

    def validate(self, draft: PaymentDraft) -> None:
        config = self.config()
        minimum = to_decimal(config.get("minimum_order_amount") or 0)
        maximum = config.get("maximum_order_amount")
        total = to_decimal(draft.total)

        if total < minimum:
            raise BusinessRuleViolation(
                f"Order amount is below the minimum required amount of {minimum}",
                code="cod_below_minimum",
            )
        if maximum not in (None, "") and total > to_decimal(maximum):
            raise BusinessRuleViolation(
                f"Order amount exceeds the maximum allowed amount of {maximum}",
                code="cod_above_maximum",
            )
        areas = config.get("available_areas") or []
        if areas and draft.shipping_area not in areas:
            raise BusinessRuleViolation("Cash on Delivery is not available in your area", code="cod_area_unavailable")

    def process_payment(self, draft: PaymentDraft, payment_data: Optional[Dict[str, Any]] = None) -> PaymentResult:
        self.validate(draft)
        return PaymentResult(
            status="pending",
            method=self.identifier,
            message="Order placed successfully. Payment will be collected upon delivery.",
        )


class CardPayment(PaymentMethod):
    identifier = "credit_card"
    name = "Credit Card"
    description = "Pay securely using your credit or debit card."
    requires_session = True

    def __init__(
        self,
        config_provider: ConfigProvider,
        client: CardGatewayClient,
        callback_url: Optional[str] = None,
        verify_signatures: Optional[bool] = None,
    ):
        super().__init__(config_provider)
        self.client = client
        self.callback_url = callback_url or settings.GATEWAY_CALLBACK_URL
        self.verify_signatures = settings.GATEWAY_VERIFY_CALLBACK_SIGNATURE if verify_signatures is None else verify_signatures

    def configuration_fields(self) -> Dict[str, Dict[str, Any]]:
        fields = super().configuration_fields()
        fields["enabled"] = {
            "type": "boolean",
            "label": "Enable card payments",
            "description": "Enable or disable the card payment gateway",
            "default": True,
            "required": True,
        }
        return fields

    def process_payment(self, draft: PaymentDraft, payment_data: Optional[Dict[str, Any]] = None) -> PaymentResult:
        payment_data = dict(payment_data or {})
        callback_url = payment_data.pop("callbackUrl", None) or self.callback_url
        session = self.client.create_session(
            amount=draft.total,
            currency=draft.currency,
            merchant_reference_id=draft.order_number,
            callback_url=callback_url,
            extra=payment_data,
        )
        return PaymentResult(
            status="success",
            method=self.identifier,
            message="Payment session created successfully",
            session_id=session.session_id,
            details={
                "endpoint": session.candidate.endpoint,
                "amount_encoding": session.candidate.amount_encoding,
                "attempts": session.attempts,
            },
        )

    def handle_callback(self, payload: Dict[str, Any]) -> CallbackOutcome:
        logger.info("Card gateway callback received", extra={"payload_keys": sorted(payload)})
        if self.verify_signatures and not self.client.verify_callback_signature(payload):
            raise ValidationFailed("Invalid callback signature", {"signature": "mismatch"}, code="invalid_signature")

        order = payload.get("order") or {}
        transactions = order.get("transactions") or []
        transaction_id = payload.get("transactionId")
        if transactions and isinstance(transactions[0], dict):
            transaction_id = transactions[0].get("transactionId") or transaction_id

        merchant_reference = order.get("merchantReferenceId") or payload.get("merchantReferenceId")
        session_id = order.get("sessionId") or payload.get("sessionId") or (payload.get("session") or {}).get("id")
        if not merchant_reference and not session_id:
            raise ValidationFailed(
                "Callback does not identify an order",
                {"merchantReferenceId": "missing", "sessionId": "missing"},
                code="callback_unidentified",
            )

        status = self.map_status(payload)
        return CallbackOutcome(
            status=status,
            merchant_reference=merchant_reference,
            session_id=session_id,
            transaction_id=str(transaction_id) if transaction_id else None,
            message=payload.get("detailedResponseMessage") or payload.get("responseMessage") or "",
            raw={
                "gateway_order_id": order.get("orderId"),
                "response_code": payload.get("responseCode"),
                "detailed_response_code": payload.get("detailedResponseCode"),
                "order_status": order.get("status"),
                "detailed_status": order.get("detailedStatus"),
            },
        )

    @staticmethod
    def map_status(payload: Dict[str, Any]) -> str:
        order = payload.get("order") or {}
        response_code = payload.get("responseCode")
        order_status = str(order.get("status") or payload.get("status") or "").lower()
        detailed_status = str(order.get("detailedStatus") or "").lower()

        if response_code is not None and response_code != SUCCESS_CODE:
            return FAILED
        if order_status in ("success", "paid") or detailed_status == "paid":
            return PAID
        if response_code == SUCCESS_CODE and not order_status:
            return PAID
        return FAILED


class PaymentMethodRegistry:
    """The set of payment methods known to this process, built once at startup."""

    def __init__(self, config_provider: ConfigProvider):
        self.config_provider = config_provider
        self._methods: Dict[str, PaymentMethod] = {}

    def register(self, method: PaymentMethod) -> None:
        if method.identifier in self._methods:
            logger.warning("Payment method already registered", extra={"method": method.identifier})
            return
        self._methods[method.identifier] = method
        logger.info("Payment method registered", extra={"method": method.identifier})

    def get(self, identifier: str) -> Optional[PaymentMethod]:
        return self._methods.get(identifier)

    def require(self, identifier: str) -> PaymentMethod:
        method = self.get(identifier)
        if method is None:
            raise ValidationFailed(
                f"Payment method '{identifier}' not found",
                {"payment_method": "unknown payment method"},
                code="unknown_payment_method",
            )
        return method

    def require_enabled(self, identifier: str) -> PaymentMethod:
        method = self.require(identifier)
        if not method.is_enabled():
            raise BusinessRuleViolation(f"Payment method '{identifier}' is not enabled", code="payment_method_disabled")
        return method

    def all(self) -> List[PaymentMethod]:
        return list(self._methods.values())

    def available(self) -> List[PaymentMethod]:
        return [method for method in self._methods.values() if method.is_enabled()]

    def update_config(self, identifier: str, values: Dict[str, Any]) -> Dict[str, Any]:
        method = self.require(identifier)
        allowed = method.configuration_fields()
        unknown = sorted(set(values) - set(allowed))
        if unknown:
            raise ValidationFailed(
                "Unknown configuration keys",
                {key: "not a configuration field" for key in unknown},
            )
        self.config_provider.update_group(method.config_group, values)
        return method.config()


def build_registry(config_provider: ConfigProvider, card_client: Optional[CardGatewayClient] = None) -> PaymentMethodRegistry:
    registry = PaymentMethodRegistry(config_provider)
    registry.register(CashOnDeliveryPayment(config_provider))
    registry.register(CardPayment(config_provider, card_client or CardGatewayClient.from_settings()))
    return registry
