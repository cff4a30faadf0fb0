import base64
import binascii
import enum
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional


class SubjectType(str, enum.Enum):
    COURSE = "course"
    SUBSCRIPTION = "subscription"


class OrderStatus(str, enum.Enum):
    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


class CheckoutState(str, enum.Enum):
    FREE_ENROLLMENT = "free_enrollment"
    PROVIDER_ORDER_CREATED = "provider_order_created"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    APPLIED = "applied"
    REJECTED = "rejected"


class ConfirmOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    PENDING = "pending"


@dataclass(frozen=True)
class SubjectRef:
    subject_type: SubjectType
    subject_id: str


@dataclass(frozen=True)
class CheckoutReference:
    """Who bought what, embedded in the provider order and read back on capture."""

    user_id: str
    subject_type: SubjectType
    subject_id: str
    coupon_code: Optional[str] = None

    @property
    def subject(self) -> SubjectRef:
        return SubjectRef(self.subject_type, self.subject_id)

    def to_metadata(self) -> Dict[str, str]:
        md = {
            "user_id": self.user_id,
            "product_type": self.subject_type.value,
            "subject_id": self.subject_id,
        }
        if self.coupon_code:
            md["coupon_code"] = self.coupon_code
        return md

    @classmethod
    def from_metadata(cls, md: Optional[Mapping[str, Any]]) -> Optional["CheckoutReference"]:
        if not md:
            return None
        user_id = md.get("user_id")
        subject_id = md.get("subject_id")
        try:
            subject_type = SubjectType(md.get("product_type") or SubjectType.COURSE.value)
        except ValueError:
            return None
        if not user_id or not subject_id:
            return None
        return cls(str(user_id), subject_type, str(subject_id), md.get("coupon_code") or None)

    def to_base64(self) -> str:
        raw = json.dumps(self.to_metadata(), separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def from_base64(cls, value: Optional[str]) -> Optional["CheckoutReference"]:
        if not value:
            return None
        try:
            md = json.loads(base64.b64decode(value).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        return cls.from_metadata(md) if isinstance(md, dict) else None

    def to_pipe(self) -> str:
        # PayPal custom_id is limited to 127 chars, so no JSON here
        parts = [self.user_id, self.subject_type.value, self.subject_id]
        if self.coupon_code:
            parts.append(self.coupon_code)
        return "|".join(parts)

    @classmethod
    def from_pipe(cls, value: Optional[str]) -> Optional["CheckoutReference"]:
        if not value or "|" not in value:
            return None
        parts = value.split("|")
        if len(parts) not in (3, 4):
            return None
        return cls.from_metadata({
            "user_id": parts[0],
            "product_type": parts[1],
            "subject_id": parts[2],
            "coupon_code": parts[3] if len(parts) == 4 else None,
        })


@dataclass(frozen=True)
class CheckoutIntent:
    subject_type: SubjectType
    subject_id: str
    user_id: str
    amount: Decimal
    currency: str
    provider: str
    title: str = ""
    coupon_code: Optional[str] = None
    interval: Optional[str] = None

    @property
    def reference(self) -> CheckoutReference:
        return CheckoutReference(self.user_id, self.subject_type, self.subject_id, self.coupon_code)

    @property
    def amount_cents(self) -> int:
        return int((self.amount * 100).to_integral_value())


@dataclass
class ProviderOrder:
    provider_order_id: str
    provider: str
    status: OrderStatus = OrderStatus.CREATED
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    redirect_url: Optional[str] = None
    client_token: Optional[str] = None


@dataclass
class ProviderCapture:
    provider_order_id: str
    status: OrderStatus
    amount: Optional[Decimal]
    currency: Optional[str]
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[CheckoutReference] = None
    provider: str = ""


@dataclass(frozen=True)
class CouponEvaluation:
    code: str
    valid: bool
    discount_percent: int = 0
    free_enrollment: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class PriceQuote:
    amount: Decimal
    currency: str
    free_enrollment: bool = False
    reason: Optional[str] = None
    coupon: Optional[CouponEvaluation] = None
    title: str = ""
    interval: Optional[str] = None
    subject_id: str = ""


@dataclass(frozen=True)
class WebhookRequest:
    body: bytes
    query: Mapping[str, str]
    headers: Mapping[str, str]


@dataclass(frozen=True)
class WebhookEvent:
    provider: str
    provider_order_id: str
    event_type: str = ""
    event_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutStart:
    state: CheckoutState
    provider: str
    redirect_url: Optional[str] = None
    client_token: Optional[str] = None
    provider_order_id: Optional[str] = None
    coupon_code: Optional[str] = None

    @property
    def free_enrollment(self) -> bool:
        return self.state is CheckoutState.FREE_ENROLLMENT


@dataclass(frozen=True)
class Confirmation:
    outcome: ConfirmOutcome
    state: Optional[CheckoutState]
    provider: str
    provider_order_id: str
    event_key: str
    reference: Optional[CheckoutReference] = None
