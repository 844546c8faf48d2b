"""Data model for the sale-completion workflow.

This module defines:
- Status enums for drafts, contracts, payment, signature and delivery.
- The client-owned ContractDraft with its editable field groups.
- The server-owned Contract snapshot (immutable; replaced wholesale on update).
- The two-tier view held by the lifecycle: LocalDraftView before a contract
  exists, RemoteContractView once the remote record is authoritative.

Wire payloads use the camelCase names of the contracts REST API.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from studioflow.utils.dates import coerce_dt, to_iso, utcnow


class DraftStep(Enum):
    """Editor step the draft was last on."""

    EDIT = "edit"
    REVIEW = "review"
    SEND = "send"


class ContractStatus(Enum):
    DRAFT = "draft"
    SENT = "sent"
    SIGNED = "signed"

    @classmethod
    def parse(cls, value: Any) -> "ContractStatus":
        text = str(value or "").strip().lower()
        if text == "viewed":
            return cls.SENT
        try:
            return cls(text)
        except ValueError:
            return cls.DRAFT


class PaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    REFUNDED = "refunded"

    @classmethod
    def parse(cls, value: Any) -> "PaymentStatus":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.PENDING


class SignatureStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    SIGNED = "signed"
    DECLINED = "declined"

    @classmethod
    def parse(cls, value: Any) -> "SignatureStatus":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.PENDING


class DeliveryOutcome(Enum):
    """Rendered state of the post-signature delivery email."""

    SENT = "sent"
    FAILED = "failed"
    PENDING = "pending"


# ---------------------------------------------------------------------------
# Draft fields
# ---------------------------------------------------------------------------

FIELD_GROUPS: Dict[str, Dict[str, Any]] = {
    "customer": {
        "customer_name": "",
        "client_name_if_different": "",
        "address": "",
        "postcode": "",
        "phone": "",
        "email": "",
        "is_vip": False,
    },
    "studio": {
        "studio_number": "",
        "photographer": "",
        "invoice_number": "",
    },
    "order": {
        "digital_images": True,
        "digital_images_qty": "All",
        "digital_z_card": False,
        "efolio": False,
        "efolio_url": "",
        "project_influencer": False,
        "influencer_login": "",
        "influencer_password": "",
        "allow_image_use": True,
        "notes": "",
    },
    "payment": {
        "subtotal": 0.0,
        "vat_amount": 0.0,
        "total": 0.0,
        "payment_method": "card",
        "auth_code": "",
        "deposit_amount": 0.0,
        "finance_amount": 0.0,
    },
}

REQUIRED_FIELDS: Tuple[Tuple[str, str], ...] = (("customer", "customer_name"),)

VAT_RATE = 0.2


def default_fields() -> Dict[str, Dict[str, Any]]:
    return copy.deepcopy(FIELD_GROUPS)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def fields_to_payload(fields: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Flatten grouped draft fields into the camelCase ``contractDetails`` body."""

    payload: Dict[str, Any] = {}
    for group, defaults in FIELD_GROUPS.items():
        values = fields.get(group) or {}
        for name, default in defaults.items():
            payload[_camel(name)] = values.get(name, default)
    return payload


def missing_required_fields(fields: Mapping[str, Mapping[str, Any]]) -> List[str]:
    """Return ``group.field`` names of required fields that are blank."""

    missing: List[str] = []
    for group, name in REQUIRED_FIELDS:
        value = (fields.get(group) or {}).get(name)
        if value is None or not str(value).strip():
            missing.append(f"{group}.{name}")
    return missing


@dataclass
class ContractDraft:
    """Locally persisted, pre-authoritative contract in progress."""

    lead_id: str
    fields: Dict[str, Dict[str, Any]] = field(default_factory=default_fields)
    step: DraftStep = DraftStep.EDIT
    saved_at: datetime = field(default_factory=utcnow)

    # Resume metadata for a draft that already produced a remote contract
    contract_id: Optional[str] = None
    signing_url: Optional[str] = None
    email_sent: bool = False
    email_sent_at: Optional[datetime] = None
    contract_status: ContractStatus = ContractStatus.DRAFT

    # In-flight key sent with create so the backend can recognise a repeat
    client_reference: str = field(default_factory=lambda: uuid.uuid4().hex)
    selected_photo_ids: List[str] = field(default_factory=list)

    def get_field(self, group: str, name: str) -> Any:
        self._check_field(group, name)
        return self.fields.setdefault(group, {}).get(name, FIELD_GROUPS[group][name])

    def set_field(self, group: str, name: str, value: Any) -> None:
        self._check_field(group, name)
        self.fields.setdefault(group, {})[name] = value

    def set_subtotal(self, value: Any) -> None:
        """Set the subtotal and recalculate VAT and total."""

        try:
            subtotal = float(value)
        except (TypeError, ValueError):
            subtotal = 0.0
        vat_amount = round(subtotal * VAT_RATE, 2)
        payment = self.fields.setdefault("payment", {})
        payment["subtotal"] = subtotal
        payment["vat_amount"] = vat_amount
        payment["total"] = round(subtotal + vat_amount, 2)

    @property
    def customer_email(self) -> str:
        return str(self.get_field("customer", "email") or "").strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "fields": copy.deepcopy(self.fields),
            "step": self.step.value,
            "saved_at": to_iso(self.saved_at),
            "contract_id": self.contract_id,
            "signing_url": self.signing_url,
            "email_sent": self.email_sent,
            "email_sent_at": to_iso(self.email_sent_at),
            "contract_status": self.contract_status.value,
            "client_reference": self.client_reference,
            "selected_photo_ids": list(self.selected_photo_ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContractDraft":
        fields = default_fields()
        for group, values in (data.get("fields") or {}).items():
            if isinstance(values, dict):
                fields.setdefault(group, {}).update(values)
        return cls(
            lead_id=str(data["lead_id"]),
            fields=fields,
            step=DraftStep(data.get("step") or DraftStep.EDIT.value),
            saved_at=coerce_dt(data.get("saved_at")) or utcnow(),
            contract_id=data.get("contract_id"),
            signing_url=data.get("signing_url"),
            email_sent=bool(data.get("email_sent")),
            email_sent_at=coerce_dt(data.get("email_sent_at")),
            contract_status=ContractStatus.parse(data.get("contract_status")),
            client_reference=str(data.get("client_reference") or uuid.uuid4().hex),
            selected_photo_ids=[str(p) for p in data.get("selected_photo_ids") or []],
        )

    def _check_field(self, group: str, name: str) -> None:
        if group not in FIELD_GROUPS or name not in FIELD_GROUPS[group]:
            raise KeyError(f"Unknown draft field: {group}.{name}")


# ---------------------------------------------------------------------------
# Remote contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryEmail:
    """Delivery email sub-record. ``sent is None`` means no result yet."""

    sent: Optional[bool] = None
    sent_at: Optional[datetime] = None
    to: Optional[str] = None
    error: Optional[str] = None
    attachment_count: int = 0
    photo_count: int = 0
    resent_count: int = 0

    @property
    def outcome(self) -> DeliveryOutcome:
        if self.error:
            return DeliveryOutcome.FAILED
        if self.sent is True:
            return DeliveryOutcome.SENT
        if self.sent is False:
            return DeliveryOutcome.FAILED
        return DeliveryOutcome.PENDING

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "DeliveryEmail":
        nested = payload.get("deliveryEmail")
        if isinstance(nested, dict):
            return cls(
                sent=nested.get("sent"),
                sent_at=coerce_dt(nested.get("sentAt")),
                to=nested.get("to"),
                error=nested.get("error") or None,
                attachment_count=int(nested.get("attachmentCount") or 0),
                photo_count=int(nested.get("photoCount") or 0),
                resent_count=int(nested.get("resentCount") or 0),
            )
        return cls(
            sent=payload.get("deliveryEmailSent"),
            sent_at=coerce_dt(payload.get("deliveryEmailTime")),
            to=payload.get("deliveryEmailTo"),
            error=payload.get("deliveryEmailError") or None,
            attachment_count=int(payload.get("deliveryAttachmentCount") or 0),
            photo_count=int(payload.get("deliveryPhotoCount") or 0),
            resent_count=int(payload.get("deliveryResentCount") or 0),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "sentAt": to_iso(self.sent_at),
            "to": self.to,
            "error": self.error,
            "attachmentCount": self.attachment_count,
            "photoCount": self.photo_count,
            "resentCount": self.resent_count,
        }


@dataclass(frozen=True)
class Contract:
    """Server-authoritative record of a sale attempt."""

    id: str
    lead_id: Optional[str] = None
    signing_url: Optional[str] = None
    status: ContractStatus = ContractStatus.DRAFT
    payment_status: PaymentStatus = PaymentStatus.PENDING
    signature_status: SignatureStatus = SignatureStatus.PENDING
    signed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    pdf_url: Optional[str] = None
    auth_code: str = ""
    delivery: DeliveryEmail = field(default_factory=DeliveryEmail)

    def __post_init__(self) -> None:
        # status=signed implies signature_status=signed
        if self.status == ContractStatus.SIGNED and self.signature_status != SignatureStatus.SIGNED:
            object.__setattr__(self, "signature_status", SignatureStatus.SIGNED)

    @property
    def is_signed(self) -> bool:
        return self.status == ContractStatus.SIGNED

    def with_delivery(self, delivery: DeliveryEmail) -> "Contract":
        return replace(self, delivery=delivery)

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Contract":
        """Build a Contract from a REST payload (camelCase keys)."""

        status = ContractStatus.parse(payload.get("status"))
        raw_signature = payload.get("signatureStatus")
        if raw_signature is None:
            if status == ContractStatus.SIGNED:
                raw_signature = SignatureStatus.SIGNED.value
            elif status == ContractStatus.SENT:
                raw_signature = SignatureStatus.SENT.value
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

        return cls(
            id=str(payload.get("id") or ""),
            lead_id=payload.get("leadId"),
            signing_url=payload.get("signingUrl") or None,
            status=status,
            payment_status=PaymentStatus.parse(payload.get("paymentStatus")),
            signature_status=SignatureStatus.parse(raw_signature),
            signed_at=coerce_dt(payload.get("signedAt")),
            sent_at=coerce_dt(payload.get("sentAt")),
            expires_at=coerce_dt(payload.get("expiresAt")),
            pdf_url=payload.get("pdfUrl") or None,
            auth_code=str(payload.get("authCode") or data.get("authCode") or ""),
            delivery=DeliveryEmail.from_api(payload),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "leadId": self.lead_id,
            "signingUrl": self.signing_url,
            "status": self.status.value,
            "paymentStatus": self.payment_status.value,
            "signatureStatus": self.signature_status.value,
            "signedAt": to_iso(self.signed_at),
            "sentAt": to_iso(self.sent_at),
            "expiresAt": to_iso(self.expires_at),
            "pdfUrl": self.pdf_url,
            "authCode": self.auth_code,
            "deliveryEmail": self.delivery.to_api(),
        }


# ---------------------------------------------------------------------------
# Two-tier view
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocalDraftView:
    """No remote contract yet; the Draft Store is authoritative."""

    lead_id: str
    tag: str = "draft"


@dataclass(frozen=True)
class RemoteContractView:
    """A remote contract exists and always wins over local state."""

    remote: Contract
    tag: str = "created"


ContractView = Union[LocalDraftView, RemoteContractView]
