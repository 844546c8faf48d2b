"""In-process contract service.

`LocalContractBackend` implements `ContractService` without a network and
reproduces what the contracts API does server-side:
- Issue a signing URL (random 32-byte token, valid for 7 days).
- Email the signing link, refusing contracts that are already signed.
- Deliver the signed PDF + selected images automatically on signature.
- Re-validate payment and signature on completion.

It backs the demo CLI, the dashboard and the tests. `sign`, `record_payment`
and `fail_next` simulate the customer, the payment terminal and outages.
"""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from studioflow.clients.contract_service import ContractService, RemoteError, ResendResult
from studioflow.messaging.comms import (
    CommsError,
    GeneratedEmail,
    build_contract_signing_email,
    build_delivery_email,
)
from studioflow.orchestrator.models import (
    Contract,
    ContractStatus,
    DeliveryEmail,
    PaymentStatus,
    SignatureStatus,
)
from studioflow.utils.dates import utcnow
from studioflow.utils.invoice_numbers import next_invoice_number
from studioflow.utils.pdf_parser import is_readable_pdf

logger = logging.getLogger(__name__)

SIGNING_LINK_TTL = timedelta(days=7)


@dataclass
class _ContractRecord:
    id: str
    lead_id: Optional[str]
    token: str
    client_reference: Optional[str]
    details: Dict[str, Any]
    selected_photo_ids: List[str]
    created_at: datetime
    expires_at: datetime
    status: ContractStatus = ContractStatus.DRAFT
    payment_status: PaymentStatus = PaymentStatus.PENDING
    signature_status: SignatureStatus = SignatureStatus.PENDING
    sent_at: Optional[datetime] = None
    sent_to_email: Optional[str] = None
    signed_at: Optional[datetime] = None
    pdf_path: Optional[str] = None
    auth_code: str = ""
    delivery: DeliveryEmail = field(default_factory=DeliveryEmail)
    signature_image: Optional[bytes] = None
    completed_at: Optional[datetime] = None


class LocalContractBackend(ContractService):
    def __init__(
        self,
        public_base_url: str = "http://localhost:5000",
        photo_library: Optional[Mapping[str, str]] = None,
        clock: Callable[[], datetime] = utcnow,
        auto_deliver: bool = True,
        use_llm: bool = False,
    ) -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self.photo_library: Dict[str, str] = dict(photo_library or {})
        self.clock = clock
        self.auto_deliver = auto_deliver
        self.use_llm = use_llm

        self.outbox: List[GeneratedEmail] = []
        self.calls: Counter = Counter()
        self.issued_invoice_numbers: List[str] = []

        self._lock = threading.RLock()
        self._contracts: Dict[str, _ContractRecord] = {}
        self._by_reference: Dict[str, str] = {}
        self._failures: Dict[str, List[Tuple[str, int]]] = {}

    # ------------------------------------------------------------------
    # ContractService
    # ------------------------------------------------------------------

    def create(self, payload: Mapping[str, Any]) -> Contract:
        with self._lock:
            self._enter("create")

            reference = payload.get("clientReference")
            if reference and reference in self._by_reference:
                record = self._contracts[self._by_reference[reference]]
                logger.info("Create repeated for reference %s; returning contract %s", reference, record.id)
                return self._to_contract(record)

            details = dict(payload.get("contractDetails") or {})
            if not str(details.get("customerName") or "").strip():
                raise RemoteError("Customer name is required", status_code=400)

            now = self.clock()
            record = _ContractRecord(
                id=str(uuid.uuid4()),
                lead_id=payload.get("leadId"),
                token=secrets.token_hex(32),
                client_reference=reference,
                details=details,
                selected_photo_ids=[str(p) for p in payload.get("selectedPhotoIds") or []],
                created_at=now,
                expires_at=now + SIGNING_LINK_TTL,
            )
            self._contracts[record.id] = record
            if reference:
                self._by_reference[reference] = record.id
            if details.get("invoiceNumber"):
                self.issued_invoice_numbers.append(str(details["invoiceNumber"]))

            logger.info("Contract %s created for lead %s", record.id, record.lead_id)
            return self._to_contract(record)

    def get(self, contract_id: str) -> Contract:
        with self._lock:
            self._enter("get")
            return self._to_contract(self._record(contract_id))

    def send_email(self, contract_id: str, email: str) -> None:
        with self._lock:
            self._enter("send")
            record = self._record(contract_id)
            if record.status == ContractStatus.SIGNED:
                raise RemoteError("Contract is already signed", status_code=400)
            if not email:
                raise RemoteError("Email address is required", status_code=400)

            try:
                message = build_contract_signing_email(
                    to_email=email,
                    customer_name=str(record.details.get("customerName") or ""),
                    signing_url=self._signing_url(record),
                    total=record.details.get("total"),
                    expires_at=record.expires_at,
                    use_llm=self.use_llm,
                )
            except CommsError as e:
                raise RemoteError(f"Failed to build contract email: {e}", status_code=500) from e
            self.outbox.append(message)

            record.status = ContractStatus.SENT
            if record.signature_status == SignatureStatus.PENDING:
                record.signature_status = SignatureStatus.SENT
            record.sent_at = self.clock()
            record.sent_to_email = email
            logger.info("Contract %s sent to %s", record.id, email)

    def resend_delivery(self, contract_id: str, email: Optional[str] = None) -> ResendResult:
        with self._lock:
            self._enter("resend")
            record = self._record(contract_id)
            if record.status != ContractStatus.SIGNED:
                raise RemoteError("Contract must be signed before resending delivery email", status_code=400)

            to = email or record.delivery.to or record.sent_to_email or record.details.get("email")
            if not to:
                raise RemoteError("No email address available for delivery", status_code=400)

            pdf_name, photos = self._attachments(record)
            if not pdf_name and not photos:
                raise RemoteError("No attachments available to send", status_code=400)

            self.outbox.append(self._delivery_message(record, to, pdf_name, photos))
            attachments = len(photos) + (1 if pdf_name else 0)
            record.delivery = replace(
                record.delivery,
                sent=True,
                sent_at=self.clock(),
                to=to,
                error=None,
                attachment_count=attachments,
                photo_count=len(photos),
                resent_count=record.delivery.resent_count + 1,
            )
            logger.info("Delivery email for contract %s resent to %s", record.id, to)
            return ResendResult(sent_to=to, attachments=attachments, photo_count=len(photos))

    def set_auth_code(self, contract_id: str, code: str) -> None:
        with self._lock:
            self._enter("auth_code")
            self._record(contract_id).auth_code = code

    def complete(self, contract_id: str, signature_image: Optional[bytes] = None) -> Contract:
        with self._lock:
            self._enter("complete")
            record = self._record(contract_id)
            if record.payment_status != PaymentStatus.PAID:
                raise RemoteError("Payment must be recorded before completing", status_code=400)
            if record.signature_status != SignatureStatus.SIGNED and not signature_image:
                raise RemoteError("Signature must be collected before completing", status_code=400)

            if signature_image:
                record.signature_image = bytes(signature_image)
                record.signature_status = SignatureStatus.SIGNED
            record.completed_at = self.clock()
            logger.info("Contract %s completed", record.id)
            return self._to_contract(record)

    def next_invoice_number(self) -> str:
        with self._lock:
            self._enter("invoice_number")
            return next_invoice_number(self.issued_invoice_numbers, self.clock())

    # ------------------------------------------------------------------
    # Simulation hooks
    # ------------------------------------------------------------------

    def sign(self, contract_id: str, pdf_path: Optional[str] = None) -> Contract:
        """The customer signs via the signing link."""

        with self._lock:
            record = self._record(contract_id)
            if record.status == ContractStatus.SIGNED:
                raise RemoteError("Contract is already signed", status_code=400)
            if self.clock() > record.expires_at:
                raise RemoteError("Signing link has expired", status_code=410)

            record.status = ContractStatus.SIGNED
            record.signature_status = SignatureStatus.SIGNED
            record.signed_at = self.clock()
            record.pdf_path = pdf_path
            logger.info("Contract %s signed", record.id)

            if self.auto_deliver:
                self._auto_deliver(record)
            return self._to_contract(record)

    def record_payment(self, contract_id: str, status: Any = PaymentStatus.PAID) -> Contract:
        with self._lock:
            record = self._record(contract_id)
            record.payment_status = status if isinstance(status, PaymentStatus) else PaymentStatus.parse(status)
            return self._to_contract(record)

    def fail_next(
        self,
        operation: str,
        message: str = "Service unavailable",
        status_code: int = 503,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of `operation` fail.

        Operations: create, get, send, resend, auth_code, complete,
        invoice_number, deliver (the automatic delivery on signature).
        """

        with self._lock:
            self._failures.setdefault(operation, []).extend([(message, status_code)] * times)

    def contract_ids(self) -> List[str]:
        with self._lock:
            return list(self._contracts)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        self._raise_injected(operation)

    def _raise_injected(self, operation: str) -> None:
        queued = self._failures.get(operation)
        if queued:
            message, status_code = queued.pop(0)
            raise RemoteError(message, status_code=status_code)

    def _record(self, contract_id: str) -> _ContractRecord:
        record = self._contracts.get(contract_id)
        if record is None:
            raise RemoteError("Contract not found", status_code=404)
        return record

    def _signing_url(self, record: _ContractRecord) -> str:
        return f"{self.public_base_url}/sign-contract/{record.token}"

    def _attachments(self, record: _ContractRecord) -> Tuple[Optional[str], List[str]]:
        pdf_name = None
        if record.pdf_path:
            if is_readable_pdf(record.pdf_path):
                pdf_name = Path(record.pdf_path).name
            else:
                logger.warning("Signed PDF for contract %s is not readable: %s", record.id, record.pdf_path)
        photos = [self.photo_library[p] for p in record.selected_photo_ids if p in self.photo_library]
        return pdf_name, photos

    def _delivery_message(
        self,
        record: _ContractRecord,
        to: str,
        pdf_name: Optional[str],
        photos: List[str],
    ) -> GeneratedEmail:
        try:
            return build_delivery_email(
                to_email=to,
                customer_name=str(record.details.get("customerName") or ""),
                invoice_number=str(record.details.get("invoiceNumber") or ""),
                pdf_filename=pdf_name,
                photo_filenames=photos,
                use_llm=self.use_llm,
            )
        except CommsError as e:
            raise RemoteError(f"Failed to build delivery email: {e}", status_code=500) from e

    def _auto_deliver(self, record: _ContractRecord) -> None:
        to = record.sent_to_email or record.details.get("email")
        try:
            self._raise_injected("deliver")
            if not to:
                raise RemoteError("No email address available for delivery", status_code=400)
            pdf_name, photos = self._attachments(record)
            if not pdf_name and not photos:
                raise RemoteError("No attachments available to send", status_code=400)
            self.outbox.append(self._delivery_message(record, to, pdf_name, photos))
        except RemoteError as e:
            logger.warning("Automatic delivery for contract %s failed: %s", record.id, e.message)
            record.delivery = replace(record.delivery, sent=False, to=to, error=e.message)
            return

        record.delivery = replace(
            record.delivery,
            sent=True,
            sent_at=self.clock(),
            to=to,
            error=None,
            attachment_count=len(photos) + (1 if pdf_name else 0),
            photo_count=len(photos),
        )
        logger.info("Delivery email for contract %s sent to %s", record.id, to)

    def _to_contract(self, record: _ContractRecord) -> Contract:
        return Contract(
            id=record.id,
            lead_id=record.lead_id,
            signing_url=self._signing_url(record),
            status=record.status,
            payment_status=record.payment_status,
            signature_status=record.signature_status,
            signed_at=record.signed_at,
            sent_at=record.sent_at,
            expires_at=record.expires_at,
            pdf_url=f"{self.public_base_url}/api/contracts/{record.id}/pdf" if record.signed_at else None,
            auth_code=record.auth_code,
            delivery=record.delivery,
        )
