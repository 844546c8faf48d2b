"""Delivery Dispatcher: post-signature delivery email.

The backend sends the delivery email (signed contract PDF + selected images)
by itself once the contract is signed. Here that result is only observed and
rendered as sent / failed / pending. `resend` is the manual retry a person
triggers; every call is a fresh send, so duplicates are possible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from studioflow.clients.contract_service import ContractService, RemoteError, ResendResult
from studioflow.orchestrator.lifecycle import ContractLifecycle, InvalidTransitionError
from studioflow.orchestrator.models import DeliveryEmail, DeliveryOutcome, SignatureStatus
from studioflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryStatus:
    """Render-ready delivery state."""

    outcome: DeliveryOutcome
    message: str
    sent_to: Optional[str] = None
    sent_at: Optional[datetime] = None
    error: Optional[str] = None
    attachment_count: int = 0
    can_resend: bool = False


class DeliveryDispatcher:
    def __init__(
        self,
        service: ContractService,
        lifecycle: ContractLifecycle,
        clock: Callable[[], datetime] = utcnow,
        on_outcome: Optional[Callable[[DeliveryStatus], None]] = None,
    ) -> None:
        self.service = service
        self.lifecycle = lifecycle
        self.clock = clock
        self.on_outcome = on_outcome
        self._last_outcome: Optional[DeliveryOutcome] = None

    def _delivery(self) -> DeliveryEmail:
        contract = self.lifecycle.contract
        return contract.delivery if contract else DeliveryEmail()

    def _is_signed(self) -> bool:
        contract = self.lifecycle.contract
        return contract is not None and contract.signature_status == SignatureStatus.SIGNED

    def outcome(self) -> DeliveryOutcome:
        return self._delivery().outcome

    def status(self) -> DeliveryStatus:
        delivery = self._delivery()
        outcome = delivery.outcome
        if outcome == DeliveryOutcome.SENT:
            message = f"Delivery email sent to {delivery.to}" if delivery.to else "Delivery email sent"
        elif outcome == DeliveryOutcome.FAILED:
            message = f"Delivery email failed: {delivery.error or 'unknown error'}"
        else:
            message = "Sending delivery email..."

        return DeliveryStatus(
            outcome=outcome,
            message=message,
            sent_to=delivery.to,
            sent_at=delivery.sent_at,
            error=delivery.error,
            attachment_count=delivery.attachment_count,
            can_resend=self._is_signed(),
        )

    def observe(self) -> DeliveryOutcome:
        """Log and report a change of delivery outcome since the last call."""

        current = self.outcome()
        if current != self._last_outcome:
            self._last_outcome = current
            if self._is_signed():
                status = self.status()
                if current == DeliveryOutcome.FAILED:
                    logger.warning("Contract %s: %s", self.lifecycle.contract_id, status.message)
                else:
                    logger.info("Contract %s: %s", self.lifecycle.contract_id, status.message)
                if self.on_outcome is not None:
                    self.on_outcome(status)
        return current

    def resend(self, email: Optional[str] = None) -> ResendResult:
        """Send the delivery email again.

        On failure the error is recorded on the delivery sub-record, ``sent``
        keeps its previous value, and the RemoteError propagates.
        """

        with self.lifecycle.lock:
            contract = self.lifecycle.contract
            if contract is None or contract.signature_status != SignatureStatus.SIGNED:
                raise InvalidTransitionError("Contract must be signed before resending delivery email")

            address = (email or contract.delivery.to or "").strip() or None
            delivery = contract.delivery
            try:
                result = self.service.resend_delivery(contract.id, address)
            except RemoteError as e:
                self.lifecycle.record_delivery_failure(e.message)
                logger.warning("Resend of delivery email for contract %s failed: %s", contract.id, e.message)
                raise

            self.lifecycle.apply_delivery(
                replace(
                    delivery,
                    sent=True,
                    error=None,
                    sent_at=self.clock(),
                    to=result.sent_to,
                    attachment_count=result.attachments,
                    photo_count=result.photo_count,
                    resent_count=delivery.resent_count + 1,
                )
            )
            logger.info(
                "Delivery email for contract %s resent to %s (%d attachments)",
                contract.id,
                result.sent_to,
                result.attachments,
            )
        self.observe()
        return result
