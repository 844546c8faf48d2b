"""Contract lifecycle state machine (Lifecycle Controller).

This module defines:
- A ContractState enum for a single sale attempt.
- An explicit transition table with guard conditions.
- The two-tier contract view (local draft until `create`, remote afterwards).
- An audit trail of ContractEvent records, successful and rejected.

Every user action and every poller tick runs under the lifecycle lock, and
the remote snapshot is swapped as a whole, so readers never see a contract
that is half old and half new. Each swap bumps `version`; a poller
that fetched before the bump hands its token to `reconcile`, which then
drops the stale snapshot instead of undoing the newer local change.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from studioflow.clients.contract_service import ContractService, IncompleteResponseError
from studioflow.orchestrator.gate import unmet_conditions
from studioflow.orchestrator.models import (
    Contract,
    ContractDraft,
    ContractStatus,
    ContractView,
    DeliveryEmail,
    LocalDraftView,
    RemoteContractView,
    SignatureStatus,
    fields_to_payload,
    missing_required_fields,
)
from studioflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


class ContractState(Enum):
    DRAFT = "DRAFT"
    CREATED = "CREATED"
    SENT = "SENT"
    SIGNED = "SIGNED"
    COMPLETED = "COMPLETED"


TRANSITIONS: Dict[ContractState, Dict[str, ContractState]] = {
    ContractState.DRAFT: {
        "CREATE": ContractState.CREATED,
    },
    ContractState.CREATED: {
        "SEND": ContractState.SENT,
        "SIGNATURE_OBSERVED": ContractState.SIGNED,
        "COMPLETE": ContractState.COMPLETED,
    },
    ContractState.SENT: {
        "SEND": ContractState.SENT,  # resend the signing link
        "SIGNATURE_OBSERVED": ContractState.SIGNED,
        "COMPLETE": ContractState.COMPLETED,
    },
    ContractState.SIGNED: {
        "COMPLETE": ContractState.COMPLETED,
    },
    ContractState.COMPLETED: {},
}


class ValidationError(Exception):
    """Required draft fields are missing."""

    def __init__(self, missing: List[str]) -> None:
        super().__init__(f"Missing required fields: {', '.join(missing)}")
        self.missing = list(missing)


class GateNotSatisfiedError(Exception):
    """Completion was attempted before payment and signature were in place."""

    def __init__(self, reasons: List[str]) -> None:
        super().__init__("; ".join(reasons))
        self.reasons = list(reasons)


class InvalidTransitionError(Exception):
    """Raised when an event is not allowed in the current state."""


@dataclass
class ContractEvent:
    """Audit trail event for a contract attempt."""

    event_type: str
    timestamp: datetime
    old_state: Optional[str]
    new_state: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    reason: Optional[str] = None


class ContractLifecycle:
    """State machine for one lead's contract attempt."""

    def __init__(
        self,
        service: ContractService,
        lead_id: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.service = service
        self.lead_id = lead_id
        self.clock = clock
        self.events: List[ContractEvent] = []

        self._lock = threading.RLock()
        self._view: ContractView = LocalDraftView(lead_id=lead_id)
        self._state = ContractState.DRAFT
        self._email_sent = False
        self._email_sent_at: Optional[datetime] = None
        self._version = 0
        # (server record the failure was recorded against, local record with the error)
        self._delivery_failure: Optional[Tuple[DeliveryEmail, DeliveryEmail]] = None

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def view(self) -> ContractView:
        with self._lock:
            return self._view

    @property
    def state(self) -> ContractState:
        with self._lock:
            return self._state

    @property
    def contract(self) -> Optional[Contract]:
        with self._lock:
            if isinstance(self._view, RemoteContractView):
                return self._view.remote
            return None

    @property
    def contract_id(self) -> Optional[str]:
        contract = self.contract
        return contract.id if contract else None

    @property
    def version(self) -> int:
        """Counter bumped on every change to the contract view."""
        with self._lock:
            return self._version

    @property
    def email_sent(self) -> bool:
        with self._lock:
            return self._email_sent

    @property
    def email_sent_at(self) -> Optional[datetime]:
        with self._lock:
            return self._email_sent_at

    def can_transition(self, event: str) -> bool:
        with self._lock:
            return event in TRANSITIONS.get(self._state, {})

    def get_allowed_events(self) -> List[str]:
        with self._lock:
            return list(TRANSITIONS.get(self._state, {}).keys())

    def create(self, draft: ContractDraft) -> Contract:
        """Create the remote contract from a draft.

        A second call while a contract is active returns that contract
        without contacting the service.

        Raises:
            ValidationError: required draft fields are blank.
            RemoteError: the service call failed.
            IncompleteResponseError: the service omitted ``id`` or ``signing_url``.
        """

        with self._lock:
            existing = self.contract
            if existing is not None:
                self._log_event(
                    "CREATE",
                    old_state=self._state,
                    new_state=self._state,
                    metadata={"contract_id": existing.id},
                    success=True,
                    reason="Contract already active",
                )
                return existing

            self._require("CREATE")

            missing = missing_required_fields(draft.fields)
            if missing:
                self._reject("CREATE", f"Missing required fields: {', '.join(missing)}")
                raise ValidationError(missing)

            payload = {
                "leadId": self.lead_id,
                "clientReference": draft.client_reference,
                "selectedPhotoIds": list(draft.selected_photo_ids),
                "contractDetails": fields_to_payload(draft.fields),
            }
            try:
                contract = self.service.create(payload)
            except Exception as e:
                self._reject("CREATE", str(e))
                raise

            absent = [name for name in ("id", "signing_url") if not getattr(contract, name)]
            if absent:
                self._reject("CREATE", f"Incomplete create response: {', '.join(absent)}")
                raise IncompleteResponseError(
                    "Contract was created without " + " and ".join(absent),
                    missing=absent,
                )

            old_state = self._state
            self._swap(contract)
            self._state = ContractState.SIGNED if contract.is_signed else ContractState.CREATED
            self._log_event(
                "CREATE",
                old_state=old_state,
                new_state=self._state,
                metadata={"contract_id": contract.id},
                success=True,
            )
            logger.info("Contract %s created for lead %s", contract.id, self.lead_id)
            return contract

    def send(self, email: Optional[str]) -> Contract:
        """Email the signing link. Safe to call again to resend."""

        with self._lock:
            contract = self._require_contract("SEND")
            self._require("SEND")

            address = (email or "").strip()
            if not address:
                self._reject("SEND", "Customer email is required")
                raise ValidationError(["customer.email"])

            try:
                self.service.send_email(contract.id, address)
            except Exception as e:
                self._reject("SEND", str(e))
                raise

            now = self.clock()
            updated = replace(
                contract,
                status=ContractStatus.SENT,
                signature_status=(
                    SignatureStatus.SENT
                    if contract.signature_status == SignatureStatus.PENDING
                    else contract.signature_status
                ),
                sent_at=now,
            )
            old_state = self._state
            self._swap(updated)
            self._state = TRANSITIONS[old_state]["SEND"]
            self._email_sent = True
            self._email_sent_at = now
            self._log_event(
                "SEND",
                old_state=old_state,
                new_state=self._state,
                metadata={"contract_id": contract.id, "email": address},
                success=True,
            )
            logger.info("Signing link for contract %s sent to %s", contract.id, address)
            return updated

    def reconcile(self, remote: Contract, since_version: Optional[int] = None) -> bool:
        """Replace the local snapshot with the fetched one.

        Args:
            remote: Contract as returned by the service.
            since_version: ``version`` read before the fetch started. If the
                view changed in the meantime the snapshot is older than what
                we hold and is dropped.

        Returns:
            True if the snapshot (or state) changed.
        """

        with self._lock:
            current = self.contract
            if current is None or current.id != remote.id:
                logger.debug("Ignoring snapshot for %s; current contract is %s", remote.id, self.contract_id)
                return False
            if since_version is not None and since_version != self._version:
                logger.debug(
                    "Dropping stale snapshot for %s (fetched at version %s, now %s)",
                    remote.id,
                    since_version,
                    self._version,
                )
                return False
            if self._state == ContractState.COMPLETED:
                return False

            remote = self._keep_delivery_failure(remote)
            if remote == current:
                return False

            self._swap(remote)

            if remote.signature_status == SignatureStatus.SIGNED and self.can_transition("SIGNATURE_OBSERVED"):
                old_state = self._state
                self._state = ContractState.SIGNED
                self._log_event(
                    "SIGNATURE_OBSERVED",
                    old_state=old_state,
                    new_state=self._state,
                    metadata={"contract_id": remote.id},
                    success=True,
                )
                logger.info("Contract %s signed", remote.id)
            return True

    def apply_delivery(self, delivery: DeliveryEmail) -> Contract:
        """Swap in a new delivery sub-record."""

        with self._lock:
            contract = self._require_contract("DELIVERY")
            updated = contract.with_delivery(delivery)
            self._delivery_failure = None
            self._swap(updated)
            return updated

    def record_delivery_failure(self, error: str) -> Contract:
        """Mark the last delivery attempt as failed in the local view.

        The service may not store the error of a manual resend, so the
        failure is held here and laid over fetched snapshots until the
        server's delivery record moves on.
        """

        with self._lock:
            contract = self._require_contract("DELIVERY")
            basis = self._delivery_failure[0] if self._delivery_failure else contract.delivery
            failed = replace(contract.delivery, error=error)
            updated = contract.with_delivery(failed)
            self._delivery_failure = (basis, failed)
            self._swap(updated)
            return updated

    def complete(
        self,
        local_signature_captured: bool = False,
        signature_image: Optional[bytes] = None,
    ) -> Contract:
        """Complete the sale once the gate is open.

        The gate is checked locally before any remote call; the service
        re-validates and may still reject with RemoteError.
        """

        with self._lock:
            contract = self._require_contract("COMPLETE")
            self._require("COMPLETE")

            captured = bool(local_signature_captured or signature_image)
            reasons = unmet_conditions(contract, captured)
            if reasons:
                self._reject("COMPLETE", "; ".join(reasons))
                raise GateNotSatisfiedError(reasons)

            try:
                result = self.service.complete(contract.id, signature_image=signature_image)
            except Exception as e:
                self._reject("COMPLETE", str(e))
                raise

            old_state = self._state
            self._swap(result)
            self._state = ContractState.COMPLETED
            self._log_event(
                "COMPLETE",
                old_state=old_state,
                new_state=self._state,
                metadata={"contract_id": contract.id},
                success=True,
            )
            logger.info("Contract %s completed", contract.id)
            return result

    def set_auth_code(self, code: str) -> Contract:
        with self._lock:
            contract = self._require_contract("SET_AUTH_CODE")
            value = (code or "").strip()
            self.service.set_auth_code(contract.id, value)
            updated = replace(contract, auth_code=value)
            self._swap(updated)
            return updated

    def adopt(
        self,
        contract: Contract,
        email_sent: bool = False,
        email_sent_at: Optional[datetime] = None,
    ) -> None:
        """Take over a contract created in an earlier session (resume)."""

        with self._lock:
            if self._state != ContractState.DRAFT:
                self._reject("ADOPT", "A contract is already active")
                raise InvalidTransitionError("A contract is already active for this lead")
            if not contract.id:
                raise IncompleteResponseError("Cannot adopt a contract without an id", missing=["id"])

            self._swap(contract)
            if contract.signature_status == SignatureStatus.SIGNED:
                self._state = ContractState.SIGNED
            elif email_sent or contract.status == ContractStatus.SENT:
                self._state = ContractState.SENT
            else:
                self._state = ContractState.CREATED
            self._email_sent = bool(email_sent or contract.status != ContractStatus.DRAFT)
            self._email_sent_at = email_sent_at or contract.sent_at
            self._log_event(
                "ADOPT",
                old_state=ContractState.DRAFT,
                new_state=self._state,
                metadata={"contract_id": contract.id},
                success=True,
            )

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _swap(self, contract: Contract) -> None:
        self._view = RemoteContractView(remote=contract)
        self._version += 1

    def _keep_delivery_failure(self, remote: Contract) -> Contract:
        if self._delivery_failure is None:
            return remote
        basis, failed = self._delivery_failure
        if remote.delivery != basis:
            # The server reported a newer attempt.
            self._delivery_failure = None
            return remote
        return remote.with_delivery(failed)

    def _require(self, event: str) -> None:
        if event not in TRANSITIONS.get(self._state, {}):
            self._reject(event, "Invalid transition")
            raise InvalidTransitionError(f"{event} is not allowed in state {self._state.value}")

    def _require_contract(self, event: str) -> Contract:
        contract = self.contract
        if contract is None:
            self._reject(event, "No contract has been created")
            raise InvalidTransitionError(f"{event} requires a created contract")
        return contract

    def _reject(self, event: str, reason: str) -> None:
        self._log_event(
            event,
            old_state=self._state,
            new_state=None,
            metadata={"contract_id": self.contract_id},
            success=False,
            reason=reason,
        )

    def _log_event(
        self,
        event_type: str,
        old_state: Optional[ContractState],
        new_state: Optional[ContractState],
        metadata: Dict[str, Any],
        success: bool,
        reason: Optional[str] = None,
    ) -> None:
        self.events.append(
            ContractEvent(
                event_type=event_type,
                timestamp=self.clock(),
                old_state=old_state.value if isinstance(old_state, ContractState) else None,
                new_state=new_state.value if isinstance(new_state, ContractState) else None,
                metadata=dict(metadata or {}),
                success=success,
                reason=reason,
            )
        )
