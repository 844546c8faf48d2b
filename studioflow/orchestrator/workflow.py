"""Workflow Orchestrator for the contract and invoice completion screen.

Sequences the Draft Store, Lifecycle Controller, Status Poller and Delivery
Dispatcher for one lead:

    Idle -> [ResumePrompt] -> Edit -> Review -> Send -> (poll) -> Completed

The resume prompt is the only branch: it appears when a non-expired draft
exists for the lead, and the user either resumes it verbatim or discards it
and starts from fields pre-populated from the lead, package and invoice.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from studioflow.clients.contract_service import (
    ContractService,
    IncompleteResponseError,
    RemoteError,
    ResendResult,
)
from studioflow.orchestrator.delivery import DeliveryDispatcher
from studioflow.orchestrator.draft_store import DraftAutosaver, DraftStore
from studioflow.orchestrator.gate import can_complete, unmet_conditions
from studioflow.orchestrator.lifecycle import (
    ContractLifecycle,
    InvalidTransitionError,
    ValidationError,
)
from studioflow.orchestrator.models import (
    Contract,
    ContractDraft,
    ContractStatus,
    DraftStep,
    missing_required_fields,
)
from studioflow.orchestrator.poller import StatusPoller
from studioflow.orchestrator.prefill import build_initial_fields
from studioflow.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)


class WorkflowPhase(Enum):
    IDLE = "idle"
    RESUME_PROMPT = "resume_prompt"
    EDIT = "edit"
    REVIEW = "review"
    SEND = "send"
    COMPLETED = "completed"
    CLOSED = "closed"


STEP_PHASES = {
    DraftStep.EDIT: WorkflowPhase.EDIT,
    DraftStep.REVIEW: WorkflowPhase.REVIEW,
    DraftStep.SEND: WorkflowPhase.SEND,
}

ContractHook = Callable[[Contract], None]


class WorkflowOrchestrator:
    """Drives one lead through draft, contract, signature and completion."""

    def __init__(
        self,
        service: ContractService,
        store: DraftStore,
        autosaver: Optional[DraftAutosaver] = None,
        poll_interval_seconds: float = 1.0,
        auto_poll: bool = True,
        clock: Callable[[], Any] = utcnow,
        on_contract_sent: Optional[ContractHook] = None,
        on_complete: Optional[ContractHook] = None,
        on_contract_update: Optional[ContractHook] = None,
        on_back_to_packages: Optional[Callable[[], None]] = None,
        on_back_to_photos: Optional[Callable[[], None]] = None,
    ) -> None:
        self.service = service
        self.store = store
        self.autosaver = autosaver or DraftAutosaver(store, delay_seconds=0)
        self.poll_interval_seconds = poll_interval_seconds
        self.auto_poll = auto_poll
        self.clock = clock

        self.on_contract_sent = on_contract_sent
        self.on_complete = on_complete
        self.on_contract_update = on_contract_update
        self.on_back_to_packages = on_back_to_packages
        self.on_back_to_photos = on_back_to_photos

        self.phase = WorkflowPhase.IDLE
        self.lead: Dict[str, Any] = {}
        self.package: Dict[str, Any] = {}
        self.invoice: Dict[str, Any] = {}
        self.selected_photo_ids: List[str] = []

        self.draft: Optional[ContractDraft] = None
        self.pending_draft: Optional[ContractDraft] = None
        self.lifecycle: Optional[ContractLifecycle] = None
        self.poller: Optional[StatusPoller] = None
        self.delivery: Optional[DeliveryDispatcher] = None
        self.signature_image: Optional[bytes] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    @property
    def lead_id(self) -> Optional[str]:
        lead_id = self.lead.get("id")
        return str(lead_id) if lead_id is not None else None

    def open(
        self,
        lead: Mapping[str, Any],
        package: Optional[Mapping[str, Any]] = None,
        invoice: Optional[Mapping[str, Any]] = None,
        selected_photo_ids: Optional[List[str]] = None,
    ) -> WorkflowPhase:
        """Enter the workflow for a lead.

        Returns RESUME_PROMPT when a saved draft exists, otherwise EDIT.
        """

        if self.phase not in (WorkflowPhase.IDLE, WorkflowPhase.CLOSED, WorkflowPhase.COMPLETED):
            self._teardown()

        if lead.get("id") is None:
            raise ValueError("Lead must have an id")

        self.lead = dict(lead)
        self.package = dict(package or {})
        self.invoice = dict(invoice or {})
        self.selected_photo_ids = [str(p) for p in selected_photo_ids or []]
        self.draft = None
        self.pending_draft = None
        self.lifecycle = None
        self.poller = None
        self.delivery = None
        self.signature_image = None
        self.last_error = None

        saved = self.store.load(self.lead_id)
        if saved is not None:
            self.pending_draft = saved
            self.phase = WorkflowPhase.RESUME_PROMPT
            logger.info(
                "Found saved contract draft for lead %s at step %s (saved %s)",
                self.lead_id,
                saved.step.value,
                to_iso(saved.saved_at),
            )
            return self.phase

        self._start_fresh()
        return self.phase

    def resume(self) -> WorkflowPhase:
        """Restore the saved draft verbatim, including its step."""

        self._require_phase("resume", WorkflowPhase.RESUME_PROMPT)
        draft = self.pending_draft
        self.pending_draft = None
        self.draft = draft
        self._new_contract_session()

        if draft.contract_id:
            self.lifecycle.adopt(
                self._fetch_saved_contract(draft),
                email_sent=draft.email_sent,
                email_sent_at=draft.email_sent_at,
            )

        self.phase = STEP_PHASES[draft.step]
        logger.info("Resumed contract draft for lead %s at step %s", self.lead_id, draft.step.value)

        if self.phase == WorkflowPhase.SEND:
            self._start_polling()
        return self.phase

    def discard(self) -> WorkflowPhase:
        """Drop the saved draft and start fresh from the lead data."""

        self._require_phase("discard", WorkflowPhase.RESUME_PROMPT)
        self.store.discard(self.lead_id)
        self.pending_draft = None
        self._start_fresh()
        return self.phase

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def update_field(self, group: str, name: str, value: Any) -> None:
        self._require_phase("edit", WorkflowPhase.EDIT, WorkflowPhase.REVIEW)
        self.draft.set_field(group, name, value)
        self._touch()

    def update_subtotal(self, value: Any) -> None:
        self._require_phase("edit", WorkflowPhase.EDIT, WorkflowPhase.REVIEW)
        self.draft.set_subtotal(value)
        self._touch()

    def go_to_review(self) -> None:
        self._require_phase("review", WorkflowPhase.EDIT)
        missing = missing_required_fields(self.draft.fields)
        if missing:
            self.last_error = "Please fill in: " + ", ".join(missing)
            raise ValidationError(missing)
        self._set_step(DraftStep.REVIEW)

    def back_to_edit(self) -> None:
        self._require_phase("edit", WorkflowPhase.REVIEW)
        self._set_step(DraftStep.EDIT)

    # ------------------------------------------------------------------
    # Contract actions
    # ------------------------------------------------------------------

    def create_contract(self) -> Contract:
        """Create the remote contract and move to the Send step.

        An incomplete create response sends the user back to Edit.
        """

        self._require_phase("create", WorkflowPhase.EDIT, WorkflowPhase.REVIEW)
        self.last_error = None
        try:
            contract = self.lifecycle.create(self.draft)
        except IncompleteResponseError as e:
            self.last_error = str(e)
            logger.error("Contract creation for lead %s returned an incomplete response: %s", self.lead_id, e)
            self._set_step(DraftStep.EDIT)
            raise
        except (ValidationError, RemoteError) as e:
            self.last_error = str(e)
            raise

        self.draft.contract_id = contract.id
        self.draft.signing_url = contract.signing_url
        self.draft.contract_status = contract.status
        self._set_step(DraftStep.SEND)
        self._start_polling()
        return contract

    def send_contract(self, email: Optional[str] = None) -> Contract:
        """Email the signing link (again, if already sent)."""

        self._require_phase("send", WorkflowPhase.SEND)
        self.last_error = None
        try:
            contract = self.lifecycle.send(email or self.draft.customer_email)
        except (ValidationError, RemoteError, InvalidTransitionError) as e:
            self.last_error = str(e)
            raise

        self.draft.email_sent = True
        self.draft.email_sent_at = self.lifecycle.email_sent_at
        self.draft.contract_status = contract.status
        self._touch()
        self._start_polling()

        if self.on_contract_sent is not None:
            self.on_contract_sent(contract)
        return contract

    def capture_signature(self, capture: Callable[[], Optional[bytes]]) -> bool:
        """Capture a signature in-session. Returns True if one was captured."""

        self._require_phase("capture signature", WorkflowPhase.SEND)
        data = capture()
        if not data:
            return False
        self.signature_image = bytes(data)
        logger.info("Signature captured in-session for contract %s", self.lifecycle.contract_id)
        return True

    def resend_delivery(self, email: Optional[str] = None) -> ResendResult:
        self._require_phase("resend delivery", WorkflowPhase.SEND)
        self.last_error = None
        try:
            result = self.delivery.resend(email)
        except (RemoteError, InvalidTransitionError) as e:
            self.last_error = str(e)
            raise
        self._notify_update()
        return result

    def refresh(self) -> Contract:
        """Fetch the contract once, outside the poller (e.g. after payment)."""

        self._require_phase("refresh", WorkflowPhase.SEND)
        contract_id = self.lifecycle.contract_id
        if contract_id is None:
            raise InvalidTransitionError("No contract to refresh")
        version = self.lifecycle.version
        if self.lifecycle.reconcile(self.service.get(contract_id), since_version=version):
            self._on_contract_change(self.lifecycle.contract)
        return self.lifecycle.contract

    def save_auth_code(self, code: str) -> Contract:
        self._require_phase("save auth code", WorkflowPhase.SEND)
        contract = self.lifecycle.set_auth_code(code)
        self.draft.set_field("payment", "auth_code", contract.auth_code)
        self._touch()
        return contract

    def complete(self) -> Contract:
        """Complete the sale. Blocked by the gate until paid and signed."""

        self._require_phase("complete", WorkflowPhase.SEND)
        self.last_error = None
        try:
            contract = self.lifecycle.complete(
                local_signature_captured=self.signature_image is not None,
                signature_image=self.signature_image,
            )
        except Exception as e:
            self.last_error = str(e)
            raise

        self._stop_polling()
        self.autosaver.cancel()
        self.store.discard(self.lead_id)
        self.phase = WorkflowPhase.COMPLETED
        logger.info("Sale completed for lead %s (contract %s)", self.lead_id, contract.id)

        if self.on_complete is not None:
            self.on_complete(contract)
        return contract

    # ------------------------------------------------------------------
    # Teardown and navigation
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._teardown()

    def switch_lead(
        self,
        lead: Mapping[str, Any],
        package: Optional[Mapping[str, Any]] = None,
        invoice: Optional[Mapping[str, Any]] = None,
        selected_photo_ids: Optional[List[str]] = None,
    ) -> WorkflowPhase:
        self._teardown()
        return self.open(lead, package, invoice, selected_photo_ids)

    def back_to_packages(self) -> None:
        self._teardown()
        if self.on_back_to_packages is not None:
            self.on_back_to_packages()

    def back_to_photos(self) -> None:
        self._teardown()
        if self.on_back_to_photos is not None:
            self.on_back_to_photos()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def contract(self) -> Optional[Contract]:
        return self.lifecycle.contract if self.lifecycle else None

    @property
    def is_polling(self) -> bool:
        return self.poller is not None and self.poller.is_running

    def gate_reasons(self) -> List[str]:
        contract = self.contract
        if contract is None:
            return []
        return unmet_conditions(contract, self.signature_image is not None)

    def can_complete(self) -> bool:
        contract = self.contract
        return contract is not None and can_complete(contract, self.signature_image is not None)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-serialisable state for the host screen."""

        contract = self.contract
        draft = self.draft or self.pending_draft
        delivery = self.delivery.status() if self.delivery and contract else None
        return {
            "phase": self.phase.value,
            "leadId": self.lead_id,
            "step": draft.step.value if draft else None,
            "savedAt": to_iso(draft.saved_at) if draft else None,
            "fields": draft.fields if draft else None,
            "state": self.lifecycle.state.value if self.lifecycle else None,
            "contract": contract.to_api() if contract else None,
            "emailSent": self.lifecycle.email_sent if self.lifecycle else False,
            "signatureCaptured": self.signature_image is not None,
            "canComplete": self.can_complete(),
            "gateReasons": self.gate_reasons(),
            "delivery": (
                {
                    "outcome": delivery.outcome.value,
                    "message": delivery.message,
                    "sentTo": delivery.sent_to,
                    "error": delivery.error,
                    "attachmentCount": delivery.attachment_count,
                    "canResend": delivery.can_resend,
                }
                if delivery
                else None
            ),
            "polling": self.is_polling,
            "error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_phase(self, action: str, *phases: WorkflowPhase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise InvalidTransitionError(f"Cannot {action} in phase {self.phase.value} (expected {allowed})")

    def _start_fresh(self) -> None:
        fields = build_initial_fields(
            self.lead,
            self.package,
            self.invoice,
            invoice_number=self._fetch_invoice_number(),
        )
        self.draft = ContractDraft(
            lead_id=self.lead_id,
            fields=fields,
            step=DraftStep.EDIT,
            saved_at=self.clock(),
            selected_photo_ids=list(self.selected_photo_ids),
        )
        self._new_contract_session()
        self.phase = WorkflowPhase.EDIT

    def _fetch_invoice_number(self) -> str:
        try:
            return self.service.next_invoice_number()
        except (RemoteError, IncompleteResponseError) as e:
            logger.error("Error fetching invoice number: %s", e)
            return ""

    def _fetch_saved_contract(self, draft: ContractDraft) -> Contract:
        try:
            return self.service.get(draft.contract_id)
        except RemoteError as e:
            logger.warning(
                "Could not refresh contract %s on resume, using saved copy: %s",
                draft.contract_id,
                e,
            )
            return Contract(
                id=draft.contract_id,
                lead_id=draft.lead_id,
                signing_url=draft.signing_url,
                status=draft.contract_status,
            )

    def _new_contract_session(self) -> None:
        self.lifecycle = ContractLifecycle(self.service, self.lead_id, clock=self.clock)
        self.delivery = DeliveryDispatcher(self.service, self.lifecycle, clock=self.clock)
        self.poller = StatusPoller(
            self.service,
            self.lifecycle,
            step_getter=self._current_step,
            interval_seconds=self.poll_interval_seconds,
            on_change=self._on_contract_change,
        )
        self.signature_image = None

    def _current_step(self) -> DraftStep:
        return self.draft.step if self.draft else DraftStep.EDIT

    def _set_step(self, step: DraftStep) -> None:
        self.draft.step = step
        self.phase = STEP_PHASES[step]
        self._touch()

    def _touch(self) -> None:
        self.draft.saved_at = self.clock()
        self._autosave()

    def _autosave(self) -> None:
        draft = self.draft
        if draft is None or self.phase in (WorkflowPhase.COMPLETED, WorkflowPhase.CLOSED):
            return
        if draft.contract_status == ContractStatus.SIGNED:
            self.autosaver.cancel()
            self.store.discard(draft.lead_id)
            return
        if not str(draft.get_field("customer", "customer_name") or "").strip():
            return
        self.autosaver.schedule(draft)

    def _on_contract_change(self, contract: Contract) -> None:
        if self.draft is not None and self.draft.contract_id == contract.id:
            self.draft.contract_status = contract.status
            self._touch()
        if self.delivery is not None:
            self.delivery.observe()
        self._notify_update()

    def _notify_update(self) -> None:
        contract = self.contract
        if contract is not None and self.on_contract_update is not None:
            self.on_contract_update(contract)

    def _start_polling(self) -> None:
        if self.poller is not None and self.auto_poll:
            self.poller.start()

    def _stop_polling(self) -> None:
        if self.poller is not None:
            self.poller.stop()

    def _teardown(self) -> None:
        self._stop_polling()
        if self.phase != WorkflowPhase.COMPLETED:
            self.autosaver.flush()
        if self.phase != WorkflowPhase.IDLE:
            logger.info("Closed contract workflow for lead %s", self.lead_id)
        self.phase = WorkflowPhase.CLOSED
