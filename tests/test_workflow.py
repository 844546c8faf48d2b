"""End-to-end tests for the workflow orchestrator against the local backend."""

from __future__ import annotations

import logging
from unittest import mock

import pytest

from studioflow.clients.contract_service import ContractService, IncompleteResponseError
from studioflow.orchestrator.lifecycle import (
    ContractState,
    GateNotSatisfiedError,
    InvalidTransitionError,
    ValidationError,
)
from studioflow.orchestrator.models import Contract, ContractStatus, DraftStep
from studioflow.orchestrator.workflow import WorkflowOrchestrator, WorkflowPhase


@pytest.fixture
def opened(workflow, lead, package, invoice):
    workflow.open(lead, package, invoice, ["p1", "p2"])
    return workflow


def _to_send_step(wf):
    wf.go_to_review()
    wf.create_contract()
    wf.send_contract()
    return wf


# ---------------------------------------------------------------------------
# Entry, resume and discard
# ---------------------------------------------------------------------------


def test_fresh_open_prefills_fields(workflow, store, lead, package, invoice):
    phase = workflow.open(lead, package, invoice, ["p1", "p2"])

    assert phase == WorkflowPhase.EDIT
    assert workflow.draft.get_field("studio", "invoice_number") == "INV 090126-01"
    assert workflow.draft.get_field("customer", "customer_name") == "Amelia Clarke"
    assert workflow.draft.selected_photo_ids == ["p1", "p2"]
    # Nothing is written until the first edit.
    assert store.load(lead["id"]) is None


def test_open_requires_lead_id(workflow):
    with pytest.raises(ValueError):
        workflow.open({"name": "No Id"})


def test_invoice_number_failure_is_logged(workflow, backend, lead, caplog):
    backend.fail_next("invoice_number", "CRM offline")

    with caplog.at_level(logging.ERROR, logger="studioflow.orchestrator.workflow"):
        workflow.open(lead)

    assert workflow.phase == WorkflowPhase.EDIT
    assert workflow.draft.get_field("studio", "invoice_number") == ""
    assert "Error fetching invoice number" in caplog.text


def test_invoice_numbers_increase_per_day(workflow, backend, lead, package, invoice):
    workflow.open(lead, package, invoice, ["p1"])
    workflow.go_to_review()
    workflow.create_contract()

    workflow.switch_lead({"id": "lead-43", "name": "Ben Ortiz"})
    assert workflow.draft.get_field("studio", "invoice_number") == "INV 090126-02"


def test_edit_is_autosaved(opened, store, lead):
    opened.update_field("customer", "postcode", "LS2 9JT")

    saved = store.load(lead["id"])
    assert saved.get_field("customer", "postcode") == "LS2 9JT"
    assert saved.step == DraftStep.EDIT


def test_draft_without_customer_name_is_not_saved(workflow, store):
    workflow.open({"id": "walk-in"})
    workflow.update_field("customer", "phone", "07700 900456")
    assert store.load("walk-in") is None


def test_update_subtotal_recalculates_totals(opened):
    opened.update_subtotal(250)
    assert opened.draft.get_field("payment", "vat_amount") == 50.0
    assert opened.draft.get_field("payment", "total") == 300.0


def test_resume_restores_step_and_fields(opened, clock, lead, package, invoice):
    opened.update_field("order", "notes", "Wants prints too")
    opened.go_to_review()
    opened.close()

    clock.advance(minutes=10)
    assert opened.open(lead, package, invoice) == WorkflowPhase.RESUME_PROMPT
    assert opened.snapshot()["step"] == "review"

    assert opened.resume() == WorkflowPhase.REVIEW
    assert opened.draft.get_field("order", "notes") == "Wants prints too"
    assert opened.lifecycle.state == ContractState.DRAFT


def test_expired_draft_is_not_offered(opened, clock, lead):
    opened.update_field("customer", "postcode", "LS2 9JT")
    opened.close()

    clock.advance(hours=25)
    assert opened.open(lead) == WorkflowPhase.EDIT
    assert opened.draft.get_field("customer", "postcode") == "LS1 4AB"


def test_discard_starts_fresh(opened, store, lead, package, invoice):
    opened.update_field("customer", "postcode", "LS2 9JT")
    opened.close()
    opened.open(lead, package, invoice)

    assert opened.discard() == WorkflowPhase.EDIT
    assert store.load(lead["id"]) is None
    assert opened.draft.get_field("customer", "postcode") == "LS1 4AB"


def test_resume_outside_prompt_is_rejected(opened):
    with pytest.raises(InvalidTransitionError):
        opened.resume()


# ---------------------------------------------------------------------------
# Review and contract creation
# ---------------------------------------------------------------------------


def test_review_requires_customer_name(opened):
    opened.update_field("customer", "customer_name", "")

    with pytest.raises(ValidationError):
        opened.go_to_review()
    assert opened.phase == WorkflowPhase.EDIT
    assert "customer.customer_name" in opened.last_error


def test_back_to_edit_from_review(opened):
    opened.go_to_review()
    opened.back_to_edit()
    assert opened.phase == WorkflowPhase.EDIT
    opened.update_field("customer", "phone", "0113 000 0000")


def test_create_moves_to_send_step(opened, store, lead):
    opened.go_to_review()
    contract = opened.create_contract()

    assert opened.phase == WorkflowPhase.SEND
    saved = store.load(lead["id"])
    assert saved.step == DraftStep.SEND
    assert saved.contract_id == contract.id
    assert saved.signing_url == contract.signing_url

    snap = opened.snapshot()
    assert snap["state"] == "CREATED"
    assert snap["canComplete"] is False
    assert len(snap["gateReasons"]) == 2
    assert snap["delivery"]["outcome"] == "pending"


def test_incomplete_create_response_returns_to_edit(store, clock, lead):
    service = mock.Mock(spec=ContractService)
    service.next_invoice_number.return_value = "INV 090126-01"
    service.create.return_value = Contract(id="c-1", signing_url=None)
    wf = WorkflowOrchestrator(service, store, auto_poll=False, clock=clock)
    wf.open(lead)
    wf.go_to_review()

    with pytest.raises(IncompleteResponseError):
        wf.create_contract()

    assert wf.phase == WorkflowPhase.EDIT
    assert wf.draft.step == DraftStep.EDIT
    assert wf.contract is None
    assert "signing_url" in wf.last_error
    wf.close()


def test_send_hook_receives_sent_contract(backend, store, clock, lead):
    sent = []
    wf = WorkflowOrchestrator(backend, store, auto_poll=False, clock=clock, on_contract_sent=sent.append)
    wf.open(lead)
    _to_send_step(wf)

    assert [c.status for c in sent] == [ContractStatus.SENT]
    assert backend.outbox[0].to_addrs == [lead["email"]]
    assert wf.draft.email_sent is True
    wf.close()


def test_send_can_override_recipient(opened, backend):
    opened.go_to_review()
    opened.create_contract()
    opened.send_contract("parent@example.com")
    assert backend.outbox[-1].to_addrs == ["parent@example.com"]


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


def test_full_flow_through_gate_to_completion(backend, store, clock, lead, package, invoice):
    completed = []
    updates = []
    wf = WorkflowOrchestrator(
        backend,
        store,
        auto_poll=False,
        clock=clock,
        on_complete=completed.append,
        on_contract_update=updates.append,
    )
    wf.open(lead, package, invoice, ["p1", "p2"])
    _to_send_step(wf)

    with pytest.raises(GateNotSatisfiedError) as exc:
        wf.complete()
    assert len(exc.value.reasons) == 2
    assert wf.phase == WorkflowPhase.SEND

    backend.sign(wf.contract.id)
    wf.refresh()
    assert wf.lifecycle.state == ContractState.SIGNED
    assert wf.snapshot()["delivery"]["outcome"] == "sent"
    # A signed contract is never kept as a resumable draft.
    assert store.load(lead["id"]) is None

    with pytest.raises(GateNotSatisfiedError):
        wf.complete()

    backend.record_payment(wf.contract.id)
    wf.refresh()
    wf.save_auth_code("829301")
    assert wf.can_complete() is True

    contract = wf.complete()

    assert wf.phase == WorkflowPhase.COMPLETED
    assert completed == [contract]
    assert updates
    assert store.load(lead["id"]) is None
    with pytest.raises(InvalidTransitionError):
        wf.complete()
    wf.close()


def test_in_session_signature_satisfies_gate(opened, backend, store, lead):
    opened.go_to_review()
    opened.create_contract()

    assert opened.capture_signature(lambda: None) is False
    assert opened.capture_signature(lambda: b"\x89PNG signature") is True
    assert opened.gate_reasons() == ["Please record payment before completing"]

    backend.record_payment(opened.contract.id)
    opened.refresh()
    opened.complete()

    assert opened.phase == WorkflowPhase.COMPLETED
    assert store.load(lead["id"]) is None


def test_complete_outside_send_step_is_rejected(opened):
    with pytest.raises(InvalidTransitionError):
        opened.complete()


def test_resend_delivery_through_workflow(opened, backend):
    backend.fail_next("deliver", "SMTP timeout")
    _to_send_step(opened)
    backend.sign(opened.contract.id)
    opened.refresh()
    assert opened.snapshot()["delivery"]["outcome"] == "failed"

    result = opened.resend_delivery()

    assert result.attachments == 2
    assert opened.snapshot()["delivery"]["outcome"] == "sent"


# ---------------------------------------------------------------------------
# Resume mid-contract and navigation
# ---------------------------------------------------------------------------


def test_resume_with_contract_returns_to_send(opened, lead):
    _to_send_step(opened)
    contract_id = opened.contract.id
    opened.close()

    assert opened.open(lead) == WorkflowPhase.RESUME_PROMPT
    assert opened.resume() == WorkflowPhase.SEND
    assert opened.contract.id == contract_id
    assert opened.lifecycle.state == ContractState.SENT
    assert opened.lifecycle.email_sent is True


def test_resume_falls_back_to_saved_contract_when_fetch_fails(opened, backend, lead):
    opened.go_to_review()
    created = opened.create_contract()
    opened.close()

    backend.fail_next("get", "Gateway timeout")
    opened.open(lead)
    opened.resume()

    assert opened.phase == WorkflowPhase.SEND
    assert opened.contract.id == created.id
    assert opened.contract.signing_url == created.signing_url


def test_switch_lead_stops_polling(backend, store, clock, lead):
    wf = WorkflowOrchestrator(backend, store, poll_interval_seconds=60, clock=clock)
    wf.open(lead)
    wf.go_to_review()
    wf.create_contract()
    assert wf.is_polling is True

    wf.switch_lead({"id": "lead-43", "name": "Ben Ortiz"})

    assert wf.is_polling is False
    assert wf.lead_id == "lead-43"
    assert wf.phase == WorkflowPhase.EDIT
    assert store.load(lead["id"]).step == DraftStep.SEND
    wf.close()


def test_back_navigation_closes_workflow(backend, store, clock, lead):
    calls = []
    wf = WorkflowOrchestrator(
        backend,
        store,
        auto_poll=False,
        clock=clock,
        on_back_to_packages=lambda: calls.append("packages"),
        on_back_to_photos=lambda: calls.append("photos"),
    )
    wf.open(lead)
    wf.back_to_packages()
    assert wf.phase == WorkflowPhase.CLOSED

    wf.open(lead)
    wf.back_to_photos()
    assert calls == ["packages", "photos"]

    with pytest.raises(InvalidTransitionError):
        wf.update_field("customer", "phone", "x")
