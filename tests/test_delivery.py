"""Tests for observing and resending the post-signature delivery email."""

from __future__ import annotations

import pytest

from studioflow.clients.contract_service import RemoteError
from studioflow.clients.local_backend import LocalContractBackend
from studioflow.orchestrator.delivery import DeliveryDispatcher
from studioflow.orchestrator.lifecycle import ContractLifecycle, InvalidTransitionError
from studioflow.orchestrator.models import DeliveryOutcome


def _signed(lifecycle, backend, draft):
    lifecycle.create(draft)
    lifecycle.send("amelia@example.com")
    backend.sign(lifecycle.contract_id)
    lifecycle.reconcile(backend.get(lifecycle.contract_id))
    return lifecycle


@pytest.fixture
def quiet_backend(clock, photo_library):
    """Backend that does not deliver automatically on signature."""
    return LocalContractBackend("https://crm.example.com", photo_library, clock=clock, auto_deliver=False)


def test_pending_delivery_then_manual_resend(quiet_backend, draft, lead, clock):
    lifecycle = _signed(ContractLifecycle(quiet_backend, lead["id"], clock=clock), quiet_backend, draft)
    dispatcher = DeliveryDispatcher(quiet_backend, lifecycle, clock=clock)

    status = dispatcher.status()
    assert status.outcome == DeliveryOutcome.PENDING
    assert status.message == "Sending delivery email..."
    assert status.can_resend is True

    result = dispatcher.resend("amelia@example.com")

    delivery = lifecycle.contract.delivery
    assert result.sent_to == "amelia@example.com"
    assert result.attachments == 2
    assert delivery.sent is True
    assert delivery.error is None
    assert delivery.attachment_count == 2
    assert delivery.resent_count == 1
    assert dispatcher.status().message == "Delivery email sent to amelia@example.com"


def test_failed_auto_delivery_can_be_resent(backend, lifecycle, draft):
    backend.fail_next("deliver", "SMTP timeout")
    _signed(lifecycle, backend, draft)
    dispatcher = DeliveryDispatcher(backend, lifecycle)

    status = dispatcher.status()
    assert status.outcome == DeliveryOutcome.FAILED
    assert status.message == "Delivery email failed: SMTP timeout"

    dispatcher.resend()

    assert dispatcher.outcome() == DeliveryOutcome.SENT
    assert lifecycle.contract.delivery.sent is True
    assert lifecycle.contract.delivery.error is None
    assert backend.outbox[-1].to_addrs == ["amelia@example.com"]


def test_failed_resend_records_error_and_keeps_sent_flag(backend, lifecycle, draft):
    _signed(lifecycle, backend, draft)
    dispatcher = DeliveryDispatcher(backend, lifecycle)
    assert lifecycle.contract.delivery.sent is True

    backend.fail_next("resend", "Mail server timeout")
    with pytest.raises(RemoteError, match="Mail server timeout"):
        dispatcher.resend()

    delivery = lifecycle.contract.delivery
    assert delivery.sent is True
    assert delivery.error == "Mail server timeout"
    assert dispatcher.outcome() == DeliveryOutcome.FAILED


def test_each_resend_is_a_fresh_send(backend, lifecycle, draft):
    _signed(lifecycle, backend, draft)
    dispatcher = DeliveryDispatcher(backend, lifecycle)
    delivered = len(backend.outbox)

    dispatcher.resend()
    dispatcher.resend()

    assert len(backend.outbox) == delivered + 2
    assert lifecycle.contract.delivery.resent_count == 2


def test_resend_requires_signed_contract(backend, lifecycle, draft):
    lifecycle.create(draft)
    dispatcher = DeliveryDispatcher(backend, lifecycle)

    with pytest.raises(InvalidTransitionError):
        dispatcher.resend("amelia@example.com")
    assert backend.calls["resend"] == 0
    assert dispatcher.status().can_resend is False


def test_resend_without_attachments_fails(clock, draft, lead):
    backend = LocalContractBackend("https://crm.example.com", photo_library={}, clock=clock)
    lifecycle = _signed(ContractLifecycle(backend, lead["id"], clock=clock), backend, draft)
    dispatcher = DeliveryDispatcher(backend, lifecycle)

    assert dispatcher.status().error == "No attachments available to send"
    with pytest.raises(RemoteError, match="No attachments available to send"):
        dispatcher.resend()


def test_observe_reports_each_outcome_change_once(backend, lifecycle, draft):
    seen = []
    dispatcher = DeliveryDispatcher(backend, lifecycle, on_outcome=seen.append)
    lifecycle.create(draft)

    dispatcher.observe()
    assert seen == []

    backend.sign(lifecycle.contract_id)
    lifecycle.reconcile(backend.get(lifecycle.contract_id))
    assert dispatcher.observe() == DeliveryOutcome.SENT
    dispatcher.observe()

    assert [s.outcome for s in seen] == [DeliveryOutcome.SENT]
    assert seen[0].attachment_count == 2
