"""Tests for the REST contract service client (requests session mocked)."""

from __future__ import annotations

import base64
from unittest import mock

import pytest
import requests

from studioflow.clients.contract_service import (
    HttpContractService,
    IncompleteResponseError,
    RemoteError,
)
from studioflow.orchestrator.models import ContractStatus, PaymentStatus


def _response(payload=None, status_code=200):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


@pytest.fixture
def service(session):
    return HttpContractService("https://crm.example.com/", token="secret", timeout_seconds=5, session=session)


def test_requires_base_url():
    with pytest.raises(ValueError):
        HttpContractService("")


def test_create_posts_payload_with_auth(service, session):
    session.request.return_value = _response(
        {"contract": {"id": "c-1", "signingUrl": "https://crm.example.com/sign-contract/abc", "status": "draft"}}
    )

    contract = service.create({"leadId": "lead-42", "contractDetails": {"customerName": "Amelia"}})

    assert contract.id == "c-1"
    assert contract.signing_url.endswith("/sign-contract/abc")
    session.request.assert_called_once_with(
        "POST",
        "https://crm.example.com/api/contracts/create",
        json={"leadId": "lead-42", "contractDetails": {"customerName": "Amelia"}},
        headers={"Content-Type": "application/json", "Authorization": "Bearer secret"},
        timeout=5,
    )


def test_create_without_contract_is_incomplete(service, session):
    session.request.return_value = _response({"success": True})

    with pytest.raises(IncompleteResponseError) as exc:
        service.create({"leadId": "lead-42"})
    assert exc.value.missing == ["contract"]


def test_error_response_uses_server_message(service, session):
    session.request.return_value = _response({"message": "Contract not found"}, status_code=404)

    with pytest.raises(RemoteError) as exc:
        service.get("missing")

    assert exc.value.message == "Contract not found"
    assert exc.value.status_code == 404


def test_error_response_without_body(service, session):
    session.request.return_value = _response(None, status_code=503)

    with pytest.raises(RemoteError, match="HTTP 503"):
        service.get("c-1")


def test_transport_failure_becomes_remote_error(service, session):
    session.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(RemoteError, match="connection refused") as exc:
        service.get("c-1")
    assert exc.value.status_code is None


def test_get_accepts_wrapped_or_bare_contract(service, session):
    session.request.return_value = _response({"id": "c-1", "status": "signed", "paymentStatus": "paid"})
    bare = service.get("c-1")

    session.request.return_value = _response({"contract": {"id": "c-1", "status": "signed"}})
    wrapped = service.get("c-1")

    assert bare.status == ContractStatus.SIGNED
    assert bare.payment_status == PaymentStatus.PAID
    assert wrapped.id == "c-1"


def test_send_email_reports_mail_failure(service, session):
    session.request.return_value = _response({"success": True, "emailSent": False, "emailError": "Bounced"})

    with pytest.raises(RemoteError, match="Bounced"):
        service.send_email("c-1", "amelia@example.com")


def test_resend_delivery_result(service, session):
    session.request.return_value = _response({"sentTo": "amelia@example.com", "attachments": 3, "photoCount": 2})

    result = service.resend_delivery("c-1")

    assert result.sent_to == "amelia@example.com"
    assert result.attachments == 3
    assert session.request.call_args.kwargs["json"] == {}


def test_complete_sends_signature_and_falls_back_to_fetch(service, session):
    session.request.side_effect = [
        _response({"success": True}),
        _response({"contract": {"id": "c-1", "status": "signed", "paymentStatus": "paid"}}),
    ]

    contract = service.complete("c-1", signature_image=b"sig")

    assert contract.payment_status == PaymentStatus.PAID
    first, second = session.request.call_args_list
    assert first.args == ("POST", "https://crm.example.com/api/contracts/c-1/complete")
    assert first.kwargs["json"] == {"createSale": True, "signatureData": base64.b64encode(b"sig").decode("ascii")}
    assert second.args == ("GET", "https://crm.example.com/api/contracts/c-1")


def test_set_auth_code_uses_patch(service, session):
    session.request.return_value = _response({"success": True})
    service.set_auth_code("c-1", "829301")
    assert session.request.call_args.args[0] == "PATCH"
    assert session.request.call_args.kwargs["json"] == {"authCode": "829301"}


def test_next_invoice_number(service, session):
    session.request.return_value = _response({"invoiceNumber": "INV 090126-03"})
    assert service.next_invoice_number() == "INV 090126-03"

    session.request.return_value = _response({})
    with pytest.raises(IncompleteResponseError):
        service.next_invoice_number()
