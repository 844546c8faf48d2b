"""Remote Contract service: abstract contract and REST client.

The contracts API is the authority for a contract once it has been
created. This module defines:
- The remote error taxonomy (RemoteError, IncompleteResponseError).
- ContractService, the operations the workflow consumes.
- HttpContractService, a `requests`-based client for the contracts REST API.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests

from studioflow.orchestrator.models import Contract

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """Transport or server failure talking to the contracts API. Retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class IncompleteResponseError(Exception):
    """The server reported success but omitted required identifiers."""

    def __init__(self, message: str, missing: Optional[list] = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


@dataclass(frozen=True)
class ResendResult:
    """Outcome of a manual delivery resend."""

    sent_to: str
    attachments: int
    photo_count: int = 0


class ContractService(ABC):
    """Operations exposed by the remote contract authority."""

    @abstractmethod
    def create(self, payload: Mapping[str, Any]) -> Contract:
        """Create a contract; the result carries ``id`` and ``signing_url``."""

    @abstractmethod
    def get(self, contract_id: str) -> Contract:
        """Fetch the authoritative contract."""

    @abstractmethod
    def send_email(self, contract_id: str, email: str) -> None:
        """Email the signing link to the customer."""

    @abstractmethod
    def resend_delivery(self, contract_id: str, email: Optional[str] = None) -> ResendResult:
        """Send the delivery email (signed PDF + selected images) again."""

    @abstractmethod
    def set_auth_code(self, contract_id: str, code: str) -> None:
        """Save the card terminal authorisation code on the contract."""

    @abstractmethod
    def complete(self, contract_id: str, signature_image: Optional[bytes] = None) -> Contract:
        """Mark the sale complete; the server re-validates payment and signature.

        ``signature_image`` is a signature captured in-session that the
        contract record does not reflect yet.
        """

    @abstractmethod
    def next_invoice_number(self) -> str:
        """Next free invoice number for today."""


class HttpContractService(ContractService):
    """Client for the ``/api/contracts`` REST routes."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 20.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("CONTRACTS_API_URL is not configured.")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # ContractService
    # ------------------------------------------------------------------

    def create(self, payload: Mapping[str, Any]) -> Contract:
        data = self._request("POST", "/api/contracts/create", json=dict(payload))
        contract_data = data.get("contract")
        if not isinstance(contract_data, dict):
            raise IncompleteResponseError(
                "Contract was not created - no contract data returned",
                missing=["contract"],
            )
        return Contract.from_api(contract_data)

    def get(self, contract_id: str) -> Contract:
        data = self._request("GET", f"/api/contracts/{contract_id}")
        contract_data = data.get("contract") if isinstance(data.get("contract"), dict) else data
        return Contract.from_api(contract_data)

    def send_email(self, contract_id: str, email: str) -> None:
        data = self._request("POST", f"/api/contracts/send/{contract_id}", json={"email": email})
        if data.get("emailSent") is False and data.get("emailError"):
            raise RemoteError(f"Contract email failed: {data['emailError']}")

    def resend_delivery(self, contract_id: str, email: Optional[str] = None) -> ResendResult:
        body: Dict[str, Any] = {"email": email} if email else {}
        data = self._request("POST", f"/api/contracts/{contract_id}/resend-delivery", json=body)
        return ResendResult(
            sent_to=str(data.get("sentTo") or email or ""),
            attachments=int(data.get("attachments") or 0),
            photo_count=int(data.get("photoCount") or 0),
        )

    def set_auth_code(self, contract_id: str, code: str) -> None:
        self._request("PATCH", f"/api/contracts/{contract_id}/auth-code", json={"authCode": code})

    def complete(self, contract_id: str, signature_image: Optional[bytes] = None) -> Contract:
        body: Dict[str, Any] = {"createSale": True}
        if signature_image:
            body["signatureData"] = base64.b64encode(signature_image).decode("ascii")
        data = self._request("POST", f"/api/contracts/{contract_id}/complete", json=body)
        contract_data = data.get("contract")
        if isinstance(contract_data, dict):
            return Contract.from_api(contract_data)
        return self.get(contract_id)

    def next_invoice_number(self) -> str:
        data = self._request("GET", "/api/contracts/next-invoice-number")
        number = data.get("invoiceNumber")
        if not number:
            raise IncompleteResponseError("No invoice number returned", missing=["invoiceNumber"])
        return str(number)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=json,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise RemoteError(f"{method} {path} failed: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.ok:
            message = data.get("message") or data.get("error") or f"HTTP {response.status_code}"
            logger.warning("%s %s -> %s: %s", method, path, response.status_code, message)
            raise RemoteError(str(message), status_code=response.status_code)

        return data
