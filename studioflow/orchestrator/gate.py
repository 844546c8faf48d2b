"""Completion gate: payment and signature must both be in place.

The signature may come from the remote record or from a signature captured
in-session that the remote record does not reflect yet; either source counts.
"""

from __future__ import annotations

from typing import List

from studioflow.orchestrator.models import Contract, PaymentStatus, SignatureStatus

PAYMENT_REQUIRED = "Please record payment before completing"
SIGNATURE_REQUIRED = "Please collect signature before completing"


def is_paid(contract: Contract) -> bool:
    return contract.payment_status == PaymentStatus.PAID


def is_signed(contract: Contract, local_signature_captured: bool = False) -> bool:
    return contract.signature_status == SignatureStatus.SIGNED or bool(local_signature_captured)


def can_complete(contract: Contract, local_signature_captured: bool = False) -> bool:
    """Return True if the contract may transition to completed."""

    return is_paid(contract) and is_signed(contract, local_signature_captured)


def unmet_conditions(contract: Contract, local_signature_captured: bool = False) -> List[str]:
    """User-facing reasons the gate is closed (empty when it is open)."""

    reasons: List[str] = []
    if not is_paid(contract):
        reasons.append(PAYMENT_REQUIRED)
    if not is_signed(contract, local_signature_captured):
        reasons.append(SIGNATURE_REQUIRED)
    return reasons
