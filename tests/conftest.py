"""
Shared pytest fixtures for the contract completion workflow tests.

Everything runs against the in-process LocalContractBackend and an in-memory
draft store, both driven by a controllable clock so TTLs and timestamps are
deterministic.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest

from studioflow.clients.local_backend import LocalContractBackend
from studioflow.orchestrator.draft_store import DraftStore
from studioflow.orchestrator.lifecycle import ContractLifecycle
from studioflow.orchestrator.models import ContractDraft, default_fields
from studioflow.orchestrator.workflow import WorkflowOrchestrator


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 9, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def lead() -> Dict[str, Any]:
    return {
        "id": "lead-42",
        "name": "Amelia Clarke",
        "parent_name": "Sarah Clarke",
        "address": "12 Mill Lane, Leeds",
        "postcode": "LS1 4AB",
        "phone": "07700 900123",
        "email": "amelia@example.com",
        "is_vip": True,
    }


@pytest.fixture
def package() -> Dict[str, Any]:
    return {
        "name": "Portfolio Plus",
        "price": 500,
        "imageCount": 20,
        "includes": ["20 digital images", "Digital Z-Card", "E-Folio (12 months)"],
    }


@pytest.fixture
def invoice() -> Dict[str, Any]:
    return {"studioNumber": "3", "photographer": "Tom"}


@pytest.fixture
def photo_library() -> Dict[str, str]:
    return {"p1": "IMG_0001.jpg", "p2": "IMG_0002.jpg", "p3": "IMG_0003.jpg"}


@pytest.fixture
def backend(clock: FakeClock, photo_library: Dict[str, str]) -> LocalContractBackend:
    return LocalContractBackend(
        public_base_url="https://crm.example.com",
        photo_library=photo_library,
        clock=clock,
    )


@pytest.fixture
def store(clock: FakeClock):
    draft_store = DraftStore(":memory:", clock=clock)
    yield draft_store
    draft_store.close()


@pytest.fixture
def draft(lead: Dict[str, Any], clock: FakeClock) -> ContractDraft:
    fields = default_fields()
    fields["customer"]["customer_name"] = lead["name"]
    fields["customer"]["email"] = lead["email"]
    return ContractDraft(
        lead_id=lead["id"],
        fields=fields,
        saved_at=clock(),
        selected_photo_ids=["p1", "p2"],
    )


@pytest.fixture
def lifecycle(backend: LocalContractBackend, lead: Dict[str, Any], clock: FakeClock) -> ContractLifecycle:
    return ContractLifecycle(backend, lead["id"], clock=clock)


@pytest.fixture
def workflow(backend: LocalContractBackend, store: DraftStore, clock: FakeClock):
    wf = WorkflowOrchestrator(backend, store, auto_poll=False, clock=clock)
    yield wf
    wf.close()
