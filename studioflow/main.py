#!/usr/bin/env python3
"""CLI entry point for the studio contract completion workflow.

Wires settings, the contract service, the draft store and the workflow
orchestrator together, and runs an end-to-end demo against the in-process
contract backend.

Usage:
    python -m studioflow.main --demo                  # Run full demo
    python -m studioflow.main --demo --fail-delivery  # Demo with a failed delivery + resend
    python -m studioflow.main --reset                 # Remove the draft database
"""

from __future__ import annotations

import argparse
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from studioflow.clients.contract_service import ContractService, HttpContractService
from studioflow.clients.local_backend import LocalContractBackend
from studioflow.config import Settings, load_settings
from studioflow.orchestrator.draft_store import DraftAutosaver, DraftStore
from studioflow.orchestrator.lifecycle import GateNotSatisfiedError
from studioflow.orchestrator.workflow import WorkflowOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

DEMO_LEAD: Dict[str, Any] = {
    "id": "lead-demo-001",
    "name": "Amelia Clarke",
    "parent_name": "Sarah Clarke",
    "address": "12 Mill Lane, Leeds",
    "postcode": "LS1 4AB",
    "phone": "07700 900123",
    "email": "amelia.clarke@example.com",
    "is_vip": False,
}

DEMO_PACKAGE: Dict[str, Any] = {
    "name": "Portfolio Plus",
    "price": 495.0,
    "imageCount": 20,
    "includes": ["20 digital images", "Digital Z-Card", "E-Folio (12 months)"],
}

DEMO_INVOICE: Dict[str, Any] = {
    "studioNumber": "3",
    "photographer": "Tom",
    "paymentMethod": "card",
}

DEMO_PHOTOS: Dict[str, str] = {f"photo-{i:02d}": f"IMG_{4100 + i}.jpg" for i in range(1, 6)}


def build_service(settings: Settings, local: bool = False) -> ContractService:
    """Return the HTTP client, or the in-process backend when no API is configured."""

    if settings.uses_remote_api and not local:
        return HttpContractService(
            settings.contracts_api_url,
            token=settings.contracts_api_token,
            timeout_seconds=settings.http_timeout_seconds,
        )
    return LocalContractBackend(
        public_base_url=settings.public_base_url,
        photo_library=DEMO_PHOTOS,
        use_llm=settings.comms_use_llm,
    )


def build_store(settings: Settings, db_path: Optional[str] = None) -> DraftStore:
    path = db_path or settings.draft_db_path
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    return DraftStore(path, ttl=timedelta(hours=settings.draft_ttl_hours))


def build_workflow(
    settings: Settings,
    service: ContractService,
    store: DraftStore,
    **hooks: Any,
) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        service,
        store,
        autosaver=DraftAutosaver(store, delay_seconds=settings.autosave_delay_seconds),
        poll_interval_seconds=settings.poll_interval_seconds,
        **hooks,
    )


def print_section(title: str) -> None:
    """Print a section header."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)
    print()


class DemoRunner:
    """Runs the full sale-completion workflow against the local backend."""

    def __init__(self, settings: Settings, db_path: Optional[str] = None, fail_delivery: bool = False):
        self.settings = settings
        self.fail_delivery = fail_delivery
        self.backend = LocalContractBackend(
            public_base_url=settings.public_base_url,
            photo_library=DEMO_PHOTOS,
            use_llm=settings.comms_use_llm,
        )
        self.store = build_store(settings, db_path)
        # Synchronous autosave and manual polling keep the demo output ordered.
        self.workflow = WorkflowOrchestrator(
            self.backend,
            self.store,
            auto_poll=False,
            on_contract_sent=lambda c: print(f"  [hook] contract sent: {c.signing_url}"),
            on_complete=lambda c: print(f"  [hook] sale complete: {c.id}"),
        )

    def close(self) -> None:
        self.workflow.close()
        self.store.close()

    def run_demo(self) -> None:
        wf = self.workflow
        lead_id = DEMO_LEAD["id"]
        self.store.discard(lead_id)

        print_section("STEP 1: Open workflow and edit the draft")
        phase = wf.open(DEMO_LEAD, DEMO_PACKAGE, DEMO_INVOICE, selected_photo_ids=list(DEMO_PHOTOS))
        print(f"  Phase: {phase.value}")
        print(f"  Invoice number: {wf.draft.get_field('studio', 'invoice_number')}")
        wf.update_field("order", "notes", "Package: Portfolio Plus (demo)")
        wf.update_subtotal(495)
        print(f"  Total inc. VAT: {wf.draft.get_field('payment', 'total')}")
        wf.go_to_review()
        print(f"  Step: {wf.draft.step.value}")

        print_section("STEP 2: Reload and resume the saved draft")
        wf.close()
        phase = wf.open(DEMO_LEAD, DEMO_PACKAGE, DEMO_INVOICE, selected_photo_ids=list(DEMO_PHOTOS))
        print(f"  Phase on re-entry: {phase.value}")
        phase = wf.resume()
        print(f"  Resumed at: {phase.value}")

        print_section("STEP 3: Create and send the contract")
        contract = wf.create_contract()
        print(f"  Contract: {contract.id}")
        print(f"  Signing URL: {contract.signing_url}")
        wf.send_contract()
        print(f"  Emails in outbox: {len(self.backend.outbox)}")

        print_section("STEP 4: Customer signs; poll for status")
        if self.fail_delivery:
            self.backend.fail_next("deliver", "SMTP connection refused")
        self.backend.sign(contract.id)
        while wf.poller.tick():
            pass
        print(f"  Poll fetches: {wf.poller.fetch_count}")
        status = wf.delivery.status()
        print(f"  Delivery: {status.message}")

        if self.fail_delivery:
            result = wf.resend_delivery()
            print(f"  Resent to {result.sent_to} with {result.attachments} attachments")

        print_section("STEP 5: Complete the sale")
        try:
            wf.complete()
        except GateNotSatisfiedError as e:
            for reason in e.reasons:
                print(f"  Blocked: {reason}")

        self.backend.record_payment(contract.id)
        wf.refresh()
        wf.save_auth_code("A1B2C3")
        completed = wf.complete()
        print(f"  Phase: {wf.phase.value}")
        print(f"  Payment: {completed.payment_status.value}, signature: {completed.signature_status.value}")
        print(f"  Draft still stored: {self.store.load(lead_id) is not None}")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Studio contract and invoice completion workflow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m studioflow.main --demo                  Run full demo workflow
  python -m studioflow.main --demo --fail-delivery  Demo a failed delivery and manual resend
  python -m studioflow.main --reset                 Remove the draft database and exit
        """,
    )
    parser.add_argument("--demo", action="store_true", help="Run the full demo workflow")
    parser.add_argument(
        "--fail-delivery",
        action="store_true",
        help="Make the automatic delivery email fail so it has to be resent",
    )
    parser.add_argument("--db", type=str, default=None, help="Draft database path (default: DRAFT_DB_PATH)")
    parser.add_argument("--reset", action="store_true", help="Remove the draft database; exits if used alone")
    args = parser.parse_args()

    settings = load_settings()
    db_path = args.db or settings.draft_db_path

    if args.reset:
        if db_path != ":memory:" and os.path.exists(db_path):
            print(f"Removing database: {db_path}")
            os.remove(db_path)
        else:
            print("No database to remove.")
        if not args.demo:
            return

    runner = DemoRunner(settings, db_path=db_path, fail_delivery=args.fail_delivery)
    try:
        runner.run_demo()
    finally:
        runner.close()


if __name__ == "__main__":
    main()
