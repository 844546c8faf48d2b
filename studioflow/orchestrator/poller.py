"""Status synchronization poller.

Fetches the authoritative contract on a fixed interval while the workflow is
on the Send step and either the signature or the delivery result is still
outstanding. The stop condition is evaluated every tick; there is no
iteration cap and no backoff. Fetch failures are logged and the loop keeps
ticking. A snapshot fetched while a user action changed the contract is
dropped; the next tick fetches again.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from studioflow.clients.contract_service import ContractService, RemoteError
from studioflow.orchestrator.lifecycle import ContractLifecycle
from studioflow.orchestrator.models import Contract, ContractStatus, DraftStep

logger = logging.getLogger(__name__)


class StatusPoller:
    """Cancellable interval task bound to one contract id."""

    def __init__(
        self,
        service: ContractService,
        lifecycle: ContractLifecycle,
        step_getter: Callable[[], DraftStep],
        interval_seconds: float = 1.0,
        on_change: Optional[Callable[[Contract], None]] = None,
    ) -> None:
        self.service = service
        self.lifecycle = lifecycle
        self.step_getter = step_getter
        self.interval_seconds = interval_seconds
        self.on_change = on_change
        self.fetch_count = 0

        self._target_id: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def target_id(self) -> Optional[str]:
        return self._target_id

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def should_poll(self) -> bool:
        """Send step, and signature or delivery result still outstanding."""

        contract = self.lifecycle.contract
        if contract is None or self.step_getter() != DraftStep.SEND:
            return False
        return contract.status != ContractStatus.SIGNED or contract.delivery.sent is None

    def tick(self) -> bool:
        """Run one fetch-and-reconcile cycle.

        Returns:
            True if another tick should be scheduled.
        """

        if not self.should_poll():
            return False

        if self._target_id is None:
            self._target_id = self.lifecycle.contract_id
        if self.lifecycle.contract_id != self._target_id:
            logger.info(
                "Stopping poller: target %s is no longer the current contract (%s)",
                self._target_id,
                self.lifecycle.contract_id,
            )
            return False

        self.fetch_count += 1
        version = self.lifecycle.version
        try:
            remote = self.service.get(self._target_id)
        except RemoteError as e:
            logger.warning("Status poll for contract %s failed: %s", self._target_id, e)
            return True

        if self.lifecycle.reconcile(remote, since_version=version):
            logger.debug(
                "Contract %s updated: status=%s payment=%s delivery=%s",
                remote.id,
                remote.status.value,
                remote.payment_status.value,
                remote.delivery.outcome.value,
            )
            if self.on_change is not None:
                self.on_change(self.lifecycle.contract or remote)

        return self.should_poll()

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick until the stop condition clears or `stop` is called.

        Returns the number of ticks performed.
        """

        ticks = 0
        while not self._stop.is_set():
            keep_going = self.tick()
            ticks += 1
            if not keep_going:
                break
            if max_ticks is not None and ticks >= max_ticks:
                break
            if self._stop.wait(self.interval_seconds):
                break
        return ticks

    def start(self) -> bool:
        """Start the loop on a daemon thread. Returns False if nothing to poll."""

        if self.is_running:
            return True
        if not self.should_poll():
            return False

        self._target_id = self.lifecycle.contract_id
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run,
            name=f"status-poller-{self._target_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info("Polling contract %s every %.1fs", self._target_id, self.interval_seconds)
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the loop and wait for the thread to exit."""

        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        if thread is not None:
            logger.info("Stopped polling contract %s", self._target_id)
