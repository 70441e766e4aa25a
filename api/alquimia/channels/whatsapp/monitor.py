"""Periodic WhatsApp socket health check."""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from alquimia.channels.whatsapp.metrics import whatsapp_liveness_failures_total
from alquimia.channels.whatsapp.state import ConnectionPhase
from alquimia.channels.whatsapp.transport import READY_STATE_CLOSED, READY_STATE_OPEN

if TYPE_CHECKING:
    from alquimia.channels.whatsapp.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Samples the transport ready-state while the connection is open.

    A silently dead socket never emits a close event, so the monitor counts
    consecutive non-open samples and, at the threshold, stops itself and asks
    the supervisor for a forced reconnect.

    Attributes:
        supervisor: Owner of the socket and connection state
        consecutive_failures: Non-open samples since the last healthy one
    """

    def __init__(self, supervisor: "ConnectionSupervisor"):
        self.supervisor = supervisor
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start (or restart) the periodic check."""
        self.stop()
        self.consecutive_failures = 0
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"WhatsApp keepalive started "
            f"(every {self.supervisor.config.keepalive_interval_seconds:g}s)"
        )

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.info("WhatsApp keepalive stopped")

    def check(self) -> bool:
        """Run one liveness sample.

        Returns:
            True when the failure threshold has been reached
        """
        state = self.supervisor.state
        socket = self.supervisor.socket
        ready_state = socket.ready_state if socket is not None else READY_STATE_CLOSED

        if ready_state != READY_STATE_OPEN:
            self.consecutive_failures += 1
            state.connected = False
            whatsapp_liveness_failures_total.inc()
            logger.warning(
                f"WhatsApp socket not open (state: {ready_state}), "
                f"failure {self.consecutive_failures}/"
                f"{self.supervisor.config.liveness_failure_threshold}"
            )
            return (
                self.consecutive_failures
                >= self.supervisor.config.liveness_failure_threshold
            )

        if self.consecutive_failures:
            logger.info("WhatsApp socket healthy again")
        self.consecutive_failures = 0
        if state.phase == ConnectionPhase.OPEN:
            state.connected = True
        state.touch()
        return False

    async def _run(self) -> None:
        interval = self.supervisor.config.keepalive_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                if self.check():
                    await self._escalate()
                    return
            except Exception:
                logger.exception("WhatsApp keepalive check failed")

    async def _escalate(self) -> None:
        failures = self.consecutive_failures
        self.consecutive_failures = 0
        # Detach first: the reconnect path stops the monitor and must not
        # cancel the task it is running in.
        self._task = None
        logger.error(
            f"WhatsApp socket not open for {failures} consecutive checks; "
            "forcing reconnect"
        )
        self.supervisor.state.record_error(
            "liveness", f"Socket not open for {failures} consecutive checks"
        )
        await self.supervisor.force_reconnect()
