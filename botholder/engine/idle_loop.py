"""Idle prevention: hold crouch/jump while connected and heal lost state.

Servers kick clients that stay idle. While a session is connected the
loop holds the configured persistent control states and re-asserts any
that were silently dropped (respawn, teleport, server resync).
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .client import JUMP, SNEAK, GameClient
from .models import LogCategory, SessionRecord, SessionStatus

logger = logging.getLogger(__name__)

LogFn = Callable[[LogCategory, str], None]


def _controls_for(record: SessionRecord) -> list[str]:
    idle = record.config.idle
    controls = []
    if idle.crouch:
        controls.append(SNEAK)
    if idle.jump:
        controls.append(JUMP)
    return controls


class IdlePreventionLoop:
    """At most one supervisory task per session; activate() replaces it."""

    def __init__(
        self,
        record: SessionRecord,
        log: LogFn,
        check_interval: float = 5.0,
    ) -> None:
        self._record = record
        self._log = log
        self._check_interval = check_interval
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def activate(self, client: GameClient) -> bool:
        """Assert the configured controls and start the supervisory tick.

        Returns False (and starts nothing) when idle prevention is off.
        """
        self.cancel()
        controls = _controls_for(self._record)
        name = self._record.config.display_name
        if not controls:
            self._log(LogCategory.INFO, f"Idle prevention disabled for {name}")
            return False

        labels = " + ".join(
            "crouch" if c == SNEAK else "jump" for c in controls
        )
        self._log(LogCategory.INFO, f"Idle prevention for {name} enabled: {labels}")
        try:
            for control in controls:
                client.set_control_state(control, True)
        except Exception as exc:
            self._log(
                LogCategory.ERROR,
                f"Failed to enable idle prevention for {name}: {exc}",
            )

        self._task = asyncio.create_task(self._run(client, controls))
        return True

    def cancel(self) -> bool:
        """Cancel the running tick, if any. Returns True if one was active."""
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def clear_controls(self, client: GameClient) -> None:
        """Release every persistent control this loop may have asserted."""
        if client.ended:
            return
        client.set_control_state(SNEAK, False)
        client.set_control_state(JUMP, False)

    def _healthy(self, client: GameClient) -> bool:
        return (
            not client.ended
            and self._record.should_reconnect
            and self._record.status is SessionStatus.CONNECTED
        )

    async def _run(self, client: GameClient, controls: list[str]) -> None:
        name = self._record.config.display_name
        while True:
            await asyncio.sleep(self._check_interval)

            if not self._healthy(client):
                self._log(
                    LogCategory.INFO,
                    f"Idle prevention stopped - {name} unavailable",
                )
                if self._task is asyncio.current_task():
                    self._task = None
                return

            try:
                for control in controls:
                    if not client.get_control_state(control):
                        logger.debug("Re-asserting %s for %s", control, name)
                        client.set_control_state(control, True)
            except Exception as exc:
                self._log(
                    LogCategory.ERROR,
                    f"Failed to restore idle prevention for {name}: {exc}",
                )
