"""Lifecycle control: stop signals and graceful drain.

Three things can ask the bot to stop: the admin's ``/shutdown`` command in a
private chat, the upgrade marker file appearing or being touched, and
SIGTERM/SIGINT. All of them funnel into ``request_shutdown``; the app then
calls ``shutdown`` which stops intake, drains in-flight work, flushes the
record store and tells the admin goodbye.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import signal
from collections.abc import Awaitable, Callable
from enum import StrEnum
from pathlib import Path

from evalbot.errors import PlatformActionError
from evalbot.logger import logger
from evalbot.sync import SyncEngine
from evalbot.types import DrainReport, InboundEvent, NewMessage, Outbound
from evalbot.utils import create_background_task


class LifecycleState(StrEnum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


_SHUTDOWN_RE = re.compile(r"^/shutdown(?:@(?P<target>[A-Za-z0-9_]+))?$")


class LifecycleController:
    def __init__(
        self,
        engine: SyncEngine,
        outbound: Outbound,
        *,
        admin_id: int | None,
        marker_path: Path,
        poll_interval: float = 2.0,
        drain_timeout: float = 60.0,
        username: str = "",
        notify_admin: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self._engine = engine
        self._outbound = outbound
        self._admin_id = admin_id
        self._marker_path = marker_path
        self._poll_interval = poll_interval
        self._drain_timeout = drain_timeout
        self._username = username
        self._notify_admin = notify_admin
        self.state = LifecycleState.RUNNING
        self.stop_reason: str | None = None
        self._stop_requested = asyncio.Event()
        self._marker_task: asyncio.Task[None] | None = None
        self._marker_baseline = self._marker_mtime()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    async def wait_stop_requested(self) -> str | None:
        await self._stop_requested.wait()
        return self.stop_reason

    def request_shutdown(self, reason: str) -> None:
        """Ask for a graceful stop. Repeated requests are ignored."""
        if self._stop_requested.is_set():
            logger.debug("Shutdown already requested", reason=reason)
            return
        self.stop_reason = reason
        self._stop_requested.set()
        logger.info("Shutdown requested", reason=reason)

    # --- Admin command ---

    def is_shutdown_command(self, event: InboundEvent) -> bool:
        if not isinstance(event, NewMessage) or not event.is_private:
            return False
        m = _SHUTDOWN_RE.match(event.text.strip())
        if m is None:
            return False
        target = m.group("target")
        return target is None or target.lower() == self._username.lower()

    async def intercept(self, event: InboundEvent) -> bool:
        """Handle ``/shutdown`` from the admin. Returns True if consumed.

        Anyone else's ``/shutdown`` is not consumed and flows on as an
        ordinary message.
        """
        if not self.is_shutdown_command(event):
            return False
        if self._admin_id is None or event.sender_id != self._admin_id:
            logger.info("Ignoring shutdown from non-admin", sender_id=event.sender_id)
            return False

        self.request_shutdown("admin command")
        try:
            await self._outbound.send_message(
                event.chat_id, "start shutting down...", reply_to=event.message_id
            )
        except PlatformActionError as exc:
            logger.warning("Cannot acknowledge shutdown command", err=str(exc))
        return True

    # --- Signals ---

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self.request_shutdown(s.name))

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    # --- Upgrade marker ---

    def _marker_mtime(self) -> float | None:
        try:
            return self._marker_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def check_marker(self) -> bool:
        """True if the marker appeared or was touched since startup."""
        current = self._marker_mtime()
        return current is not None and current != self._marker_baseline

    async def _watch_marker(self) -> None:
        while not self._stop_requested.is_set():
            try:
                if self.check_marker():
                    logger.info("Upgrade marker changed", path=str(self._marker_path))
                    self.request_shutdown("upgrade marker")
                    return
            except OSError as exc:
                logger.warning("Cannot stat upgrade marker", err=str(exc))
            await asyncio.sleep(self._poll_interval)

    def start_marker_watch(self) -> asyncio.Task[None]:
        if self._marker_task is None:
            self._marker_task = create_background_task(
                self._watch_marker(), name="upgrade-marker"
            )
        return self._marker_task

    async def stop_marker_watch(self) -> None:
        if self._marker_task is None:
            return
        self._marker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._marker_task
        self._marker_task = None

    # --- Shutdown ---

    async def shutdown(self) -> DrainReport | None:
        """Drain the engine and say goodbye. Runs at most once.

        Always passes through DRAINING on the way to STOPPED.
        """
        if self.state is not LifecycleState.RUNNING:
            return None
        if not self._stop_requested.is_set():
            self.request_shutdown("stop")

        self.state = LifecycleState.DRAINING
        logger.info("Draining", reason=self.stop_reason, in_flight=self._engine.in_flight)
        await self.stop_marker_watch()
        report = await self._engine.drain(self._drain_timeout)

        if self._notify_admin is not None:
            await self._notify_admin("bye")

        self.state = LifecycleState.STOPPED
        logger.info(
            "Stopped",
            reason=self.stop_reason,
            completed=report.completed,
            abandoned=len(report.abandoned),
        )
        return report
