"""Main orchestrator: wires the store, engine, collaborators and Telegram together.

Startup runs in three phases (see :meth:`EvalBotApp.run`):

1. Restore the record file. A file that exists but can't be read is fatal.
2. Connect to Telegram, build the responder and the sync engine.
3. Announce ourselves to the admin and poll updates until a stop is
   requested, then drain and confirm the last processed update.
"""

from __future__ import annotations

import asyncio

import aiohttp

from evalbot.collaborators import DocIndex, Playground, Registry
from evalbot.config import Settings, get_settings
from evalbot.errors import EvalBotError, PlatformActionError
from evalbot.inline import InlineAnswerer
from evalbot.lifecycle import LifecycleController
from evalbot.logger import logger, set_level
from evalbot.records import RecordStore
from evalbot.responder import Responder
from evalbot.sync import SyncEngine
from evalbot.telegram import TelegramClient, parse_update
from evalbot.types import InlineQuery


class EvalBotApp:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.telegram: TelegramClient | None = None
        self.engine: SyncEngine | None = None
        self.inline: InlineAnswerer | None = None
        self.lifecycle: LifecycleController | None = None
        self.username = ""
        self._last_update_id: int | None = None

    # --- Admin notices ---

    async def notify_admin(self, text: str) -> None:
        admin_id = self.settings.bot.admin_id
        if admin_id is None or self.telegram is None:
            return
        try:
            await self.telegram.send_message(admin_id, text)
        except PlatformActionError as exc:
            logger.warning("Admin notification failed", err=str(exc))

    async def send_boot_notification(self) -> None:
        await self.notify_admin(f"Start version: {self.settings.bot.version}\nbot @{self.username}")
        logger.info("Boot notification sent")

    # --- Update loop ---

    async def poll_updates(self) -> None:
        """Long-poll Telegram and feed events to the engine until stopped.

        Inline queries go straight to the inline answerer; they have no
        message to keep in sync.

        Polling errors are retried with exponential backoff (1, 2, 4 ...
        seconds); after ``telegram.max_poll_retries`` consecutive failures
        the bot gives up and asks to shut down.
        """
        assert self.telegram and self.engine and self.lifecycle and self.inline
        s = self.settings
        offset: int | None = None
        failures = 0

        while not self.lifecycle.stop_requested:
            try:
                updates = await self.telegram.get_updates(offset, s.telegram.poll_timeout_seconds)
            except PlatformActionError as exc:
                failures += 1
                logger.warning("Polling failed", attempt=failures, err=str(exc))
                await self.notify_admin(f"error: {exc}")
                if failures >= s.telegram.max_poll_retries:
                    logger.error("Giving up polling", attempts=failures)
                    self.lifecycle.request_shutdown("polling failed")
                    return
                await asyncio.sleep(1 << (failures - 1))
                continue
            failures = 0

            for update in updates:
                if self.lifecycle.stop_requested:
                    # Left unconfirmed so Telegram redelivers it after restart
                    return
                update_id = int(update["update_id"])
                offset = update_id + 1
                self._last_update_id = update_id

                event = parse_update(update)
                if event is None:
                    continue
                if isinstance(event, InlineQuery):
                    self.inline.submit(event)
                    continue
                if await self.lifecycle.intercept(event):
                    continue
                self.engine.submit(event)

    async def confirm_last_update(self) -> None:
        if self._last_update_id is None or self.telegram is None:
            return
        try:
            await self.telegram.confirm_update(self._last_update_id)
            logger.info("Confirmed updates", last_update_id=self._last_update_id)
        except PlatformActionError as exc:
            logger.warning("Cannot confirm last update", err=str(exc))

    # --- Run ---

    async def run(self) -> None:
        s = self.settings
        set_level(s.logging.level)
        if s.secrets.telegram_token is None:
            raise EvalBotError(
                "secrets.telegram_token is not configured (set SECRETS__TELEGRAM_TOKEN)"
            )

        store = await asyncio.to_thread(RecordStore.load, s.records_path)

        async with aiohttp.ClientSession(headers={"User-Agent": s.responder.user_agent}) as session:
            self.telegram = TelegramClient(
                session, s.secrets.telegram_token.get_secret_value(), s.telegram.api_url
            )
            me = await self.telegram.get_me()
            self.username = str(me.get("username", ""))
            logger.info("Connected to Telegram", username=self.username)

            registry = Registry(session, s.responder.registry_url)
            docs = DocIndex(s.docs_index_path, s.responder.docs_base_url)
            responder = Responder(
                playground=Playground(session, s.responder.playground_url),
                registry=registry,
                docs=docs,
                timeout_seconds=s.responder.timeout_seconds,
                about_text=s.about_text,
            )
            self.inline = InlineAnswerer(
                registry=registry,
                docs=docs,
                answer=self.telegram.answer_inline_query,
                timeout_seconds=s.responder.timeout_seconds,
            )
            self.engine = SyncEngine(
                store,
                responder.respond,
                self.telegram,
                username=self.username,
                max_age_hours=s.records.max_age_hours,
            )
            self.lifecycle = LifecycleController(
                self.engine,
                self.telegram,
                admin_id=s.bot.admin_id,
                marker_path=s.upgrade_marker_path,
                poll_interval=s.lifecycle.poll_interval_seconds,
                drain_timeout=s.lifecycle.drain_timeout_seconds,
                username=self.username,
                notify_admin=self.notify_admin,
            )
            self.lifecycle.install_signal_handlers()
            self.lifecycle.start_marker_watch()

            await self.send_boot_notification()

            poller = asyncio.create_task(self.poll_updates(), name="poll-updates")
            stopper = asyncio.create_task(self.lifecycle.wait_stop_requested(), name="stop-wait")
            try:
                await asyncio.wait({poller, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopper.cancel()
                poller.cancel()
                for result in await asyncio.gather(poller, stopper, return_exceptions=True):
                    if isinstance(result, Exception):
                        logger.error("Update loop crashed", exc_info=result)

            await self.lifecycle.shutdown()
            await self.inline.join()
            await self.confirm_last_update()
            self.lifecycle.remove_signal_handlers()
