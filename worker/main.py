#!/usr/bin/env python3
"""
Com Tower Worker
Watches AWBW games and sends Signal turn alerts to their subscribers.

Architecture:
- Patch loop: polls the patches collection, keeps one live session per patch
- Game sessions: upstream socket per game, turn frames -> notification pipeline
- Hourly loop: reminders for subscribers who asked for them
- Audit log: every attempt recorded in the messages collection
"""

import asyncio
import logging
import os
import signal
import sys
import threading
from datetime import timedelta

from audit import AuditLogger
from config import Settings, load_settings
from detector import TurnChangeDetector
from dispatch import DeliveryDispatcher, SignalBridge
from errors import ConfigError
from game_info import GameInfoCache
from models import Patch
from pipeline import NotificationPipeline, run_store
from render import MessageRenderer
from store import BaseStore, JsonStore
from supervisor import GameSession, SessionRegistry

# Configure logging - DEBUG level shows frame and policy details
log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


# =============================================================================
# Worker
# =============================================================================

class Worker:
    """Ties the store, sessions and notification pipeline together."""

    def __init__(self, settings: Settings, store: BaseStore = None):
        self.settings = settings
        self.store = store or JsonStore(settings.data_dir)
        timing = settings.timing

        self.bridge = SignalBridge(settings.bridge_url, settings.bot_number, timing.send_timeout)
        self.audit = AuditLogger(self.store)
        self.game_info = GameInfoCache(self.store, settings.game_link, timing.scrape_timeout)
        self.dispatcher = DeliveryDispatcher(self.bridge, self.store)
        self.pipeline = NotificationPipeline(
            detector=TurnChangeDetector(settings.game_link, timing.scrape_timeout),
            game_info=self.game_info,
            renderer=MessageRenderer(settings.render_url, timing.render_timeout, settings.include_image),
            dispatcher=self.dispatcher,
            audit=self.audit,
            link_for=settings.game_link,
        )
        self.registry = SessionRegistry(self._make_session, on_game_finished=self._game_finished)

        # Shutdown coordination
        self._shutdown_event = asyncio.Event()

    def _game_finished(self, game_id: str):
        self.game_info.forget(game_id)
        self.dispatcher.forget_game(game_id)

    def _make_session(self, patch: Patch, on_finished) -> GameSession:
        return GameSession(
            patch,
            self.settings.socket_url(patch.game_id),
            self.settings.timing,
            on_turn=self.pipeline.handle_turn,
            check_ended=self.pipeline.has_game_ended,
            on_finished=on_finished,
        )

    async def run(self):
        """Main entry point - runs the patch and hourly loops as independent tasks."""
        logger.info("Starting Com Tower Worker")
        logger.info(f"Data dir: {self.settings.data_dir}")
        logger.info(f"Bridge: {self.settings.bridge_url} as {self.settings.bot_number}")
        logger.info(f"Renderer: {self.settings.render_url or 'disabled (local template)'}")

        await self._check_bridge()

        try:
            await asyncio.gather(
                self._patch_loop(),
                self._hourly_loop(),
            )
        except asyncio.CancelledError:
            logger.info("Tasks cancelled - shutting down gracefully")
        finally:
            self._shutdown_event.set()
            logger.info("Shutting down...")
            self.dispatcher.cancel_all()
            await self.registry.close_all()

    def request_shutdown(self):
        """Request graceful shutdown of all loops."""
        self._shutdown_event.set()

    async def _sleep_or_shutdown(self, seconds: float) -> bool:
        """Wait out one loop interval. True means the worker is stopping."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _check_bridge(self):
        """Log whether the Signal bridge answers. Never fatal."""
        loop = asyncio.get_running_loop()
        try:
            about = await loop.run_in_executor(None, self.bridge.about)
            logger.info(f"[SEND] Bridge reachable (version {about.get('version', '?')})")
        except Exception as e:
            logger.warning(f"[SEND] Bridge not reachable at startup: {e}")

    async def _patch_loop(self):
        """Independent loop that keeps sessions in step with the patches collection."""
        logger.info("[PATCHES] Loop started")
        loop = asyncio.get_running_loop()
        while not self._shutdown_event.is_set():
            try:
                patches = await loop.run_in_executor(None, self.store.list_patches)
                await self.registry.sync(patches)
            except Exception as e:
                # Keep the current sessions; try again next poll
                logger.error(f"[PATCHES] Snapshot failed: {e}")
            if await self._sleep_or_shutdown(self.settings.timing.patch_poll_interval):
                break
        logger.info("[PATCHES] Loop stopped")

    async def _hourly_loop(self):
        """Independent loop for hourly reminders."""
        logger.info("[HOURLY] Loop started")
        while not self._shutdown_event.is_set():
            if await self._sleep_or_shutdown(self.settings.timing.hourly_sweep_interval):
                break
            await self.sweep_hourly()
            await self.prune_audit()
        logger.info("[HOURLY] Loop stopped")

    async def sweep_hourly(self):
        sessions = self.registry.sessions()
        if not sessions:
            return
        logger.info(f"[HOURLY] Sweeping {len(sessions)} session(s)")
        results = await asyncio.gather(
            *(self.pipeline.run_hourly(s.patch, s.last_day) for s in sessions),
            return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error(f"[HOURLY] Game {session.game_id} failed: {result}")

    async def prune_audit(self):
        retention = timedelta(days=self.settings.retention_days)
        try:
            await run_store(self.audit.prune, retention)
        except Exception as e:
            logger.error(f"[AUDIT] Prune failed: {e}")


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """
    Run the worker until interrupted.

    Ctrl+C starts a graceful stop with a 5 second deadline; a second Ctrl+C, or
    the deadline passing, exits the process immediately.
    """
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    worker = Worker(settings)
    deadline = None

    def hard_exit():
        logger.warning("Graceful stop did not finish, exiting now")
        os._exit(1)

    def on_sigint(signum, frame):
        nonlocal deadline
        if deadline is not None:
            logger.warning("Interrupted again, exiting now")
            hard_exit()
        logger.info("Stopping worker (Ctrl+C again to exit immediately, forced in 5s)...")
        deadline = threading.Timer(5.0, hard_exit)
        deadline.daemon = True
        deadline.start()
        # Unwinds asyncio.run(); Worker.run's finally cancels sends and closes sessions
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, on_sigint)

    try:
        asyncio.run(worker.run())
    except KeyboardInterrupt:
        pass
    finally:
        if deadline is not None:
            deadline.cancel()


if __name__ == "__main__":
    main()
