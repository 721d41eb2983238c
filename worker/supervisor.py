"""
Connection supervisor.

A GameSession holds the live socket for one patch: it reconnects after errors,
dedupes turn frames, hands accepted turns to the pipeline as separate tasks, and
polls the game page every 30 minutes in case the GameOver frame never arrives.

SessionRegistry owns the patch id -> session table. It is only touched from the
event loop, so there is no locking.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Optional

import websocket

from config import Timing
from detector import TurnDeduper, parse_frame
from models import GameOver, Patch, TurnChange, next_event_seq

logger = logging.getLogger(__name__)

RECV_TIMEOUT = 30


class GameSession:
    """Live upstream connection for one patch."""

    def __init__(
        self,
        patch: Patch,
        socket_url: str,
        timing: Timing,
        on_turn: Callable[[Patch, TurnChange, int], Awaitable],
        check_ended: Callable[[str], Awaitable[bool]],
        on_finished: Callable[['GameSession'], None],
    ):
        self.patch = patch
        self.socket_url = socket_url
        self.timing = timing
        self.on_turn = on_turn
        self.check_ended = check_ended
        self.on_finished = on_finished

        self.deduper = TurnDeduper()
        self.last_day: Optional[int] = None
        self.finished = False

        self._stopping = False
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._event_tasks: set[asyncio.Task] = set()
        # One thread per session: recv() blocks for as long as the socket is open
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ws-{patch.game_id}")

    @property
    def game_id(self) -> str:
        return self.patch.game_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        self._task = asyncio.create_task(self._run())
        self._poll_task = asyncio.create_task(self._poll_game_end())

    async def stop(self):
        """Close the socket and cancel the reconnect loop and poll. Idempotent."""
        self._stopping = True
        self._close_socket()
        current = asyncio.current_task()
        tasks = [t for t in (self._task, self._poll_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=False)

    # -------------------------------------------------------------------------
    # Socket
    # -------------------------------------------------------------------------

    def _connect(self):
        """Open the socket (executor thread). Leaves _ws unset if stop() ran meanwhile."""
        ws = websocket.create_connection(self.socket_url, timeout=RECV_TIMEOUT)
        self._ws = ws
        if self._stopping:
            self._close_socket()

    def _close_socket(self):
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            ws.abort()
            ws.shutdown()
        except Exception:
            pass

    async def _run(self):
        loop = asyncio.get_running_loop()
        while not self._stopping:
            try:
                await loop.run_in_executor(self._executor, self._connect)
                if self._ws is None:
                    break
                logger.info(f"[SOCKET] Connected to game {self.game_id} (patch {self.patch.id})")
                await self._read_frames()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._stopping:
                    logger.warning(f"[SOCKET] Game {self.game_id} connection error: {e}")
            finally:
                self._close_socket()

            if self._stopping:
                break
            logger.info(f"[SOCKET] Reconnecting to game {self.game_id} in {self.timing.reconnect_delay}s")
            await asyncio.sleep(self.timing.reconnect_delay)
        logger.info(f"[SOCKET] Session for game {self.game_id} stopped")

    async def _read_frames(self):
        loop = asyncio.get_running_loop()
        while not self._stopping and self._ws is not None:
            try:
                raw = await loop.run_in_executor(self._executor, self._ws.recv)
            except websocket.WebSocketTimeoutException:
                continue
            if not raw:
                # Empty read: server closed the connection
                raise websocket.WebSocketConnectionClosedException("socket closed by server")
            self.handle_frame(raw)

    def handle_frame(self, raw):
        """Parse and route one frame. Turn changes are handled in their own task."""
        frame = parse_frame(raw)
        if isinstance(frame, TurnChange):
            if self.deduper.is_duplicate(self.game_id, frame.day, frame.player_id):
                logger.debug(f"[SOCKET] Duplicate turn frame for {self.game_id} day {frame.day}, dropped")
                return
            if frame.day is not None:
                self.last_day = frame.day
            logger.info(f"[SOCKET] Game {self.game_id}: next turn, day {frame.day} (hint: {frame.player_name})")
            task = asyncio.create_task(self.on_turn(self.patch, frame, next_event_seq()))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_done)
        elif isinstance(frame, GameOver):
            logger.info(f"[SOCKET] Game {self.game_id} is over")
            self._finish()
        else:
            logger.debug(f"[SOCKET] Ignoring frame for {self.game_id}: {frame.raw[:80]}")

    def _event_done(self, task: asyncio.Task):
        self._event_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[SOCKET] Turn handling failed for game {self.game_id}: {error}")

    # -------------------------------------------------------------------------
    # Game end
    # -------------------------------------------------------------------------

    async def _poll_game_end(self):
        while not self._stopping:
            await asyncio.sleep(self.timing.game_end_poll_interval)
            if self._stopping:
                break
            if await self.check_ended(self.game_id):
                logger.info(f"[SOCKET] Page poll says game {self.game_id} has ended")
                self._finish()
                break

    def _finish(self):
        if self.finished:
            return
        self.finished = True
        self._stopping = True
        self._close_socket()
        self.on_finished(self)


SessionFactory = Callable[[Patch, Callable[[GameSession], None]], GameSession]


class SessionRegistry:
    """
    At most one live session per patch id.

    Finished games are remembered so later patch snapshots don't reconnect to
    them.
    """

    def __init__(self, session_factory: SessionFactory, on_game_finished: Callable[[str], None] = None):
        self.session_factory = session_factory
        self.on_game_finished = on_game_finished
        self._sessions: dict[str, GameSession] = {}
        self._finished_games: set[str] = set()
        self._background: set[asyncio.Task] = set()

    def __len__(self):
        return len(self._sessions)

    def get(self, patch_id: str) -> Optional[GameSession]:
        return self._sessions.get(patch_id)

    def sessions(self) -> list[GameSession]:
        return list(self._sessions.values())

    def is_finished(self, game_id: str) -> bool:
        return game_id in self._finished_games

    def start(self, patch: Patch) -> Optional[GameSession]:
        if self.is_finished(patch.game_id):
            logger.debug(f"[PATCHES] Game {patch.game_id} already finished, not starting patch {patch.id}")
            return None
        if patch.id in self._sessions:
            raise RuntimeError(f"session for patch {patch.id} already running")
        session = self.session_factory(patch, self._on_finished)
        self._sessions[patch.id] = session
        session.start()
        logger.info(f"[PATCHES] Started session for patch {patch.id} (game {patch.game_id}, "
                    f"{len(patch.subscribers)} subscriber(s))")
        return session

    async def stop(self, patch_id: str):
        session = self._sessions.pop(patch_id, None)
        if session is not None:
            await session.stop()
            logger.info(f"[PATCHES] Stopped session for patch {patch_id}")

    async def replace(self, patch: Patch) -> Optional[GameSession]:
        """Stop the old session for this patch id before starting the new one."""
        await self.stop(patch.id)
        return self.start(patch)

    async def sync(self, patches: list[Patch]):
        """Reconcile running sessions with a fresh patch snapshot."""
        wanted = {p.id: p for p in patches if p.game_id and p.subscribers}

        for patch_id in list(self._sessions):
            if patch_id not in wanted:
                await self.stop(patch_id)

        for patch_id, patch in wanted.items():
            current = self._sessions.get(patch_id)
            if self.is_finished(patch.game_id):
                if current is not None:
                    await self.stop(patch_id)
                continue
            if current is None:
                self.start(patch)
            elif current.patch.fingerprint != patch.fingerprint:
                logger.info(f"[PATCHES] Subscribers changed for patch {patch_id}, restarting session")
                await self.replace(patch)

    async def close_all(self):
        for patch_id in list(self._sessions):
            await self.stop(patch_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _on_finished(self, session: GameSession):
        self._finished_games.add(session.game_id)
        if self.on_game_finished:
            self.on_game_finished(session.game_id)
        if self._sessions.get(session.patch.id) is session:
            # Called from inside the session's own tasks; stop it from a fresh one
            task = asyncio.create_task(self.stop(session.patch.id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
