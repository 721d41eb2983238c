"""
Notification pipeline.

One linear path per event, shared by turn changes and the hourly sweep:

    detect -> evaluate -> audit(processing) -> render -> audit(rendered, sending)
           -> dispatch -> audit(terminal)

An empty policy result stops the pipeline before anything is rendered or
recorded. Each event carries a sequence number taken when it was accepted, so a
slow older event can never overtake a newer one at dispatch.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from audit import AuditLogger
from detector import TurnChangeDetector
from dispatch import DeliveryDispatcher
from game_info import GameInfoCache
from models import SOURCE_HOURLY, SOURCE_TURN, DetectedTurn, DispatchResult, Patch, TurnChange, next_event_seq
from policy import evaluate, evaluate_hourly
from render import MessageRenderer
from store import utcnow

logger = logging.getLogger(__name__)

# Page scrapes (current player, roster, game name, game-end poll)
_scrape_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="scrape")

# Audit reads and writes; one thread keeps each record's transitions in order
_store_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="store")


async def run_blocking(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_scrape_executor, functools.partial(func, *args))


async def run_store(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_store_executor, functools.partial(func, *args))


class NotificationPipeline:
    def __init__(
        self,
        detector: TurnChangeDetector,
        game_info: GameInfoCache,
        renderer: MessageRenderer,
        dispatcher: DeliveryDispatcher,
        audit: AuditLogger,
        link_for: Callable[[str], str],
        clock: Callable = utcnow,
    ):
        self.detector = detector
        self.game_info = game_info
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.audit = audit
        self.link_for = link_for
        self.clock = clock

    async def handle_turn(self, patch: Patch, event: TurnChange, seq: int = None) -> Optional[DispatchResult]:
        """Notify a patch's subscribers about one (already de-duplicated) turn change."""
        if seq is None:
            seq = next_event_seq()
        turn = await run_blocking(self.detector.detect, patch.game_id, event)
        logger.info(f"[DETECT] Game {patch.game_id} day {turn.day}: {turn.display_name or 'unknown player'}")
        return await self._notify(patch, turn, SOURCE_TURN, evaluate, seq)

    async def run_hourly(self, patch: Patch, day: Optional[int] = None) -> Optional[DispatchResult]:
        """Hourly reminder for one patch, against a fresh scrape of the page."""
        seq = next_event_seq()
        player = await run_blocking(self.detector.resolve_current_player, patch.game_id)
        turn = DetectedTurn(game_id=patch.game_id, day=day, player_name=player)
        return await self._notify(patch, turn, SOURCE_HOURLY, evaluate_hourly, seq)

    async def has_game_ended(self, game_id: str) -> bool:
        return await run_blocking(self.detector.has_game_ended, game_id)

    async def _notify(
        self, patch: Patch, turn: DetectedTurn, source: str, select, seq: int
    ) -> Optional[DispatchResult]:
        last = await run_store(self.audit.last_deliveries, patch.game_id)
        candidates = select(patch.subscribers, turn.player_name, last, self.clock())
        if not candidates:
            logger.info(f"[POLICY] Game {patch.game_id} ({source}): no subscribers to notify")
            return None
        logger.info(f"[POLICY] Game {patch.game_id} ({source}): notifying {', '.join(s.handle for s in candidates)}")

        message_id = await run_store(self.audit.start, patch.id, turn, source, candidates)
        try:
            players, game_name = await asyncio.gather(
                run_blocking(self.game_info.get_players, patch.game_id),
                run_blocking(self.game_info.get_game_name, patch.game_id),
            )
            rendered = await self.renderer.render_variants(
                patch.game_id,
                turn.day,
                turn.display_name,
                players,
                game_name,
                self.link_for(patch.game_id),
                need_classic=any(not s.fun_enabled for s in candidates),
                need_fun=any(s.fun_enabled for s in candidates),
            )
            await run_store(self.audit.rendered, message_id, rendered, candidates)

            await run_store(self.audit.sending, message_id)
            result = await self.dispatcher.dispatch(
                patch.id, patch.game_id, candidates, rendered, turn.player_name, seq
            )
        except Exception as e:
            await run_store(self.audit.fail, message_id, str(e))
            raise

        await run_store(self.audit.finish, message_id, patch.game_id, result)
        return result
