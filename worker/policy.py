"""
Notification policy: who gets a message for this event.

Pure functions over literal inputs. Rules, in order:

1. Scope      - my-turn subscribers only when their playerName is the current player
2. Frequency  - 'once' subscribers only if they've never been sent anything for this game
3. Min gap    - nobody twice within 30 minutes, whatever their frequency

The hourly sweep applies the same rules, keeps only 'hourly' subscribers, and
also requires an hour since their last delivery. The 30 and 60 minute guards are
independent; both must pass.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from models import FREQ_HOURLY, FREQ_ONCE, SCOPE_MY_TURN, Subscriber

logger = logging.getLogger(__name__)

MIN_GAP = timedelta(minutes=30)
HOURLY_GAP = timedelta(hours=1)


def matches_scope(sub: Subscriber, current_player: Optional[str]) -> bool:
    if sub.scope != SCOPE_MY_TURN:
        return True
    if not sub.player_name or not current_player:
        return False
    return sub.player_name.strip().lower() == current_player.strip().lower()


def passes_frequency(sub: Subscriber, last_delivery: Optional[datetime]) -> bool:
    if sub.notify_frequency == FREQ_ONCE:
        return last_delivery is None
    return True


def passes_gap(last_delivery: Optional[datetime], now: datetime, gap: timedelta) -> bool:
    return last_delivery is None or now - last_delivery >= gap


def evaluate(
    subscribers,
    current_player: Optional[str],
    last_deliveries: dict[str, datetime],
    now: datetime,
    min_gap: timedelta = MIN_GAP,
) -> list[Subscriber]:
    """
    Filter a patch's subscribers for one turn-change event.

    Args:
        subscribers: the patch's subscriber list
        current_player: resolved player name, None when unknown
        last_deliveries: handle -> time of last successful delivery for this game
        now: evaluation time (same timezone awareness as last_deliveries)
        min_gap: minimum spacing between deliveries to one handle

    Returns:
        Subscribers to notify, in patch order
    """
    selected = []
    for sub in subscribers:
        last = last_deliveries.get(sub.handle)
        if not matches_scope(sub, current_player):
            continue
        if not passes_frequency(sub, last):
            logger.debug(f"[POLICY] {sub.handle}: already notified once")
            continue
        if not passes_gap(last, now, min_gap):
            logger.debug(f"[POLICY] {sub.handle}: last delivery {last.isoformat()} inside min gap")
            continue
        selected.append(sub)
    return selected


def evaluate_hourly(
    subscribers,
    current_player: Optional[str],
    last_deliveries: dict[str, datetime],
    now: datetime,
) -> list[Subscriber]:
    """Hourly reminder selection: standard rules, hourly subscribers, an hour since last delivery."""
    return [
        sub for sub in evaluate(subscribers, current_player, last_deliveries, now)
        if sub.notify_frequency == FREQ_HOURLY
        and passes_gap(last_deliveries.get(sub.handle), now, HOURLY_GAP)
    ]
