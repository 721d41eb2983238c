"""
Turn-change detection.

- parse_frame: classify a raw socket frame as TurnChange / GameOver / UnknownFrame
- TurnDeduper: drop repeated (game, day, player) frames within a short window
- TurnChangeDetector: scrape the game page for whose turn it really is

The socket's player name is only a hint. AWBW pages are scraped with several
patterns because the markup has changed over time; if none match, the current
player is unknown (None) and my-turn subscribers simply don't match.
"""

import json
import logging
import re
import time
from typing import Callable, Optional

from game_info import fetch_game_page
from models import DetectedTurn, Frame, GameOver, TurnChange, UnknownFrame

logger = logging.getLogger(__name__)

DEDUP_WINDOW_SECONDS = 5.0
DEDUP_RETENTION_SECONDS = 60.0

# Ordered: first match wins
CURRENT_PLAYER_PATTERNS = [
    ('currentplayer JS var', re.compile(r'currentplayer["\']?\s*[:=]\s*["\']([^"\']+)["\']')),
    ('currentPlayer camelCase', re.compile(r'currentPlayer["\']?\s*[:=]\s*["\']([^"\']+)["\']', re.IGNORECASE)),
    ('Current Turn link', re.compile(r'Current\s+Turn[\s\S]{0,200}?profile\.php\?username=([^"\'>\s]+)', re.IGNORECASE)),
    ("name's turn", re.compile(
        r'profile\.php\?username=([A-Za-z0-9_]+)[\s\S]{0,60}?'
        r'(?:\'|’|&rsquo;|&#8217;|&#039;|&apos;)s\s+turn',
        re.IGNORECASE,
    )),
]
CURRENT_TURN_PATTERN = re.compile(r'let\s+currentTurn\s*=\s*(\d+)')
PLAYERS_INFO_PATTERN = re.compile(r'let\s+playersInfo\s*=\s*(\{[\s\S]*?\});')

GAME_OVER_PATTERNS = [
    re.compile(r'\bgame\s+over\b', re.IGNORECASE),
    re.compile(r'\bgame\s+has\s+ended\b', re.IGNORECASE),
    re.compile(r'\bhas\s+won\s+the\s+game\b', re.IGNORECASE),
    re.compile(r'let\s+gameEndDate\s*=\s*["\'][^"\']+["\']'),
]


# =============================================================================
# Frames
# =============================================================================

def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_frame(raw) -> Frame:
    """
    Classify one socket frame.

    Accepts both {"type": "NextTurn", ...} and {"NextTurn": {...}} envelopes.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return UnknownFrame(raw=str(raw)[:200])
    if not isinstance(data, dict):
        return UnknownFrame(raw=str(raw)[:200])

    kind = data.get('type')
    body = data
    if kind is None and len(data) == 1:
        kind, body = next(iter(data.items()))
        if not isinstance(body, dict):
            body = {}

    if kind == 'NextTurn':
        player_id = body.get('nextPId')
        return TurnChange(
            day=_as_int(body.get('day')),
            player_id=str(player_id) if player_id is not None else None,
            player_name=(body.get('nextPlayerName') or '').strip() or None,
        )
    if kind == 'GameOver':
        return GameOver()
    return UnknownFrame(raw=str(raw)[:200])


class TurnDeduper:
    """Sliding-window filter for repeated turn frames."""

    def __init__(
        self,
        window: float = DEDUP_WINDOW_SECONDS,
        retention: float = DEDUP_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.retention = retention
        self.clock = clock
        self._seen: dict[tuple, float] = {}

    def is_duplicate(self, game_id: str, day: Optional[int], player_id: Optional[str]) -> bool:
        """Record the event; True if the same key was first seen within the window."""
        now = self.clock()
        self._seen = {k: t for k, t in self._seen.items() if now - t < self.retention}

        key = (game_id, day, player_id)
        first_seen = self._seen.get(key)
        if first_seen is not None and now - first_seen < self.window:
            return True
        self._seen[key] = now
        return False


# =============================================================================
# Page scraping
# =============================================================================

def scrape_current_player(html: str) -> Optional[str]:
    """Whose turn it is according to the page, or None."""
    for name, pattern in CURRENT_PLAYER_PATTERNS:
        match = pattern.search(html)
        if match and match.group(1).strip():
            logger.debug(f"[DETECT] Current player matched via {name}")
            return match.group(1).strip()

    turn_match = CURRENT_TURN_PATTERN.search(html)
    info_match = PLAYERS_INFO_PATTERN.search(html)
    if turn_match and info_match:
        try:
            players_info = json.loads(info_match.group(1))
            entry = players_info.get(turn_match.group(1)) or {}
            username = entry.get('users_username')
            if username:
                logger.debug("[DETECT] Current player matched via playersInfo JSON")
                return username
        except (ValueError, AttributeError):
            pass
    return None


def is_game_over(html: str) -> bool:
    return any(p.search(html) for p in GAME_OVER_PATTERNS)


class TurnChangeDetector:
    """Resolves the authoritative current player for a game. Blocking; run in an executor."""

    def __init__(self, link_for, timeout: float = 15, attempts: int = 3, retry_delay: float = 0.5):
        self.link_for = link_for
        self.timeout = timeout
        self.attempts = attempts
        self.retry_delay = retry_delay

    def resolve_current_player(self, game_id: str) -> Optional[str]:
        for attempt in range(self.attempts):
            try:
                html = fetch_game_page(self.link_for(game_id), self.timeout)
                name = scrape_current_player(html)
                if name:
                    return name
                logger.debug(f"[DETECT] No current player on page for {game_id} (attempt {attempt + 1})")
            except Exception as e:
                logger.warning(f"[DETECT] Scrape failed for {game_id} (attempt {attempt + 1}): {e}")
            if attempt < self.attempts - 1:
                time.sleep(self.retry_delay)
        return None

    def detect(self, game_id: str, event: TurnChange) -> DetectedTurn:
        """Cross-check a turn frame against the page."""
        scraped = self.resolve_current_player(game_id)
        if scraped is None:
            logger.warning(f"[DETECT] Current player unknown for {game_id} (socket hint: {event.player_name})")
        elif event.player_name and event.player_name.lower() != scraped.lower():
            logger.info(f"[DETECT] Socket says {event.player_name}, page says {scraped} - using page")
        return DetectedTurn(game_id=game_id, day=event.day, player_name=scraped, hint=event.player_name)

    def has_game_ended(self, game_id: str) -> bool:
        """Periodic poll check. False when the page can't be read."""
        try:
            return is_game_over(fetch_game_page(self.link_for(game_id), self.timeout))
        except Exception as e:
            logger.warning(f"[DETECT] Game-end check failed for {game_id}: {e}")
            return False
