"""
Player roster and game display-name lookup.

Both come from scraping the AWBW game page. Results are memoized in-process and
cached in the store (gamePlayers / games) so a restart doesn't re-scrape every
game.
"""

import logging
import re
from typing import Optional

import requests

from store import GAME_PLAYERS, GAMES, BaseStore

logger = logging.getLogger(__name__)

USER_AGENT = 'com-tower/worker (community tool)'

PLAYER_LINK_PATTERN = re.compile(r'profile\.php\?username=([A-Za-z0-9_]+)')
COUNTRY_PATTERN = re.compile(r'countries_code["\']?\s*:\s*["\']([a-z]{2,3})["\']', re.IGNORECASE)
TITLE_PATTERN = re.compile(r'<title[^>]*>([^<]+)</title>', re.IGNORECASE)
HEADING_PATTERN = re.compile(r'<h[12][^>]*>([^<]+)</h[12]>', re.IGNORECASE)
MAP_PATTERN = re.compile(r'prevmaps\.php\?maps_id=\d+[^>]*>([^<]+)<', re.IGNORECASE)


def fetch_game_page(page_url: str, timeout: float = 15) -> str:
    """
    GET the game page, bypassing caches.

    Raises:
        requests.RequestException: on transport errors or a non-2xx status
    """
    resp = requests.get(
        page_url,
        headers={'User-Agent': USER_AGENT, 'Cache-Control': 'no-cache'},
        timeout=(5, timeout),
    )
    resp.raise_for_status()
    return resp.text


def _unique(values) -> list[str]:
    seen = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen


def parse_players(html: str) -> dict:
    """Player usernames and country codes in page order, de-duplicated."""
    return {
        'players': _unique(PLAYER_LINK_PATTERN.findall(html)),
        'countries': _unique(c.lower() for c in COUNTRY_PATTERN.findall(html)),
    }


def clean_game_name(name: str) -> str:
    name = re.sub(r'\s+AWBW\b', '', name, flags=re.IGNORECASE)
    name = re.sub(r'^\s*Game\s*-?\s*', '', name, flags=re.IGNORECASE)
    name = re.sub(r'-\s*$', '', name)
    return name.strip()


def extract_game_name(html: str) -> str:
    match = TITLE_PATTERN.search(html) or HEADING_PATTERN.search(html)
    return clean_game_name(match.group(1)) if match else ''


def extract_map_name(html: str) -> str:
    match = MAP_PATTERN.search(html)
    return match.group(1).strip() if match else ''


class GameInfoCache:
    """Memoized roster and name lookups, backed by the store."""

    def __init__(self, store: BaseStore, link_for, timeout: float = 15):
        """
        Args:
            store: persistence for the gamePlayers / games caches
            link_for: callable game_id -> game page URL
            timeout: read timeout for page fetches
        """
        self.store = store
        self.link_for = link_for
        self.timeout = timeout
        self._players: dict[str, list[str]] = {}
        self._names: dict[str, str] = {}

    def get_players(self, game_id: str) -> list[str]:
        """Player usernames for a game. Empty list if the page can't be read."""
        if game_id in self._players:
            return self._players[game_id]

        cached = self.store.get(GAME_PLAYERS, game_id) or {}
        if cached.get('players'):
            self._players[game_id] = list(cached['players'])
            return self._players[game_id]

        try:
            info = parse_players(fetch_game_page(self.link_for(game_id), self.timeout))
        except Exception as e:
            logger.warning(f"[GAME INFO] Could not fetch roster for {game_id}: {e}")
            return []

        if info['players']:
            self.store.set(GAME_PLAYERS, game_id, info)
            self._players[game_id] = info['players']
        return info['players']

    def get_game_name(self, game_id: str) -> str:
        """Display name for a game, falling back to 'Game {id}'."""
        if game_id in self._names:
            return self._names[game_id]

        cached = self.store.get(GAMES, game_id) or {}
        name: Optional[str] = cached.get('gameName')

        if not name:
            try:
                html = fetch_game_page(self.link_for(game_id), self.timeout)
                name = extract_game_name(html)
                if name:
                    self.store.set(GAMES, game_id, {
                        'gameId': game_id,
                        'gameName': name,
                        'mapName': extract_map_name(html),
                    })
            except Exception as e:
                logger.warning(f"[GAME INFO] Could not fetch name for {game_id}: {e}")

        if not name:
            return f"Game {game_id}"
        self._names[game_id] = name
        return name

    def forget(self, game_id: str):
        """Drop memoized entries for a finished game."""
        self._players.pop(game_id, None)
        self._names.pop(game_id, None)
