"""
Message rendering adapter.

Turn text (and optionally an image) comes from the web app's render endpoint.
Whatever goes wrong there, the subscriber still gets a plain-text notice with
the game link: a degraded message beats no message.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import requests

from models import RenderedMessage

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 2000

_render_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="render")


def fallback_text(day: Optional[int], player_name: Optional[str], game_name: str, link: str) -> str:
    """Local template used when the render endpoint is unavailable."""
    parts = [
        'Next turn is up.',
        f'Day {day}.' if day else '',
        f"{player_name}, you're up." if player_name else '',
        game_name or '',
        link,
    ]
    return ' '.join(p for p in parts if p).strip()


def finish_text(text: str, game_name: str, link: str) -> str:
    """Append the game-name tag and permanent link unless the renderer already did."""
    text = text.strip()
    if len(text) > MAX_TEXT_LENGTH:
        text = text[:MAX_TEXT_LENGTH - 3].rstrip() + '...'
    if game_name and f"({game_name})" not in text:
        text += f" ({game_name})"
    if link not in text:
        text += f" {link}"
    return text


class MessageRenderer:
    """Calls the render endpoint; falls back to fallback_text on any failure."""

    def __init__(self, render_url: Optional[str], timeout: float = 20, include_image: bool = False):
        self.render_url = render_url
        self.timeout = timeout
        self.include_image = include_image

    def _call(self, payload: dict) -> tuple[str, Optional[str]]:
        resp = requests.post(self.render_url, json=payload, timeout=(5, self.timeout))
        resp.raise_for_status()
        data = resp.json()
        text = data.get('text') if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise ValueError(f"render response has no text: {str(data)[:100]}")
        image_url = data.get('imageUrl')
        return text, image_url if isinstance(image_url, str) and image_url else None

    async def render(
        self,
        game_id: str,
        day: Optional[int],
        player_name: Optional[str],
        players: list[str],
        game_name: str,
        link: str,
        fun: bool,
    ) -> tuple[str, Optional[str]]:
        """
        Render one variant.

        Returns:
            (text, image_url) - text always non-empty and containing the link
        """
        if not self.render_url:
            return fallback_text(day, player_name, game_name, link), None

        payload = {
            'gameId': game_id,
            'day': day,
            'playerName': player_name,
            'players': players,
            'gameName': game_name,
            'link': link,
            'enableEmbellishment': fun,
            'includeImage': self.include_image,
        }
        loop = asyncio.get_running_loop()
        try:
            text, image_url = await loop.run_in_executor(
                _render_executor, functools.partial(self._call, payload)
            )
        except Exception as e:
            logger.warning(f"[RENDER] {'fun' if fun else 'classic'} render failed for {game_id}, using fallback: {e}")
            return fallback_text(day, player_name, game_name, link), None
        return finish_text(text, game_name, link), image_url

    async def render_variants(
        self,
        game_id: str,
        day: Optional[int],
        player_name: Optional[str],
        players: list[str],
        game_name: str,
        link: str,
        need_classic: bool,
        need_fun: bool,
    ) -> RenderedMessage:
        """Render whichever variants are needed, concurrently."""
        args = (game_id, day, player_name, players, game_name, link)
        classic, fun = await asyncio.gather(
            self.render(*args, fun=False) if need_classic else _nothing(),
            self.render(*args, fun=True) if need_fun else _nothing(),
        )
        return RenderedMessage(
            text_classic=classic[0] if classic else None,
            text_fun=fun[0] if fun else None,
            image_url=(fun and fun[1]) or (classic and classic[1]) or None,
        )


async def _nothing():
    return None
