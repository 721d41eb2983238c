"""
Delivery dispatcher.

Sends rendered turn alerts through the signal-cli REST bridge:

- DMs go to the subscriber's phone (normalized to a leading '+')
- Groups go to the stored group id; on failure, once more with the other
  encoding ('group.' prefix toggled)
- At most one mention per group message: the phone mapped to the player whose
  turn it is, else the first configured mention
- A newer event for the same (game, handle) cancels the in-flight send; an
  older event arriving late is dropped
- A timed-out send is retried exactly once

Per-recipient failures are returned as Delivery records, never raised.
"""

import asyncio
import functools
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Optional
from urllib.parse import quote

import requests

from errors import BridgeError, SendCancelled, SendTimeout
from models import Delivery, DeliveryKey, DispatchResult, RenderedMessage, Subscriber, next_event_seq
from store import BaseStore, utcnow

logger = logging.getLogger(__name__)

GROUP_PREFIX = 'group.'
MENTION_PLACEHOLDER = '\ufffc'  # object replacement char, Signal's mention slot
INVITE_LINK_PATTERN = re.compile(r'signal\.group/#(.+)')

# Blocking bridge calls run here so they never stall the event loop
_send_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="send")


# =============================================================================
# Helpers
# =============================================================================

def normalize_phone(raw: str) -> str:
    """'(555) 123-4567' -> '+5551234567'. Leaves the digits alone otherwise."""
    digits = re.sub(r'[\s\-().]', '', raw or '')
    return digits if digits.startswith('+') else f"+{digits}"


def alternate_group_id(group_id: str) -> str:
    if group_id.startswith(GROUP_PREFIX):
        return group_id[len(GROUP_PREFIX):]
    return f"{GROUP_PREFIX}{group_id}"


def group_fragment(handle: str) -> str:
    """Base64 group fragment from an invite link, 'group.' id, or bare fragment."""
    match = INVITE_LINK_PATTERN.search(handle)
    if match:
        return match.group(1)
    if handle.startswith(GROUP_PREFIX):
        return handle[len(GROUP_PREFIX):]
    return handle


def utf16_len(text: str) -> int:
    """Signal mention offsets count UTF-16 code units."""
    return len(text.encode('utf-16-le')) // 2


def add_mention(text: str, phone: Optional[str]) -> tuple[str, list[dict]]:
    """
    Append a mention placeholder for one phone.

    Returns:
        (text, mentions) - mentions is empty when phone is None
    """
    if not phone:
        return text, []
    prefix = f"{text} "
    mention = {'author': normalize_phone(phone), 'start': utf16_len(prefix), 'length': 1}
    return prefix + MENTION_PLACEHOLDER, [mention]


def mention_phone(sub: Subscriber, current_player: Optional[str]) -> Optional[str]:
    """The one phone to mention for a group subscriber, if any."""
    if not sub.is_group:
        return None
    return sub.phone_for_player(current_player) or (sub.mentions[0] if sub.mentions else None)


class CancelToken:
    """Cooperative cancellation flag for one in-flight send."""

    def __init__(self, seq: int = 0):
        self.seq = seq
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    async def wait(self):
        await self._event.wait()


# =============================================================================
# Bridge client
# =============================================================================

class SignalBridge:
    """Blocking client for the signal-cli REST API."""

    def __init__(self, base_url: str, bot_number: str, timeout: float = 30):
        self.base_url = base_url.rstrip('/')
        self.bot_number = bot_number
        self.timeout = timeout

    def _error(self, resp) -> BridgeError:
        try:
            detail = resp.json().get('error') or resp.text
        except ValueError:
            detail = resp.text
        return BridgeError(f"bridge returned {resp.status_code}: {str(detail)[:200]}", resp.status_code)

    def send(self, recipients: list[str], message: str, mentions: list[dict] = None) -> dict:
        """
        POST /v2/send.

        Raises:
            SendTimeout: the bridge didn't answer within the timeout
            BridgeError: any other transport error or non-2xx response
        """
        payload = {
            'number': self.bot_number,
            'message': message,
            'recipients': recipients,
        }
        if mentions:
            payload['mentions'] = mentions
        try:
            resp = requests.post(f"{self.base_url}/v2/send", json=payload, timeout=(5, self.timeout))
        except requests.Timeout as e:
            raise SendTimeout(f"send timed out after {self.timeout}s: {e}") from e
        except requests.RequestException as e:
            raise BridgeError(f"bridge unreachable: {e}") from e
        if not resp.ok:
            raise self._error(resp)
        try:
            return resp.json()
        except ValueError:
            return {}

    def list_groups(self) -> list[dict]:
        try:
            resp = requests.get(f"{self.base_url}/v1/groups/{quote(self.bot_number)}", timeout=(5, self.timeout))
        except requests.RequestException as e:
            raise BridgeError(f"bridge unreachable: {e}") from e
        if not resp.ok:
            raise self._error(resp)
        data = resp.json()
        return data if isinstance(data, list) else []

    def about(self) -> dict:
        resp = requests.get(f"{self.base_url}/v1/about", timeout=(2, 5))
        resp.raise_for_status()
        return resp.json()


def find_group_id(groups: list[dict], fragment: Optional[str], group_name: Optional[str]) -> Optional[str]:
    """Match a bridge group listing by name, internal id, or id (either encoding)."""
    for group in groups:
        if group_name and group.get('name') == group_name:
            break
        if fragment and fragment in (
            group.get('internal_id'), group.get('id'), alternate_group_id(group.get('id') or '')
        ):
            break
    else:
        return None
    if group.get('id'):
        return group['id']
    if group.get('internal_id'):
        return f"{GROUP_PREFIX}{group['internal_id']}"
    return None


# =============================================================================
# Dispatcher
# =============================================================================

class DeliveryDispatcher:
    """Fans a rendered message out to subscribers; owns the in-flight send table."""

    def __init__(self, bridge: SignalBridge, store: BaseStore):
        self.bridge = bridge
        self.store = store
        self._inflight: dict[DeliveryKey, CancelToken] = {}
        # Newest event seen per key, kept after its send completes
        self._newest: dict[DeliveryKey, int] = {}

    def _supersede(self, key: DeliveryKey, seq: int) -> Optional[CancelToken]:
        """
        Claim the key for event `seq`, cancelling any older in-flight send.

        Returns None when a newer event already claimed the key; the caller's
        send is stale and must not go out.
        """
        newest = self._newest.get(key)
        if newest is not None and newest > seq:
            logger.info(f"[SEND] Event {seq} for {key.handle} in game {key.game_id} "
                        f"is older than event {newest}, dropping")
            return None
        previous = self._inflight.get(key)
        if previous is not None and not previous.cancelled:
            logger.info(f"[SEND] Newer event for {key.handle} in game {key.game_id}, cancelling in-flight send")
            previous.cancel()
        token = CancelToken(seq)
        self._newest[key] = seq
        self._inflight[key] = token
        return token

    def cancel_all(self):
        for token in self._inflight.values():
            token.cancel()
        self._inflight.clear()

    def forget_game(self, game_id: str):
        """Drop ordering state for a finished game."""
        for key in [k for k in self._newest if k.game_id == game_id]:
            del self._newest[key]

    async def _call(self, token: CancelToken, func, *args):
        """Run a blocking bridge call, abandoning it if the token fires first."""
        if token.cancelled:
            raise SendCancelled()
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(_send_executor, functools.partial(func, *args))
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if call in done:
            return call.result()
        call.cancel()
        raise SendCancelled()

    async def _send_with_retry(self, token: CancelToken, recipient: str, text: str, mentions: list[dict]):
        try:
            return await self._call(token, self.bridge.send, [recipient], text, mentions)
        except SendTimeout as e:
            logger.warning(f"[SEND] {e} ({recipient}), retrying once")
            return await self._call(token, self.bridge.send, [recipient], text, mentions)

    async def _group_id(self, token: CancelToken, patch_id: str, sub: Subscriber) -> str:
        if sub.group_id:
            return sub.group_id
        if sub.handle.startswith(GROUP_PREFIX):
            return sub.handle

        groups = await self._call(token, self.bridge.list_groups)
        group_id = find_group_id(groups, group_fragment(sub.handle), sub.group_name)
        if not group_id:
            raise BridgeError(f"no bridge group matches {sub.group_name or sub.handle}")
        logger.info(f"[SEND] Resolved group {sub.group_name or sub.handle} -> {group_id}")
        await self._remember_group_id(patch_id, sub, group_id)
        return group_id

    async def _remember_group_id(self, patch_id: str, sub: Subscriber, group_id: str):
        loop = asyncio.get_running_loop()
        try:
            written = await loop.run_in_executor(
                _send_executor, self.store.set_subscriber_group_id, patch_id, sub.handle, group_id
            )
            if written:
                logger.info(f"[SEND] Cached group id for {sub.handle} on patch {patch_id}")
        except Exception as e:
            logger.warning(f"[SEND] Could not cache group id for {sub.handle}: {e}")

    async def _send_group(self, token, patch_id: str, sub: Subscriber, text: str, mentions: list[dict]):
        group_id = await self._group_id(token, patch_id, sub)
        try:
            await self._send_with_retry(token, group_id, text, mentions)
        except SendTimeout:
            raise
        except BridgeError as e:
            alternate = alternate_group_id(group_id)
            logger.warning(f"[SEND] Group send to {group_id} failed ({e}), trying {alternate}")
            try:
                await self._send_with_retry(token, alternate, text, mentions)
            except BridgeError as e2:
                raise BridgeError(f"{e}; alternate id: {e2}", e2.status_code) from e2
            await self._remember_group_id(patch_id, sub, alternate)

    async def _deliver(
        self,
        patch_id: str,
        key: DeliveryKey,
        token: Optional[CancelToken],
        sub: Subscriber,
        text: Optional[str],
        current_player: Optional[str],
    ) -> Optional[Delivery]:
        """One subscriber's send. None means the send was superseded."""
        if token is None:
            return None
        variant = sub.variant
        try:
            if not text:
                raise BridgeError(f"no {variant} text rendered")
            if sub.is_group:
                body, mentions = add_mention(text, mention_phone(sub, current_player))
                await self._send_group(token, patch_id, sub, body, mentions)
            else:
                await self._send_with_retry(token, normalize_phone(sub.handle), text, [])
        except SendCancelled:
            logger.info(f"[SEND] Superseded send to {sub.handle} abandoned")
            return None
        except Exception as e:
            logger.error(f"[SEND FAILED] {sub.handle} ({variant}): {e}")
            return Delivery(handle=sub.handle, variant=variant, status='failed', error=str(e))
        finally:
            if self._inflight.get(key) is token:
                del self._inflight[key]

        logger.info(f"[-> SIGNAL] {sub.handle} ({variant}): {text[:80]}")
        return Delivery(handle=sub.handle, variant=variant, status='sent', sent_at=utcnow())

    async def dispatch(
        self,
        patch_id: str,
        game_id: str,
        subscribers: list[Subscriber],
        rendered: RenderedMessage,
        current_player: Optional[str],
        seq: Optional[int] = None,
    ) -> DispatchResult:
        """
        Send to every subscriber concurrently and collect the outcomes.

        `seq` orders events (see models.next_event_seq); it should be taken when
        the event is accepted, not here, so a slow older event can't overtake a
        newer one. Without it the dispatch counts as the newest event.
        """
        if seq is None:
            seq = next_event_seq()
        jobs = []
        for sub in subscribers:
            key = DeliveryKey(game_id, sub.handle)
            token = self._supersede(key, seq)
            jobs.append(self._deliver(patch_id, key, token, sub, rendered.text_for(sub.variant), current_player))

        outcomes = await asyncio.gather(*jobs)

        result = DispatchResult()
        for sub, outcome in zip(subscribers, outcomes):
            if outcome is None:
                result.cancelled.append(sub.handle)
            else:
                result.deliveries.append(outcome)
        return result
