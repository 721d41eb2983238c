"""
Data types shared across the notification pipeline.

Patches and subscribers come from the store as camelCase dicts (the web UI
writes them); from_dict/to_dict convert at that boundary only.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple, Optional, Union

SCOPE_ALL = 'all'
SCOPE_MY_TURN = 'my-turn'

FREQ_HOURLY = 'hourly'
FREQ_ONCE = 'once'

VARIANT_CLASSIC = 'classic'
VARIANT_FUN = 'fun'

SOURCE_TURN = 'turn'
SOURCE_HOURLY = 'hourly'

# Process-wide event order; a higher number is a newer event
_event_sequence = itertools.count(1)


def next_event_seq() -> int:
    return next(_event_sequence)


# =============================================================================
# Subscriptions
# =============================================================================

@dataclass(frozen=True)
class Subscriber:
    type: str                                   # 'dm' or 'group'
    handle: str
    scope: str = SCOPE_ALL
    player_name: Optional[str] = None
    fun_enabled: bool = False
    notify_frequency: Optional[str] = None      # None = every turn change
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    mentions: tuple = ()
    player_phone_map: tuple = ()                # ((player, phone), ...) to stay hashable

    @property
    def is_group(self) -> bool:
        return self.type == 'group'

    @property
    def variant(self) -> str:
        return VARIANT_FUN if self.fun_enabled else VARIANT_CLASSIC

    def phone_for_player(self, player_name: Optional[str]) -> Optional[str]:
        """Phone mapped to a player name, matched case-insensitively."""
        if not player_name:
            return None
        wanted = player_name.strip().lower()
        for name, phone in self.player_phone_map:
            if name.strip().lower() == wanted and phone:
                return phone
        return None

    @classmethod
    def from_dict(cls, data: dict) -> 'Subscriber':
        scope = data.get('scope')
        phone_map = data.get('playerPhoneMap')
        if not isinstance(phone_map, dict):
            phone_map = {}
        mentions = data.get('mentions') or []
        return cls(
            type=data.get('type') or 'dm',
            handle=str(data.get('handle') or '').strip(),
            scope=scope if scope in (SCOPE_ALL, SCOPE_MY_TURN) else SCOPE_ALL,
            player_name=(data.get('playerName') or '').strip() or None,
            fun_enabled=bool(data.get('funEnabled')),
            notify_frequency=data.get('notifyFrequency') or None,
            group_id=data.get('groupId') or None,
            group_name=data.get('groupName') or None,
            mentions=tuple(m.strip() for m in mentions if isinstance(m, str) and m.strip()),
            player_phone_map=tuple(
                (str(k), str(v)) for k, v in phone_map.items() if v
            ),
        )


@dataclass(frozen=True)
class Patch:
    id: str
    game_id: str
    inviter_uid: str = ''
    subscribers: tuple = ()
    extended_features: bool = False

    @property
    def fingerprint(self) -> tuple:
        """Identity of the subscriber snapshot; a change means the session is replaced."""
        return (self.game_id, self.subscribers)

    @classmethod
    def from_dict(cls, patch_id: str, data: dict) -> 'Patch':
        raw_subs = data.get('subscribers') or []
        subs = tuple(Subscriber.from_dict(s) for s in raw_subs if isinstance(s, dict))
        return cls(
            id=patch_id,
            game_id=str(data.get('gameId') or ''),
            inviter_uid=data.get('inviterUid') or '',
            subscribers=tuple(s for s in subs if s.handle),
            extended_features=bool(data.get('extendedFeatures')),
        )


# =============================================================================
# Upstream socket frames
# =============================================================================

@dataclass(frozen=True)
class TurnChange:
    day: Optional[int]
    player_id: Optional[str]
    player_name: Optional[str] = None   # hint only; the scraped page wins


@dataclass(frozen=True)
class GameOver:
    pass


@dataclass(frozen=True)
class UnknownFrame:
    raw: str


Frame = Union[TurnChange, GameOver, UnknownFrame]


# =============================================================================
# Pipeline stages
# =============================================================================

class DeliveryKey(NamedTuple):
    game_id: str
    handle: str


@dataclass(frozen=True)
class DetectedTurn:
    game_id: str
    day: Optional[int]
    player_name: Optional[str]          # authoritative, None when unknown
    hint: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.player_name or self.hint


@dataclass
class RenderedMessage:
    text_classic: Optional[str] = None
    text_fun: Optional[str] = None
    image_url: Optional[str] = None

    def text_for(self, variant: str) -> Optional[str]:
        return self.text_fun if variant == VARIANT_FUN else self.text_classic


@dataclass
class Delivery:
    handle: str
    variant: str
    status: str                         # 'sent' or 'failed'
    error: Optional[str] = None
    sent_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = {'handle': self.handle, 'variant': self.variant, 'status': self.status}
        if self.error:
            data['error'] = self.error
        if self.sent_at:
            data['sentAt'] = self.sent_at.isoformat()
        return data


@dataclass
class DispatchResult:
    deliveries: list[Delivery] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """
        sent / failed / partial-failed over the sends that actually ran, or
        cancelled when a newer event superseded every one of them.
        """
        if not self.deliveries and self.cancelled:
            return 'cancelled'
        sent = sum(1 for d in self.deliveries if d.status == 'sent')
        if sent == len(self.deliveries):
            return 'sent'
        if sent == 0:
            return 'failed'
        return 'partial-failed'

    @property
    def error(self) -> Optional[str]:
        errors = [f"{d.handle}: {d.error}" for d in self.deliveries if d.status != 'sent']
        return '; '.join(errors) if errors else None
