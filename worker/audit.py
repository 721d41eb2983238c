"""
Message audit log.

One record per notification attempt in the `messages` collection, moved through

    processing -> rendered -> sending -> sent | failed | partial-failed | cancelled

The log doubles as delivery history: last_deliveries() is what the policy
evaluator uses for frequency and gap checks. That history is kept compact in
`lastDeliveries` (game id -> {handle: sentAt}), so reading it doesn't grow with
the number of messages and old records can be pruned without forgetting who was
notified ('once' subscribers depend on it).

Calls block on disk; async code runs them in the store executor.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from models import DetectedTurn, DispatchResult, RenderedMessage, Subscriber
from store import LAST_DELIVERIES, MESSAGES, BaseStore, utcnow

logger = logging.getLogger(__name__)

STATUS_PROCESSING = 'processing'
STATUS_RENDERED = 'rendered'
STATUS_SENDING = 'sending'
STATUS_SENT = 'sent'
STATUS_FAILED = 'failed'
STATUS_PARTIAL = 'partial-failed'
STATUS_CANCELLED = 'cancelled'

# Records that can hold a successful delivery
DELIVERED_STATUSES = (STATUS_SENT, STATUS_PARTIAL)

DEFAULT_RETENTION = timedelta(days=14)


def _parse_time(value) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class AuditLogger:
    def __init__(self, store: BaseStore):
        self.store = store

    def start(self, patch_id: str, turn: DetectedTurn, source: str, candidates: list[Subscriber]) -> str:
        """Open a record for an event that has at least one candidate."""
        message_id = self.store.add_message({
            'gameId': turn.game_id,
            'patchId': patch_id,
            'source': source,
            'day': turn.day,
            'playerName': turn.player_name,
            'status': STATUS_PROCESSING,
            'candidates': [s.handle for s in candidates],
        })
        logger.info(f"[AUDIT] {message_id[:8]} {source} game {turn.game_id}: {len(candidates)} candidate(s)")
        return message_id

    def rendered(self, message_id: str, rendered: RenderedMessage, candidates: list[Subscriber]):
        self.store.update_message(message_id, {
            'status': STATUS_RENDERED,
            'textClassic': rendered.text_classic,
            'textFun': rendered.text_fun,
            'text': rendered.text_classic or rendered.text_fun,
            'recipientsClassic': [s.handle for s in candidates if not s.fun_enabled],
            'recipientsFun': [s.handle for s in candidates if s.fun_enabled],
            'imageUrl': rendered.image_url,
        })

    def sending(self, message_id: str):
        self.store.update_message(message_id, {'status': STATUS_SENDING})

    def finish(self, message_id: str, game_id: str, result: DispatchResult):
        """Record the terminal status and per-recipient outcomes."""
        status = result.status
        fields = {
            'status': status,
            'deliveries': [d.to_dict() for d in result.deliveries],
            'cancelled': list(result.cancelled),
            'error': result.error if status in (STATUS_FAILED, STATUS_PARTIAL) else None,
        }
        self.store.update_message(message_id, fields)
        self._remember_deliveries(game_id, result)

        if status == STATUS_SENT:
            logger.info(f"[AUDIT] {message_id[:8]} sent to {len(result.deliveries)} recipient(s)")
        elif status == STATUS_CANCELLED:
            logger.info(f"[AUDIT] {message_id[:8]} superseded by a newer event, nothing sent")
        else:
            logger.warning(f"[AUDIT] {message_id[:8]} {status}: {result.error}")

    def fail(self, message_id: str, error: str):
        """Terminal failure before any delivery ran."""
        self.store.update_message(message_id, {'status': STATUS_FAILED, 'error': error})
        logger.error(f"[AUDIT] {message_id[:8]} failed: {error}")

    def _remember_deliveries(self, game_id: str, result: DispatchResult):
        latest = self.last_deliveries(game_id)
        changed = False
        for delivery in result.deliveries:
            if delivery.status != STATUS_SENT or delivery.sent_at is None:
                continue
            previous = latest.get(delivery.handle)
            if previous is None or delivery.sent_at > previous:
                latest[delivery.handle] = delivery.sent_at
                changed = True
        if changed:
            self.store.set(LAST_DELIVERIES, game_id, {h: t.isoformat() for h, t in latest.items()})

    def last_deliveries(self, game_id: str) -> dict[str, datetime]:
        """Handle -> time of the newest successful delivery for this game."""
        doc = self.store.get(LAST_DELIVERIES, game_id)
        if doc is None:
            return self._rebuild_last_deliveries(game_id)
        latest = {}
        for handle, value in doc.items():
            sent_at = _parse_time(value)
            if sent_at is not None:
                latest[handle] = sent_at
        return latest

    def _rebuild_last_deliveries(self, game_id: str) -> dict[str, datetime]:
        """Scan the game's delivered records once and save the summary."""
        latest: dict[str, datetime] = {}
        for record in self.store.messages_for_game(game_id, statuses=DELIVERED_STATUSES):
            for delivery in record.get('deliveries') or []:
                if delivery.get('status') != STATUS_SENT:
                    continue
                sent_at = _parse_time(delivery.get('sentAt'))
                handle = delivery.get('handle')
                if sent_at is None or not handle:
                    continue
                if handle not in latest or sent_at > latest[handle]:
                    latest[handle] = sent_at
        if latest:
            self.store.set(LAST_DELIVERIES, game_id, {h: t.isoformat() for h, t in latest.items()})
        return latest

    def prune(self, retention: timedelta = DEFAULT_RETENTION, now: datetime = None) -> int:
        """Delete records untouched for longer than `retention`. Returns how many went."""
        cutoff = (now or utcnow()) - retention
        stale = self.store.messages_updated_before(cutoff)
        if not stale:
            return 0
        # Make sure each game's delivery history survives its records
        for game_id in {m.get('gameId') for m in stale.values() if m.get('gameId')}:
            self.last_deliveries(game_id)
        removed = self.store.delete(MESSAGES, list(stale))
        logger.info(f"[AUDIT] Pruned {removed} record(s) older than {cutoff.isoformat()}")
        return removed
