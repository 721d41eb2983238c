"""
Persistent store for patches, the message audit log and scrape caches.

The web front end owns the patches collection; the worker only reads it, apart
from caching a resolved group id back onto a subscriber. Each collection is one
JSON document on disk:

    data/patches.json         patch id -> {gameId, inviterUid, subscribers, ...}
    data/messages.json        message id -> audit record (pruned by age)
    data/lastDeliveries.json  game id -> {handle: sentAt}
    data/gamePlayers.json     game id -> {players, countries}
    data/games.json           game id -> {gameName, mapName}

Every call does blocking disk I/O; async callers go through an executor.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from models import Patch

logger = logging.getLogger(__name__)

PATCHES = 'patches'
MESSAGES = 'messages'
LAST_DELIVERIES = 'lastDeliveries'
GAME_PLAYERS = 'gamePlayers'
GAMES = 'games'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseStore(ABC):
    """Collections the worker needs from persistence."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[dict]:
        pass

    @abstractmethod
    def set(self, collection: str, key: str, data: dict, merge: bool = True):
        pass

    @abstractmethod
    def delete(self, collection: str, keys: list[str]) -> int:
        pass

    @abstractmethod
    def all(self, collection: str) -> dict:
        pass

    def list_patches(self) -> list[Patch]:
        """Every patch document, parsed."""
        return [Patch.from_dict(pid, data) for pid, data in self.all(PATCHES).items()
                if isinstance(data, dict)]

    def set_subscriber_group_id(self, patch_id: str, handle: str, group_id: str) -> bool:
        """Cache a resolved group id onto one subscriber. Returns True if written."""
        patch = self.get(PATCHES, patch_id)
        if not patch:
            return False
        subscribers = list(patch.get('subscribers') or [])
        changed = False
        for sub in subscribers:
            if sub.get('type') == 'group' and sub.get('handle') == handle and sub.get('groupId') != group_id:
                sub['groupId'] = group_id
                changed = True
        if changed:
            self.set(PATCHES, patch_id, {'subscribers': subscribers})
        return changed

    def add_message(self, data: dict) -> str:
        message_id = uuid.uuid4().hex
        now = utcnow().isoformat()
        self.set(MESSAGES, message_id, {**data, 'id': message_id, 'createdAt': now, 'updatedAt': now}, merge=False)
        return message_id

    def update_message(self, message_id: str, fields: dict):
        self.set(MESSAGES, message_id, {**fields, 'updatedAt': utcnow().isoformat()})

    def messages_for_game(self, game_id: str, statuses: tuple = None) -> list[dict]:
        """Audit records for a game, newest first."""
        rows = [m for m in self.all(MESSAGES).values()
                if m.get('gameId') == game_id and (statuses is None or m.get('status') in statuses)]
        rows.sort(key=lambda m: m.get('createdAt') or '', reverse=True)
        return rows

    def messages_updated_before(self, cutoff: datetime) -> dict:
        """Message id -> record for records last touched before the cutoff."""
        stamp = cutoff.isoformat()
        return {mid: m for mid, m in self.all(MESSAGES).items()
                if isinstance(m, dict) and (m.get('updatedAt') or '') < stamp}


class JsonStore(BaseStore):
    """
    Directory of JSON documents, one per collection.

    Writes are atomic (temp file + rename) and serialized by a lock so executor
    threads can share one instance.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _read(self, collection: str) -> dict:
        path = self._path(collection)
        if not path.exists():
            return {}
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def _write(self, collection: str, data: dict):
        path = self._path(collection)
        temp_path = path.with_suffix('.tmp')
        with open(temp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        temp_path.replace(path)

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            return self._read(collection).get(key)

    def set(self, collection: str, key: str, data: dict, merge: bool = True):
        with self._lock:
            docs = self._read(collection)
            if merge and isinstance(docs.get(key), dict):
                docs[key] = {**docs[key], **data}
            else:
                docs[key] = dict(data)
            self._write(collection, docs)

    def delete(self, collection: str, keys: list[str]) -> int:
        with self._lock:
            docs = self._read(collection)
            removed = [k for k in keys if docs.pop(k, None) is not None]
            if removed:
                self._write(collection, docs)
            return len(removed)

    def all(self, collection: str) -> dict:
        with self._lock:
            return self._read(collection)
