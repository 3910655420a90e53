"""
Conversation session cache: a short rolling window of entries per session, stored as JSON with a kind tag per entry.
New entry kinds register with @register_entry_kind; kinds this process does not know are carried through untouched.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Type

from multimodal_rag.cache.store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "session:"

_ENTRY_KINDS: Dict[str, Type["SessionEntry"]] = {}


def register_entry_kind(kind: str) -> Callable[[Type["SessionEntry"]], Type["SessionEntry"]]:
    """Class decorator: bind a SessionEntry dataclass to its kind tag for encoding and decoding."""
    def deco(cls):
        cls.kind = kind
        _ENTRY_KINDS[kind] = cls
        return cls
    return deco


class SessionEntry:
    """Base for tagged session entries; subclasses are dataclasses whose fields form the payload."""

    kind: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SessionEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in payload.items() if k in known})


@register_entry_kind("exchange")
@dataclass
class Exchange(SessionEntry):
    question: str
    answer: str
    timestamp: float = field(default_factory=time.time)


@register_entry_kind("note")
@dataclass
class Note(SessionEntry):
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class UnknownEntry(SessionEntry):
    """Entry whose kind is not registered here; kept verbatim so it round-trips unchanged."""
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return dict(self.payload)


def encode_entry(entry: SessionEntry) -> Dict[str, Any]:
    return {"kind": entry.kind, "payload": entry.to_payload()}


def decode_entry(data: Dict[str, Any]) -> SessionEntry:
    kind = data.get("kind", "")
    payload = data.get("payload") or {}
    cls = _ENTRY_KINDS.get(kind)
    if cls is None:
        return UnknownEntry(kind=kind, payload=dict(payload))
    try:
        return cls.from_payload(payload)
    except TypeError:
        # registered kind with a payload this version cannot build; keep it opaque
        logger.warning("session entry payload does not match kind %s", kind)
        return UnknownEntry(kind=kind, payload=dict(payload))


def entry_from_request(kind: str, payload: Dict[str, Any]) -> SessionEntry:
    return decode_entry({"kind": kind, "payload": payload})


@dataclass
class ConversationContext:
    session_id: str
    entries: List[SessionEntry] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def add(self, entry: SessionEntry, max_entries: int) -> None:
        """Append and drop the oldest entries beyond max_entries."""
        self.entries.append(entry)
        if max_entries > 0 and len(self.entries) > max_entries:
            del self.entries[: len(self.entries) - max_entries]
        self.updated_at = time.time()

    def summary(self) -> str:
        """Short recap of the recent exchanges, suitable to prepend to a prompt."""
        lines = []
        for e in self.entries:
            if isinstance(e, Exchange):
                lines.append(f"Q: {e.question}")
                lines.append(f"A: {e.answer[:200]}")
            elif isinstance(e, Note):
                lines.append(f"Note: {e.text[:200]}")
        return "\n".join(lines)

    def to_json(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "entries": [encode_entry(e) for e in self.entries],
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "ConversationContext":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            entries=[decode_entry(e) for e in data.get("entries") or []],
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
        )


def session_key(session_id: str) -> str:
    return KEY_PREFIX + session_id


class SessionCache:
    """Per-session ConversationContext with a sliding TTL: reads leave the TTL alone, every write resets it.
    Why available: Keeps follow-up context for the assistant across requests without a database; an unavailable store just means no history."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 3600, max_entries: int = 3):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries

    def get(self, session_id: str) -> Optional[ConversationContext]:
        try:
            return self._load(session_id)
        except Exception as e:
            logger.warning("session read failed, treating as empty: %s", e)
            return None

    def append(self, session_id: str, entry: SessionEntry) -> ConversationContext:
        """Add entry to the stored context and write it back. If the stored context cannot be read, nothing is written,
        so a transient store error never replaces existing history; the returned context then holds only the new entry."""
        try:
            context = self._load(session_id)
        except Exception as e:
            logger.warning("session read failed for %s, entry not persisted: %s", session_id, e)
            context = ConversationContext(session_id=session_id)
            context.add(entry, self.max_entries)
            return context
        context = context or ConversationContext(session_id=session_id)
        context.add(entry, self.max_entries)
        self._write(context)
        return context

    def refresh(self, session_id: str) -> bool:
        """Reset the session TTL without changing its contents. False if the session does not exist."""
        try:
            return self.store.expire(session_key(session_id), self.ttl_seconds)
        except Exception as e:
            logger.warning("session refresh failed: %s", e)
            return False

    def clear(self, session_id: str) -> None:
        try:
            self.store.delete(session_key(session_id))
        except Exception as e:
            logger.warning("session clear failed: %s", e)

    def _load(self, session_id: str) -> Optional[ConversationContext]:
        """Stored context or None; store errors propagate, unreadable payloads count as no session."""
        raw = self.store.get(session_key(session_id))
        if raw is None:
            return None
        try:
            return ConversationContext.from_json(raw)
        except (ValueError, KeyError) as e:
            logger.warning("discarding unreadable session %s: %s", session_id, e)
            return None

    def _write(self, context: ConversationContext) -> None:
        try:
            self.store.set(session_key(context.session_id), context.to_json(), self.ttl_seconds)
        except Exception as e:
            logger.warning("session write failed for %s: %s", context.session_id, e)
