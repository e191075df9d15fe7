"""TTL-bounded storage for suspended confirmations and pending clarifications."""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Tuple

from .schema import Snapshot

LOGGER = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 300.0

_NUMBER_PATTERN = re.compile(r"^#?(\d+)\.?$")
_ENGLISH_ORDINALS: Tuple[Tuple[str, int], ...] = (
    ("first", 0),
    ("1st", 0),
    ("second", 1),
    ("2nd", 1),
    ("third", 2),
    ("3rd", 2),
    ("fourth", 3),
    ("4th", 3),
    ("fifth", 4),
    ("5th", 4),
)


@dataclass(slots=True)
class ConfirmSession:
    id: str
    pending: Any
    original_instruction: str
    snapshot: Snapshot
    plan: Any
    created_at: float

    @property
    def type(self) -> str:
        return "confirm"


@dataclass(slots=True)
class ClarificationSession:
    id: str
    skeleton: Any
    snapshot: Snapshot
    original_instruction: str
    resolver_error: Any
    created_at: float

    @property
    def type(self) -> str:
        return "clarification"


class SessionBackend(Protocol):
    """Key/value storage the session store delegates to."""

    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> Iterator[Tuple[str, Any]]: ...

    def clear(self) -> None: ...


class InMemorySessionBackend:
    """Process-local backend; sessions do not survive restarts or cross instances."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(list(self._data.items()))

    def clear(self) -> None:
        self._data.clear()


class SessionStore:
    """Keeps confirm and clarification sessions alive for ``ttl_seconds``.

    Expired sessions are swept lazily whenever a session is created and are
    never returned by the getters.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        confirm_backend: SessionBackend | None = None,
        clarification_backend: SessionBackend | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._confirm = confirm_backend if confirm_backend is not None else InMemorySessionBackend()
        self._clarification = (
            clarification_backend if clarification_backend is not None else InMemorySessionBackend()
        )
        self._clock = clock

    @classmethod
    def from_config(cls, config_data: Mapping[str, Any], **kwargs: Any) -> "SessionStore":
        section = config_data.get("sessions") or {}
        if not isinstance(section, Mapping):
            raise ValueError("Config section 'sessions' must be a mapping")
        ttl = section.get("ttl_seconds", DEFAULT_SESSION_TTL_SECONDS)
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
            raise ValueError("sessions.ttl_seconds must be a positive number")
        return cls(ttl_seconds=float(ttl), **kwargs)

    def _expired(self, created_at: float) -> bool:
        return self._clock() - created_at > self.ttl_seconds

    def _live(self, backend: SessionBackend, session_id: str) -> Any | None:
        session = backend.get(session_id)
        if session is None:
            return None
        if self._expired(session.created_at):
            backend.delete(session_id)
            LOGGER.debug("Session %s expired", session_id)
            return None
        return session

    def sweep(self) -> int:
        """Drop expired sessions and return how many were removed."""
        removed = 0
        for backend in (self._clarification, self._confirm):
            for session_id, session in backend.items():
                if self._expired(session.created_at):
                    backend.delete(session_id)
                    removed += 1
        if removed:
            LOGGER.debug("Evicted %d expired sessions", removed)
        return removed

    # -- confirm sessions ---------------------------------------------------

    def create_confirm_session(
        self,
        pending: Any,
        original_instruction: str,
        snapshot: Snapshot,
        plan: Any,
    ) -> str:
        session_id = str(uuid.uuid4())
        self._confirm.put(
            session_id,
            ConfirmSession(
                id=session_id,
                pending=pending,
                original_instruction=original_instruction,
                snapshot=snapshot,
                plan=plan,
                created_at=self._clock(),
            ),
        )
        self.sweep()
        return session_id

    def get_confirm_session(self, session_id: str) -> Optional[ConfirmSession]:
        return self._live(self._confirm, session_id)

    def delete_confirm_session(self, session_id: str) -> None:
        self._confirm.delete(session_id)

    # -- clarification sessions ---------------------------------------------

    def create_clarification_session(
        self,
        skeleton: Any,
        snapshot: Snapshot,
        original_instruction: str,
        resolver_error: Any,
    ) -> str:
        session_id = str(uuid.uuid4())
        self._clarification.put(
            session_id,
            ClarificationSession(
                id=session_id,
                skeleton=skeleton,
                snapshot=snapshot,
                original_instruction=original_instruction,
                resolver_error=resolver_error,
                created_at=self._clock(),
            ),
        )
        self.sweep()
        return session_id

    def get_clarification_session(self, session_id: str) -> Optional[ClarificationSession]:
        return self._live(self._clarification, session_id)

    def delete_clarification_session(self, session_id: str) -> None:
        self._clarification.delete(session_id)

    def active_session_count(self) -> int:
        """Number of live clarification sessions."""
        self.sweep()
        return sum(1 for _ in self._clarification.items())

    def clear(self) -> None:
        self._clarification.clear()
        self._confirm.clear()


def parse_selection_index(response: str) -> Optional[int]:
    """Turn ``"2"``, ``"#2"`` or ``"the second one"`` into a zero-based index."""
    text = response.strip().lower()
    match = _NUMBER_PATTERN.match(text)
    if match:
        return int(match.group(1)) - 1
    words = re.findall(r"[a-z0-9]+", text)
    for pattern, index in _ENGLISH_ORDINALS:
        if pattern in words:
            return index
    return None


def build_clarification_context(session: ClarificationSession, response: str) -> str:
    """Rewrite the user's answer into an instruction naming one task explicitly."""
    candidates = list(getattr(session.resolver_error, "candidates", None) or [])
    if candidates:
        index = parse_selection_index(response)
        if index is not None and 0 <= index < len(candidates):
            return _resolved_instruction(session.skeleton, candidates[index].title)
        needle = response.strip().lower()
        if needle:
            for task in candidates:
                title = task.title.lower()
                if needle in title or title in needle:
                    return _resolved_instruction(session.skeleton, task.title)
    return _resolved_instruction(session.skeleton, response.strip())


def _resolved_instruction(skeleton: Any, reference: str) -> str:
    kind = getattr(skeleton, "kind", None)
    if kind == "ChangeStatus":
        return f'Change status of task "{reference}" to {skeleton.to_status}'
    if kind == "UpdateTask":
        changes = skeleton.changes.model_dump(mode="json", by_alias=True, exclude_unset=True)
        rendered = ", ".join(f"{key}={json.dumps(value)}" for key, value in changes.items())
        return f'Update task "{reference}" with changes: {rendered}'
    if kind == "DeleteTask":
        return f'Delete task "{reference}"'
    if kind == "RestoreTask":
        return f'Restore task "{reference}"'
    if kind == "SelectTask":
        return f'Select task "{reference}"'
    return f'Handle task "{reference}"'


__all__ = [
    "ClarificationSession",
    "ConfirmSession",
    "DEFAULT_SESSION_TTL_SECONDS",
    "InMemorySessionBackend",
    "SessionBackend",
    "SessionStore",
    "build_clarification_context",
    "parse_selection_index",
]
