"""Sequential thinking sessions: step-by-step reasoning with revisions and branches."""

from __future__ import annotations

import copy
import json
import secrets
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

_BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def rand_text() -> str:
    """Return 26 random base32 characters, enough for 128 bits of randomness."""
    return "".join(_BASE32_ALPHABET[b % 32] for b in secrets.token_bytes(26))


@dataclass
class Thought:
    """A single step in the thinking process."""

    index: int
    content: str
    created: datetime = field(default_factory=_now)
    revised: bool = False
    parent_index: Optional[int] = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "content": self.content,
            "created": self.created.isoformat(),
            "revised": self.revised,
        }
        if self.parent_index is not None:
            data["parentIndex"] = self.parent_index
        return data


@dataclass
class ThinkingSession:
    """An active thinking session."""

    id: str
    problem: str
    thoughts: list[Thought] = field(default_factory=list)
    current_thought: int = 0
    estimated_total: int = 0
    status: str = "active"
    created: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)
    branches: list[str] = field(default_factory=list)
    version: int = 0

    def clone(self) -> ThinkingSession:
        """Return a deep copy of the session."""
        return replace(
            self,
            thoughts=[copy.copy(t) for t in self.thoughts],
            branches=list(self.branches),
        )

    def to_json(self) -> dict[str, Any]:
        """Return the session as a JSON-ready dictionary."""
        data: dict[str, Any] = {
            "id": self.id,
            "problem": self.problem,
            "thoughts": [t.to_json() for t in self.thoughts],
            "currentThought": self.current_thought,
            "estimatedTotal": self.estimated_total,
            "status": self.status,
            "created": self.created.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }
        if self.branches:
            data["branches"] = list(self.branches)
        data["version"] = self.version
        return data


class SessionStore:
    """A thread-safe store of thinking sessions.

    Sessions held in the store are never modified in place: updates work on
    deep copies and are swapped in under optimistic version checks.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, ThinkingSession] = {}

    def session(self, id: str) -> Optional[ThinkingSession]:
        """Return the session with the given ID, or None."""
        with self._lock:
            return self._sessions.get(id)

    def set_session(self, session: ThinkingSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def compare_and_swap(
        self,
        session_id: str,
        update: Callable[[ThinkingSession], ThinkingSession],
    ) -> None:
        """Apply update to a copy of the session and store it if nobody changed it meanwhile.

        Retries on a version mismatch; raises LookupError if the session is missing.
        Errors raised by update propagate and leave the store unchanged.
        """
        while True:
            with self._lock:
                current = self._sessions.get(session_id)
                if current is None:
                    raise LookupError(f"session {session_id} not found")
                working = current.clone()
                old_version = current.version

            updated = update(working)

            with self._lock:
                current = self._sessions.get(session_id)
                if current is None:
                    raise LookupError(f"session {session_id} not found")
                if current.version != old_version:
                    continue
                updated.version = old_version + 1
                self._sessions[session_id] = updated
                return

    def sessions(self) -> list[ThinkingSession]:
        with self._lock:
            return list(self._sessions.values())

    def sessions_snapshot(self) -> list[ThinkingSession]:
        """Return deep copies of all sessions."""
        with self._lock:
            return [s.clone() for s in self._sessions.values()]

    def session_snapshot(self, id: str) -> Optional[ThinkingSession]:
        """Return a deep copy of the session with the given ID, or None."""
        with self._lock:
            session = self._sessions.get(id)
            return session.clone() if session is not None else None


@dataclass
class StartThinkingArgs:
    problem: str
    session_id: str = ""
    estimated_steps: int = 0


@dataclass
class ContinueThinkingArgs:
    session_id: str
    thought: str
    next_needed: Optional[bool] = None
    revise_step: Optional[int] = None
    create_branch: bool = False
    estimated_total: int = 0


@dataclass
class ReviewThinkingArgs:
    session_id: str


class SequentialThinking:
    """The sequential thinking tools and resource, backed by a session store."""

    def __init__(self, store: Optional[SessionStore] = None) -> None:
        self.store = store if store is not None else SessionStore()

    def start_thinking(self, args: StartThinkingArgs) -> str:
        """Begin a new session and return a message describing it."""
        session_id = args.session_id or rand_text()
        estimated_steps = args.estimated_steps or 5
        now = _now()
        self.store.set_session(ThinkingSession(
            id=session_id,
            problem=args.problem,
            estimated_total=estimated_steps,
            status="active",
            created=now,
            last_activity=now,
        ))
        return (
            f"Started thinking session '{session_id}' for problem: {args.problem}\n"
            f"Estimated steps: {estimated_steps}\n"
            "Ready for your first thought."
        )

    def continue_thinking(self, args: ContinueThinkingArgs) -> str:
        """Add the next thought, revise an earlier one, or branch; return a message."""
        if args.revise_step is not None:
            return self._revise(args, args.revise_step)
        if args.create_branch:
            return self._branch(args)
        return self._add(args)

    def _revise(self, args: ContinueThinkingArgs, step: int) -> str:
        def update(session: ThinkingSession) -> ThinkingSession:
            index = step - 1
            if not 0 <= index < len(session.thoughts):
                raise ValueError(f"invalid step number: {step}")
            session.thoughts[index].content = args.thought
            session.thoughts[index].revised = True
            session.last_activity = _now()
            return session

        self.store.compare_and_swap(args.session_id, update)
        return f"Revised step {step} in session '{args.session_id}':\n{args.thought}"

    def _branch(self, args: ContinueThinkingArgs) -> str:
        created: dict[str, ThinkingSession] = {}

        def update(session: ThinkingSession) -> ThinkingSession:
            branch_id = f"{args.session_id}_branch_{len(session.branches) + 1}"
            session.branches.append(branch_id)
            now = _now()
            session.last_activity = now
            created["branch"] = ThinkingSession(
                id=branch_id,
                problem=session.problem + " (Alternative branch)",
                thoughts=[copy.copy(t) for t in session.thoughts],
                current_thought=len(session.thoughts),
                estimated_total=session.estimated_total,
                status="active",
                created=now,
                last_activity=now,
            )
            return session

        self.store.compare_and_swap(args.session_id, update)
        branch = created["branch"]
        self.store.set_session(branch)
        return (
            f"Created branch '{branch.id}' from session '{args.session_id}'. "
            "You can now continue thinking in either session."
        )

    def _add(self, args: ContinueThinkingArgs) -> str:
        outcome: dict[str, str] = {}

        def update(session: ThinkingSession) -> ThinkingSession:
            thought_id = len(session.thoughts) + 1
            now = _now()
            session.thoughts.append(Thought(index=thought_id, content=args.thought, created=now))
            session.current_thought = thought_id
            session.last_activity = now
            if args.estimated_total > 0:
                session.estimated_total = args.estimated_total
            if args.next_needed is False:
                session.status = "completed"

            progress = f"Step {thought_id}"
            if session.estimated_total > 0:
                progress += f" of ~{session.estimated_total}"
            outcome["progress"] = progress
            outcome["status"] = (
                "\n✓ Thinking process completed!"
                if session.status == "completed"
                else "\nReady for next thought..."
            )
            return session

        self.store.compare_and_swap(args.session_id, update)
        return (
            f"Session '{args.session_id}' - {outcome['progress']}:\n"
            f"{args.thought}{outcome['status']}"
        )

    def review_thinking(self, args: ReviewThinkingArgs) -> str:
        """Return a review of the whole thinking process of a session."""
        session = self.store.session_snapshot(args.session_id)
        if session is None:
            raise LookupError(f"session {args.session_id} not found")
        lines = [
            f"=== Thinking Review: {session.id} ===",
            f"Problem: {session.problem}",
            f"Status: {session.status}",
            f"Steps: {len(session.thoughts)} of ~{session.estimated_total}",
        ]
        if session.branches:
            lines.append(f"Branches: {', '.join(session.branches)}")
        lines.append("")
        lines.append("--- Thought Sequence ---")
        for number, thought in enumerate(session.thoughts, 1):
            suffix = " (revised)" if thought.revised else ""
            lines.append(f"{number}. {thought.content}{suffix}")
        return "\n".join(lines) + "\n"

    def thinking_history(self, uri: str) -> dict[str, str]:
        """Read the resource at uri: "thinking://sessions" or "thinking://<session id>".

        Returns a dictionary with the uri, mimeType and JSON text of the resource.
        """
        try:
            parts = urlsplit(uri)
        except ValueError as exc:
            raise ValueError(f"invalid thinking resource URI: {uri}") from exc
        if parts.scheme != "thinking":
            raise ValueError(f"invalid thinking resource URI scheme: {parts.scheme}")

        session_id = parts.netloc
        if session_id == "sessions":
            payload: Any = [s.to_json() for s in self.store.sessions_snapshot()]
        else:
            session = self.store.session_snapshot(session_id)
            if session is None:
                raise LookupError(f"session {session_id} not found")
            payload = session.to_json()

        return {
            "uri": uri,
            "mimeType": "application/json",
            "text": json.dumps(payload, indent=2, ensure_ascii=False),
        }