"""
Session persistence with atomic file writes.

Each active session is stored as ``sessions/<id>.json``. Writes go to a
temporary file that is then renamed over the target, so a reader (or a
crash) never observes a half-written record. Sessions that reach a terminal
state are moved to ``archive/``; they still count towards issue dedupe.

Directory layout under the store root::

    sessions/<id>.json        active sessions
    archive/<id>.json         finished sessions (done or failed)
    transcripts/<id>.jsonl    agent transcripts, one message per line
    messages/<id>.txt         operator messages awaiting delivery

Concurrency Model:
    Each session has its own ``asyncio.Lock`` (``lock(session_id)``). The
    scheduler holds it for the whole of an advancement step; ``save`` and
    ``load`` do not take it themselves, so they can be called under it.
"""

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import ValidationError

from mergeloop.models.domain import Session, _utcnow
from mergeloop.utils.slug import slugify

log = structlog.get_logger(__name__)


def new_session_id(source: str, issue_id: str) -> str:
    """Unique, filesystem-safe session ID such as ``github-42-3f9a1c2b``."""
    return f"{source}-{slugify(issue_id, max_length=24) or 'item'}-{uuid.uuid4().hex[:8]}"


class SessionStore:
    """Persist sessions as JSON files.

    Attributes:
        root: Store directory; subdirectories are created on construction.

    Example:
        >>> store = SessionStore("~/.mergeloop")
        >>> async with store.lock(session.id):
        ...     await store.save(session)
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()
        self.sessions_dir = self.root / "sessions"
        self.archive_dir = self.root / "archive"
        self.transcripts_dir = self.root / "transcripts"
        self.messages_dir = self.root / "messages"
        for directory in (self.sessions_dir, self.archive_dir, self.transcripts_dir, self.messages_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the session's lock, creating it on first use.

        Creation needs no meta-lock: there is no await between the lookup
        and the insert.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def is_locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def forget(self, session_id: str) -> None:
        """Drop the lock of a session that has been archived."""
        self._locks.pop(session_id, None)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    async def create(self, session: Session) -> Session:
        """Persist a new session.

        Raises:
            FileExistsError: If a session with the same ID already exists
        """
        if self._session_path(session.id).exists():
            raise FileExistsError(f"Session {session.id} already exists")
        await self.save(session)
        log.info("session_created", session_id=session.id, issue_key=session.issue_key, state=session.current_state)
        return session

    async def save(self, session: Session) -> None:
        """Atomically write the session record."""
        await _write_json(self._session_path(session.id), session.model_dump(mode="json"))

    async def load(self, session_id: str) -> Session | None:
        """Load an active session, or None if it does not exist."""
        return await _read_session(self._session_path(session_id))

    async def list_active(self) -> list[Session]:
        """All active sessions, oldest first. Unreadable files are skipped."""
        return await _read_all(self.sessions_dir)

    async def archive(self, session: Session) -> Session:
        """Move a finished session to the archive and stamp ``completed_at``."""
        if session.completed_at is None:
            session = session.model_copy(update={"completed_at": _utcnow()})
        await _write_json(self.archive_dir / f"{session.id}.json", session.model_dump(mode="json"))
        self._session_path(session.id).unlink(missing_ok=True)
        log.info("session_archived", session_id=session.id, state=session.current_state, pr_merged=session.pr_merged)
        return session

    async def load_archived(self, session_id: str) -> Session | None:
        return await _read_session(self.archive_dir / f"{session_id}.json")

    async def list_archived(self) -> list[Session]:
        return await _read_all(self.archive_dir)

    async def known_issue_keys(self) -> set[str]:
        """Issue keys of every active or archived session."""
        sessions = await self.list_active() + await self.list_archived()
        return {session.issue_key for session in sessions if session.issue_key}

    # ------------------------------------------------------------------
    # Transcripts and operator messages
    # ------------------------------------------------------------------

    async def save_transcript(self, session_id: str, transcript: list[dict[str, Any]]) -> Path:
        """Append an agent transcript to the session's JSONL file."""
        path = self.transcripts_dir / f"{session_id}.jsonl"
        async with aiofiles.open(path, "a") as f:
            for message in transcript:
                await f.write(json.dumps(message, default=str) + "\n")
        return path

    async def post_message(self, session_id: str, message: str) -> None:
        """Queue an operator message for the daemon to deliver.

        Used by the CLI, which runs in a different process from the daemon.
        """
        await _write_text(self.messages_dir / f"{session_id}.txt", message)

    async def drain_messages(self) -> dict[str, str]:
        """Read and delete every queued operator message."""
        messages = {}
        for path in sorted(self.messages_dir.glob("*.txt")):
            async with aiofiles.open(path) as f:
                messages[path.stem] = await f.read()
            path.unlink(missing_ok=True)
        return messages


async def _write_text(path: Path, content: str) -> None:
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    async with aiofiles.open(tmp_path, "w") as f:
        await f.write(content)
    # rename is atomic on POSIX within one filesystem
    tmp_path.replace(path)


async def _write_json(path: Path, data: dict[str, Any]) -> None:
    await _write_text(path, json.dumps(data, indent=2))


async def _read_session(path: Path) -> Session | None:
    if not path.exists():
        return None
    async with aiofiles.open(path) as f:
        content = await f.read()
    return Session.model_validate_json(content)


async def _read_all(directory: Path) -> list[Session]:
    sessions = []
    for path in directory.glob("*.json"):
        try:
            session = await _read_session(path)
        except (ValidationError, OSError) as e:
            log.error("session_file_unreadable", path=str(path), error=str(e))
            continue
        if session is not None:
            sessions.append(session)
    return sorted(sessions, key=lambda s: s.created_at)
