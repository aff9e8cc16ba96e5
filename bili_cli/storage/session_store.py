"""
Durable storage for the authentication session.
"""

import asyncio
import json
import logging
import threading
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from bili_cli.exceptions import IoFailureError
from bili_cli.models.session import Session

from .atomic import write_json_atomic

log = logging.getLogger(__name__)


class SessionStore:
    """
    Owns the session record on disk. Readers receive immutable snapshots through
    `current`; all mutations go through this class and are written atomically.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self._current: Optional[Session] = None
        self._loaded = False

    @property
    def current(self) -> Optional[Session]:
        """The in-memory snapshot, loading it from disk on first access."""
        if not self._loaded:
            self.load()
        return self._current

    def load(self) -> Optional[Session]:
        """
        Reads the session record. Never raises: a missing, unreadable, corrupt, or
        invalidated record means "not logged in" and yields None.
        """
        self._loaded = True
        self._current = None
        if not self.path.is_file():
            return None

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            session = Session.model_validate(raw)
        except (OSError, ValueError, ValidationError) as e:
            log.warning(f"[yellow]⚠ Ignoring unreadable session file: {e}[/yellow]")
            return None

        if not session.valid:
            log.debug("Stored session has been invalidated.")
            return None

        self._current = session
        return session

    def save(self, session: Session) -> None:
        """Atomically persists `session` and makes it the current snapshot."""
        with self._lock:
            try:
                write_json_atomic(self.path, session.model_dump(mode="json"))
            except OSError as e:
                raise IoFailureError(f"Could not write session file: {e}") from e
            self._current = session
            self._loaded = True
        log.debug(f"Session saved to {self.path}")

    def invalidate(self) -> None:
        """Marks the stored session as no longer valid, e.g. after an auth failure."""
        session = self.current
        if session is None:
            return
        log.warning("[yellow]⚠ Session expired; please log in again.[/yellow]")
        self.save(session.model_copy(update={"valid": False}))
        self._current = None

    def clear(self) -> None:
        """Deletes the session record (logout)."""
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                raise IoFailureError(f"Could not remove session file: {e}") from e
            self._current = None
            self._loaded = True

    def update_signing_key(self, key: str) -> None:
        """Persists a freshly derived signing key into the current session."""
        session = self.current
        if session is None:
            return
        now = time.time()
        self.save(
            session.model_copy(
                update={"signing_key": key, "signing_key_at": now, "refreshed_at": now}
            )
        )

    # Non-blocking wrappers for callers on the event loop
    async def save_async(self, session: Session) -> None:
        await asyncio.to_thread(self.save, session)

    async def invalidate_async(self) -> None:
        await asyncio.to_thread(self.invalidate)

    async def update_signing_key_async(self, key: str) -> None:
        await asyncio.to_thread(self.update_signing_key, key)
