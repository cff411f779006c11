"""Advisory per-conversation lock so only one process drives a conversation."""

import atexit
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

try:
    import fcntl
except ImportError:  # Windows has no flock; the lock then always grants
    fcntl = None

logger = logging.getLogger(__name__)


class ConversationLock:
    """File-based flock, one lock file per conversation under ``lock_dir``.

    Each instance is one holding context. flock belongs to the open file
    description, so two instances conflict even inside one process, and the
    OS drops the lock when the holding process dies.
    """

    def __init__(self, lock_dir: Path):
        self.lock_dir = Path(lock_dir)
        self._held: dict[str, IO[str]] = {}
        atexit.register(self.release_all)

    def _path(self, conversation_id: str) -> Path:
        return self.lock_dir / f"{conversation_id}.lock"

    def acquire(self, conversation_id: str) -> bool:
        """Try to take the lock without blocking. True if held afterwards."""
        if conversation_id in self._held:
            return True
        if fcntl is None:
            logger.warning("File locking unavailable, running %s without a lock", conversation_id)
            return True

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock_file = open(self._path(conversation_id), "a+", encoding="utf-8")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            lock_file.close()
            logger.info("Conversation %s is locked by another process", conversation_id)
            return False

        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(f"{os.getpid()}\n{datetime.now(timezone.utc).isoformat()}\n")
        lock_file.flush()
        self._held[conversation_id] = lock_file
        logger.debug("Acquired lock for %s", conversation_id)
        return True

    def release(self, conversation_id: str) -> None:
        """Release the lock if this context holds it. No-op otherwise."""
        lock_file = self._held.pop(conversation_id, None)
        if lock_file is None:
            return
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        lock_file.close()
        logger.debug("Released lock for %s", conversation_id)

    def is_held(self, conversation_id: str) -> bool:
        return conversation_id in self._held

    def held_ids(self) -> list[str]:
        return list(self._held)

    def is_locked_by_other(self, conversation_id: str) -> bool:
        """True when a different context holds the lock. Own locks do not count."""
        if conversation_id in self._held or fcntl is None:
            return False
        path = self._path(conversation_id)
        if not path.exists():
            return False

        with open(path, "a+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                return True
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return False

    def release_all(self) -> None:
        for conversation_id in list(self._held):
            self.release(conversation_id)
