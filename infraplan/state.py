"""State store.

Persists last-applied resource attributes as JSON so that the next plan can
diff against them. Writes are atomic (temp file + rename) and guarded by a
lock file next to the state file.
"""

import json
import logging
import os
import socket
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from infraplan.errors import StateError, StateLockError
from infraplan.models.state import STATE_FORMAT_VERSION, StateDocument

logger = logging.getLogger(__name__)

_LOCK_POLL_INTERVAL = 0.2


class StateStore:
    """JSON file backed state for one namespace.

    Attributes:
        path: State file location
        namespace: Namespace recorded in a freshly created document
    """

    def __init__(self, path: str, namespace: str = "default"):
        self.path = path
        self.namespace = namespace

    @property
    def lock_path(self) -> str:
        return self.path + ".lock"

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> StateDocument:
        """Load state; an absent file yields an empty document.

        Raises:
            StateError: If the file is not valid state JSON or has an unknown version
        """
        if not self.exists():
            return StateDocument(namespace=self.namespace)

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise StateError(f"cannot read state file {self.path}: {exc}")

        if not isinstance(data, dict):
            raise StateError(f"state file {self.path} is not a JSON object")
        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateError(
                f"state file {self.path} has format version {version}, "
                f"expected {STATE_FORMAT_VERSION}"
            )
        try:
            doc = StateDocument.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateError(f"state file {self.path} is malformed: {exc}")

        logger.debug("Loaded state serial %d (%d resources) from %s",
                     doc.serial, len(doc.resources), self.path)
        return doc

    def save(self, doc: StateDocument) -> StateDocument:
        """Increment the serial and write the document atomically."""
        doc.serial += 1
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(doc.to_dict(), fh, indent=2, sort_keys=False)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug("Saved state serial %d to %s", doc.serial, self.path)
        return doc

    def _read_lock_info(self) -> dict:
        try:
            with open(self.lock_path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError):
            return {}

    def acquire(self, timeout: float = 0.0) -> None:
        """Create the lock file, waiting up to ``timeout`` seconds.

        Raises:
            StateLockError: If another process holds the lock
        """
        os.makedirs(os.path.dirname(os.path.abspath(self.lock_path)), exist_ok=True)
        deadline = time.monotonic() + timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise StateLockError(self.lock_path, self._read_lock_info())
                time.sleep(_LOCK_POLL_INTERVAL)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({
                    "pid": os.getpid(),
                    "host": socket.gethostname(),
                    "created": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                }, fh)
            logger.debug("Acquired state lock %s", self.lock_path)
            return

    def release(self) -> None:
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        logger.debug("Released state lock %s", self.lock_path)

    @contextmanager
    def lock(self, timeout: float = 0.0) -> Iterator[None]:
        self.acquire(timeout)
        try:
            yield
        finally:
            self.release()

    def is_locked(self) -> bool:
        return os.path.exists(self.lock_path)

    def force_unlock(self) -> Optional[dict]:
        """Remove a stale lock; returns what the lock file said about its holder."""
        if not self.is_locked():
            return None
        info = self._read_lock_info()
        self.release()
        logger.warning("Force-removed state lock %s", self.lock_path)
        return info
