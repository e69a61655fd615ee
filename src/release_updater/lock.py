"""Run-level exclusive lock for a deployment root."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from release_updater.errors import FilesystemError, LockHeldError
from release_updater.logging import get_logger

log = get_logger("release_updater.lock")


class UpdateLock:
    """Exclusive lock file held for the duration of one update run.

    The file is created with ``O_CREAT | O_EXCL``; if it already exists
    another run is in flight (or crashed) and acquisition fails fast.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        try:
            fd = os.open(str(self._path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise LockHeldError(
                f"Another update is in progress (lock exists): {self._path}. "
                "Remove it if no update is running."
            ) from exc
        except OSError as exc:
            raise FilesystemError(f"Could not create lock file {self._path}: {exc}") from exc

        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"pid={os.getpid()}\n")
            fh.write(f"started_at={datetime.now(UTC).isoformat()}\n")
        self._held = True
        log.debug("lock_acquired", path=str(self._path))

    def release(self) -> None:
        if not self._held:
            return
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            log.warning("lock_release_failed", path=str(self._path), error=str(exc))
        self._held = False
        log.debug("lock_released", path=str(self._path))

    def __enter__(self) -> UpdateLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
