"""
Filesystem primitives for generated artifacts: atomic writes with
permissions applied before the file becomes visible, and the exclusive
lock held while an installation writes to the install root.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from .errors import ConflictError, PermissionDeniedError, StorageError

logger = logging.getLogger(__name__)

# A lock older than this is abandoned even if its pid has been reused.
STALE_LOCK_SECONDS = 600


def atomic_write(path: Path, content: str, mode: int) -> None:
    """Write ``content`` to ``path`` so readers never see a partial file.

    The data goes to a temporary file in the same directory, is flushed and
    fsynced, gets its final permission bits, and only then replaces
    ``path``. On any failure the temporary file is removed.

    Raises:
        PermissionDeniedError: The process may not write into the directory
        StorageError: Any other write failure, naming ``path``
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
        tmp_name = None
    except PermissionError as exc:
        logger.warning("Writing %s denied: %s", path, exc)
        raise PermissionDeniedError(
            f"Permission denied writing {path.name}; make {path.parent} writable by the web server user",
            path=str(path),
        ) from exc
    except OSError as exc:
        logger.error("Writing %s failed: %s", path, exc)
        raise StorageError(f"Failed to write {path.name}: {exc.strerror or exc}", path=str(path)) from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass


def _lock_owner(path: Path) -> Optional[int]:
    try:
        return int(path.read_text(encoding="ascii").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True


def _lock_is_stale(path: Path, stale_after: float) -> bool:
    try:
        age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return True
    if age > stale_after:
        return True
    pid = _lock_owner(path)
    return pid is not None and not _pid_alive(pid)


def _acquire(path: Path) -> int:
    try:
        return os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except PermissionError as exc:
        raise PermissionDeniedError(
            f"Permission denied creating install lock in {path.parent}", path=str(path)
        ) from exc


@contextmanager
def install_lock(path: Path, stale_after: float = STALE_LOCK_SECONDS) -> Generator[Path, None, None]:
    """Hold an exclusive lock file for the duration of the block.

    A lock left behind by a dead process, or older than ``stale_after``
    seconds, is reclaimed.

    Raises:
        ConflictError: Another live installation attempt holds the lock
        PermissionDeniedError: The lock directory is not writable
        StorageError: The lock file could not be created
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = _acquire(path)
        except FileExistsError:
            if not _lock_is_stale(path, stale_after):
                raise ConflictError("Another installation attempt is writing files; try again shortly") from None
            logger.warning("Reclaiming stale install lock %s (owner pid %s)", path, _lock_owner(path))
            path.unlink(missing_ok=True)
            try:
                fd = _acquire(path)
            except FileExistsError as exc:
                raise ConflictError("Another installation attempt is writing files; try again shortly") from exc
    except PermissionError as exc:
        raise PermissionDeniedError(f"Permission denied preparing {path.parent}", path=str(path)) from exc
    except OSError as exc:
        raise StorageError(f"Could not create install lock: {exc.strerror or exc}", path=str(path)) from exc

    try:
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(str(os.getpid()))
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Install lock %s vanished before release", path)
