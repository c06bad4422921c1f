from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from conductor.errors import ConcurrentModification

log = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# An empty lock file belongs to a holder that has not written its pid yet;
# only one left this long is treated as abandoned.
UNWRITTEN_LOCK_GRACE_SECONDS = 10.0


def _break_stale_lock(lock_file: Path) -> bool:
    try:
        content = lock_file.read_text(encoding="utf-8").strip()
        age = time.time() - lock_file.stat().st_mtime
    except OSError:
        return False
    try:
        holder = int(content)
    except ValueError:
        if age < UNWRITTEN_LOCK_GRACE_SECONDS:
            return False
        holder = None
    if holder is not None and pid_alive(holder):
        return False
    log.warning("removing stale lock %s held by %s", lock_file, holder or "an unknown process")
    try:
        lock_file.unlink()
    except FileNotFoundError:
        pass
    return True


@contextmanager
def file_lock(lock_file: Path, timeout_seconds: float = 3.0) -> Iterator[None]:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            if _break_stale_lock(lock_file):
                continue
            if time.monotonic() - start > timeout_seconds:
                raise ConcurrentModification(
                    f"Timed out waiting for lock {lock_file.name}; another process holds it.",
                    attempted="acquire lock",
                ) from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass
