from __future__ import annotations

import itertools
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from services.common.logging_setup import get_logger


log = get_logger("render.artifacts")

ROLE_VIDEO_IN = "video-in"
ROLE_AUDIO_IN = "audio-in"
ROLE_CAPTIONS_IN = "captions-in"
ROLE_VIDEO_OUT = "video-out"

INPUT_ROLES = (ROLE_VIDEO_IN, ROLE_AUDIO_IN, ROLE_CAPTIONS_IN)
ALL_ROLES = INPUT_ROLES + (ROLE_VIDEO_OUT,)

STATE_PENDING = "pending"
STATE_READY = "ready"
STATE_CONSUMED = "consumed"
STATE_DELETED = "deleted"

_DEFAULT_SUFFIX = {
    ROLE_VIDEO_IN: ".bin",
    ROLE_AUDIO_IN: ".bin",
    ROLE_CAPTIONS_IN: ".srt",
    ROLE_VIDEO_OUT: ".mp4",
}


@dataclass
class Artifact:
    path: Path
    role: str
    request_id: str
    state: str = STATE_PENDING


class ArtifactStore:
    """Owns naming and deletion of files under the scratch directory.

    Writing bytes into an allocated path is the caller's job.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def allocate(self, request_id: str, role: str, suffix: Optional[str] = None) -> Artifact:
        if role not in ALL_ROLES:
            raise ValueError(f"unknown artifact role: {role}")
        with self._lock:
            seq = next(self._counter)
        # counter is unique within the process, random part across restarts
        name = f"{request_id}_{role}_{seq:06d}_{secrets.token_hex(4)}{suffix or _DEFAULT_SUFFIX[role]}"
        self.ensure_root()
        return Artifact(path=self.root / name, role=role, request_id=request_id)

    def exists(self, artifact: Artifact) -> bool:
        return artifact.state != STATE_DELETED and artifact.path.is_file()

    def size_of(self, artifact: Artifact) -> int:
        try:
            return artifact.path.stat().st_size
        except FileNotFoundError:
            return 0

    def mark_ready(self, artifact: Artifact) -> None:
        with self._lock:
            if artifact.state == STATE_PENDING:
                artifact.state = STATE_READY

    def mark_consumed(self, artifact: Artifact) -> None:
        with self._lock:
            if artifact.state in (STATE_PENDING, STATE_READY):
                artifact.state = STATE_CONSUMED

    def delete(self, artifact: Artifact) -> bool:
        """Delete the backing file once. Returns False only on a real I/O failure.

        Missing files and repeated calls are no-ops; failures are logged,
        never raised.
        """
        with self._lock:
            if artifact.state == STATE_DELETED:
                return True
            artifact.state = STATE_DELETED
        try:
            artifact.path.unlink()
            log.info("artifact_deleted request_id=%s role=%s path=%s", artifact.request_id, artifact.role, artifact.path.name)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(
                "cleanup_warning request_id=%s role=%s path=%s err=%s",
                artifact.request_id,
                artifact.role,
                artifact.path,
                e,
            )
            return False
        return True

    def purge(self) -> int:
        """Remove leftovers from a previous process. Nothing survives a restart."""
        if not self.root.exists():
            return 0
        removed = 0
        for p in self.root.iterdir():
            if not p.is_file():
                continue
            try:
                p.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                log.warning("cleanup_warning path=%s err=%s", p, e)
        if removed:
            log.info("scratch_purged root=%s removed=%s", self.root, removed)
        return removed
