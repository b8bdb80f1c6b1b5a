from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from services.common.logging_setup import get_logger
from services.render.artifacts import Artifact, ArtifactStore
from services.render.errors import NotFoundError


log = get_logger("render.delivery")


@dataclass(frozen=True)
class DeliveryRecord:
    token: str
    request_id: str
    artifact: Artifact
    size_bytes: int
    duration_ms: int
    expires_at: float


class DeliveryRegistry:
    """Token based pull delivery: one full download, or expiry, ends a record.

    A download first claim()s the token, which hides it from every other
    caller. The transfer then either complete()s it (file deleted) or
    release()s it (token usable again until expiry). Claims that are never
    settled are swept once they are older than the ttl.

    This is the only place finished outputs are handed out; an upload to
    durable storage would hook in at register().
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        ttl_sec: float,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl_sec = float(ttl_sec)
        self._now_fn = now_fn
        self._records: Dict[str, DeliveryRecord] = {}
        # token -> (record, sweep deadline)
        self._claimed: Dict[str, Tuple[DeliveryRecord, float]] = {}
        self._lock = threading.Lock()

    @property
    def ttl_sec(self) -> float:
        return self._ttl_sec

    def __len__(self) -> int:
        with self._lock:
            return len(self._records) + len(self._claimed)

    def register(self, *, request_id: str, artifact: Artifact, size_bytes: int, duration_ms: int) -> DeliveryRecord:
        rec = DeliveryRecord(
            token=secrets.token_urlsafe(32),
            request_id=request_id,
            artifact=artifact,
            size_bytes=int(size_bytes),
            duration_ms=int(duration_ms),
            expires_at=self._now_fn() + self._ttl_sec,
        )
        with self._lock:
            self._records[rec.token] = rec
        log.info("delivery_registered request_id=%s size_bytes=%s ttl_sec=%s", request_id, size_bytes, int(self._ttl_sec))
        return rec

    def _usable(self, rec: DeliveryRecord) -> bool:
        return rec.expires_at > self._now_fn() and self._store.exists(rec.artifact)

    def lookup(self, token: str) -> DeliveryRecord:
        """Return an unclaimed, live record without taking it."""
        with self._lock:
            rec = self._records.get(token)
        if rec is None:
            raise NotFoundError("download token not found")
        if not self._usable(rec):
            self._drop(token)
            raise NotFoundError("download token not found")
        return rec

    def claim(self, token: str) -> DeliveryRecord:
        """Take the record for one transfer; concurrent claims get NotFoundError."""
        with self._lock:
            rec = self._records.pop(token, None)
            if rec is not None:
                self._claimed[token] = (rec, self._now_fn() + self._ttl_sec)
        if rec is None:
            raise NotFoundError("download token not found")
        if not self._usable(rec):
            self._drop(token)
            raise NotFoundError("download token not found")
        log.info("delivery_claimed request_id=%s", rec.request_id)
        return rec

    def release(self, token: str) -> None:
        """Return a claimed record after an aborted transfer."""
        with self._lock:
            entry = self._claimed.pop(token, None)
        if entry is None:
            return
        rec = entry[0]
        if not self._usable(rec):
            self._store.delete(rec.artifact)
            log.info("delivery_released_expired request_id=%s", rec.request_id)
            return
        with self._lock:
            self._records[token] = rec
        log.info("delivery_released request_id=%s", rec.request_id)

    def complete(self, token: str) -> None:
        """Called after a full transfer; safe to call more than once."""
        with self._lock:
            entry = self._claimed.pop(token, None)
            rec = entry[0] if entry is not None else self._records.pop(token, None)
        if rec is None:
            return
        self._store.mark_consumed(rec.artifact)
        self._store.delete(rec.artifact)
        log.info("delivery_completed request_id=%s", rec.request_id)

    def _drop(self, token: str) -> Optional[DeliveryRecord]:
        with self._lock:
            rec = self._records.pop(token, None)
            if rec is None:
                entry = self._claimed.pop(token, None)
                rec = entry[0] if entry is not None else None
        if rec is not None:
            self._store.delete(rec.artifact)
        return rec

    def sweep(self, now: Optional[float] = None) -> int:
        ts = self._now_fn() if now is None else float(now)
        with self._lock:
            due: List[str] = [t for t, r in self._records.items() if r.expires_at <= ts]
            due.extend(t for t, (_, deadline) in self._claimed.items() if deadline <= ts)
        expired = 0
        for token in due:
            rec = self._drop(token)
            if rec is not None:
                expired += 1
                log.info("delivery_expired request_id=%s", rec.request_id)
        return expired

    def discard_all(self) -> int:
        with self._lock:
            tokens = list(self._records.keys()) + list(self._claimed.keys())
        for token in tokens:
            self._drop(token)
        return len(tokens)
