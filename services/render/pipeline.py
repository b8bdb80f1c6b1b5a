from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from services.common.config import RenderPolicy
from services.common.logging_setup import get_logger
from services.common.utils import tail_text
from services.render.admission import TranscodeGate
from services.render.artifacts import (
    INPUT_ROLES,
    ROLE_AUDIO_IN,
    ROLE_CAPTIONS_IN,
    ROLE_VIDEO_IN,
    ROLE_VIDEO_OUT,
    STATE_READY,
    Artifact,
    ArtifactStore,
)
from services.render.delivery import DeliveryRecord, DeliveryRegistry
from services.render.errors import (
    OutputMissingError,
    RenderError,
    TranscodeFailure,
    TranscodeTimeout,
    ValidationError,
)
from services.render.executor import (
    REASON_OUTPUT_MISSING,
    REASON_TIMEOUT,
    TranscodeExecutor,
    TranscodeOutcome,
)
from services.render.transform import build_ffmpeg_argv, build_transform_spec


log = get_logger("render.pipeline")

STATE_RECEIVED = "received"
STATE_VALIDATED = "validated"
STATE_TRANSCODING = "transcoding"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"

_TRANSITIONS = {
    STATE_RECEIVED: {STATE_VALIDATED, STATE_FAILED},
    STATE_VALIDATED: {STATE_TRANSCODING, STATE_FAILED},
    STATE_TRANSCODING: {STATE_SUCCEEDED, STATE_FAILED},
    STATE_SUCCEEDED: set(),
    STATE_FAILED: set(),
}

# stderr surfaced to callers; the full tail stays in the logs
DETAILS_MAX_CHARS = 2000


def new_request_id() -> str:
    return f"req_{secrets.token_hex(8)}"


@dataclass
class RenderRequest:
    request_id: str
    created_at: float
    state: str = STATE_RECEIVED
    artifacts: Dict[str, Artifact] = field(default_factory=dict)

    def advance(self, to: str) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal render transition {self.state} -> {to} ({self.request_id})")
        self.state = to


class RenderPipeline:
    """Drives one RenderRequest from uploaded inputs to a delivery token.

    received -> validated -> transcoding -> succeeded | failed
    No retries: a failed transcode is reported and cleaned up.
    """

    def __init__(
        self,
        *,
        store: ArtifactStore,
        registry: DeliveryRegistry,
        executor: TranscodeExecutor,
        gate: TranscodeGate,
        policy: RenderPolicy,
        ffmpeg_cmd: Sequence[str],
        max_upload_bytes: int,
        timeout_sec: float,
    ) -> None:
        self.store = store
        self.registry = registry
        self.executor = executor
        self.gate = gate
        self.policy = policy
        self.ffmpeg_cmd = list(ffmpeg_cmd)
        self.max_upload_bytes = int(max_upload_bytes)
        self.timeout_sec = float(timeout_sec)

    def open_request(self) -> RenderRequest:
        req = RenderRequest(request_id=new_request_id(), created_at=time.time())
        log.info("render_received request_id=%s", req.request_id)
        return req

    def allocate_input(self, req: RenderRequest, role: str, *, suffix: Optional[str] = None) -> Artifact:
        if role not in INPUT_ROLES:
            raise ValueError(f"not an input role: {role}")
        if req.state != STATE_RECEIVED:
            raise RuntimeError(f"inputs are closed for {req.request_id} ({req.state})")
        if role in req.artifacts:
            raise ValueError(f"duplicate input role {role} for {req.request_id}")
        art = self.store.allocate(req.request_id, role, suffix)
        req.artifacts[role] = art
        return art

    def _cleanup(self, req: RenderRequest, roles: Sequence[str]) -> None:
        for role in roles:
            art = req.artifacts.get(role)
            if art is not None:
                self.store.delete(art)

    def abort(self, req: RenderRequest, exc: RenderError) -> RenderError:
        """Fail the request and delete everything it created."""
        if exc.request_id is None:
            exc.request_id = req.request_id
        if req.state not in (STATE_SUCCEEDED, STATE_FAILED):
            req.advance(STATE_FAILED)
        self._cleanup(req, list(req.artifacts.keys()))
        log.warning("render_failed request_id=%s code=%s message=%s", req.request_id, exc.code, exc.message)
        return exc

    def _validate(self, req: RenderRequest) -> None:
        missing = [
            part
            for part, role in (("video", ROLE_VIDEO_IN), ("audio", ROLE_AUDIO_IN))
            if role not in req.artifacts
        ]
        if missing:
            raise ValidationError(
                "Missing required files: video and audio",
                details={"missing": missing},
            )
        for role, art in req.artifacts.items():
            size = self.store.size_of(art)
            if art.state != STATE_READY or size <= 0:
                raise ValidationError(f"empty upload for {role}", details={"role": role})
            if size > self.max_upload_bytes:
                raise ValidationError(
                    f"upload for {role} exceeds {self.max_upload_bytes} bytes",
                    details={"role": role, "max_bytes": self.max_upload_bytes},
                    status_code=413,
                )

    def _outcome_error(self, req: RenderRequest, outcome: TranscodeOutcome) -> RenderError:
        details = {
            "reason": outcome.reason,
            "exit_code": outcome.exit_code,
            "duration_ms": outcome.duration_ms,
            "stderr_tail": tail_text(outcome.stderr_tail, DETAILS_MAX_CHARS),
        }
        if outcome.reason == REASON_TIMEOUT:
            return TranscodeTimeout(
                f"transcode exceeded {int(self.timeout_sec)}s", request_id=req.request_id, details=details
            )
        if outcome.reason == REASON_OUTPUT_MISSING:
            return OutputMissingError("Output file not generated", request_id=req.request_id, details=details)
        return TranscodeFailure("FFmpeg failed", request_id=req.request_id, details=details)

    async def render(self, req: RenderRequest) -> DeliveryRecord:
        try:
            self._validate(req)
        except RenderError as e:
            raise self.abort(req, e)
        req.advance(STATE_VALIDATED)
        log.info("render_validated request_id=%s roles=%s", req.request_id, ",".join(sorted(req.artifacts)))

        captions = req.artifacts.get(ROLE_CAPTIONS_IN)
        spec = build_transform_spec(self.policy, captions.path if captions is not None else None)

        try:
            out = self.store.allocate(req.request_id, ROLE_VIDEO_OUT)
            req.artifacts[ROLE_VIDEO_OUT] = out
            argv = build_ffmpeg_argv(
                self.ffmpeg_cmd,
                spec,
                video=req.artifacts[ROLE_VIDEO_IN].path,
                audio=req.artifacts[ROLE_AUDIO_IN].path,
                output=out.path,
            )
            async with self.gate.slot(req.request_id):
                req.advance(STATE_TRANSCODING)
                log.info("render_transcoding request_id=%s captions=%s", req.request_id, spec.has_captions)
                log.debug("render_argv request_id=%s argv=%s", req.request_id, argv)
                outcome = await self.executor.run(argv, timeout_sec=self.timeout_sec, output=out.path)
        except RenderError as e:
            raise self.abort(req, e)
        except OSError as e:
            log.exception("render_io_failed request_id=%s", req.request_id)
            raise self.abort(req, RenderError("failed to prepare output", request_id=req.request_id)) from e
        except BaseException:
            self.abort(req, TranscodeFailure("render interrupted", request_id=req.request_id))
            raise

        if not outcome.ok:
            log.warning(
                "render_transcode_failed request_id=%s reason=%s exit_code=%s stderr_tail=%s",
                req.request_id,
                outcome.reason,
                outcome.exit_code,
                tail_text(outcome.stderr_tail, DETAILS_MAX_CHARS),
            )
            raise self.abort(req, self._outcome_error(req, outcome))

        req.advance(STATE_SUCCEEDED)
        self.store.mark_ready(out)
        self._cleanup(req, INPUT_ROLES)
        rec = self.registry.register(
            request_id=req.request_id,
            artifact=out,
            size_bytes=self.store.size_of(out),
            duration_ms=outcome.duration_ms,
        )
        log.info(
            "render_succeeded request_id=%s size_bytes=%s duration_ms=%s",
            req.request_id,
            rec.size_bytes,
            rec.duration_ms,
        )
        return rec
