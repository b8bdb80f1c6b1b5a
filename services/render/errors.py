from __future__ import annotations

from typing import Any, Dict, Optional


class RenderError(Exception):
    """Base class for every error the render API reports to callers."""

    code = "render_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        err: Dict[str, Any] = {"code": self.code, "message": self.message, "request_id": self.request_id}
        if self.details:
            err["details"] = self.details
        return {"success": False, "error": err}


class ValidationError(RenderError):
    """Missing, empty or oversized input. Client fault."""

    code = "validation_error"
    status_code = 400


class BusyError(RenderError):
    """All transcode slots and queue places are taken."""

    code = "busy"
    status_code = 503


class TranscodeFailure(RenderError):
    """ffmpeg exited nonzero, was killed, or could not be started."""

    code = "transcode_failed"
    status_code = 500


class OutputMissingError(RenderError):
    """ffmpeg reported success but left no usable output."""

    code = "output_missing"
    status_code = 500


class TranscodeTimeout(RenderError):
    code = "transcode_timeout"
    status_code = 504


class NotFoundError(RenderError):
    """Unknown, expired or already consumed download token."""

    code = "not_found"
    status_code = 404
