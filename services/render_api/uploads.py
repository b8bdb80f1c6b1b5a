from __future__ import annotations

from pathlib import Path

from fastapi import UploadFile

from services.common.logging_setup import get_logger
from services.render.errors import ValidationError


log = get_logger("render_api.uploads")

UPLOAD_CHUNK_SIZE = 1024 * 1024


def _too_large(role: str, max_bytes: int) -> ValidationError:
    return ValidationError(
        f"upload for {role} exceeds {max_bytes} bytes",
        details={"role": role, "max_bytes": max_bytes},
        status_code=413,
    )


async def stream_upload_to_path(upload: UploadFile, dest: Path, *, max_bytes: int, role: str) -> int:
    """Copy an uploaded part into its allocated path, enforcing the size ceiling.

    The partially written file is removed when the ceiling is hit.
    """
    declared = getattr(upload, "size", None)
    if declared is not None and declared > max_bytes:
        log.warning("upload_rejected role=%s declared=%s max_bytes=%s", role, declared, max_bytes)
        raise _too_large(role, max_bytes)

    await upload.seek(0)
    total = 0
    try:
        with dest.open("wb") as buffer:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    log.warning("upload_rejected role=%s received>%s max_bytes=%s", role, total, max_bytes)
                    raise _too_large(role, max_bytes)
                buffer.write(chunk)
    except ValidationError:
        dest.unlink(missing_ok=True)
        raise
    return total
