from __future__ import annotations

import argparse
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import List, Tuple

from services.common.profile import load_profile_env
from services.common.config import load_render_policy
from services.common.env import Env


def _ok(msg: str) -> None:
    print(f"[OK] {msg}")


def _warn(msg: str) -> None:
    print(f"[WARN] {msg}")


def _fail(msg: str) -> None:
    print(f"[FAIL] {msg}")
    raise SystemExit(2)


def run_cmd(cmd: List[str], timeout: int = 30) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        return 127, "", str(e)
    return p.returncode, p.stdout, p.stderr


def has_subtitles_filter(filters_text: str) -> bool:
    return " subtitles " in filters_text


def has_libx264(encoders_text: str) -> bool:
    return " libx264 " in encoders_text


def _check_writable(label: str, path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe = path / ".doctor_probe"
        probe.write_bytes(b"ok")
        probe.unlink()
    except OSError as e:
        _fail(f"{label} not writable: {path} ({e})")
    _ok(f"{label} OK: {path.resolve()}")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--profile", default="local", choices=["local", "prod"])
    args = parser.parse_args()

    os.environ["RENDER_PROFILE"] = args.profile
    loaded = load_profile_env()
    if loaded:
        _ok(f"Loaded env file: {loaded}")
    else:
        _warn("No env file loaded. Create deploy/env.local or deploy/env.prod (or deploy/env).")

    env = Env.load()
    ffmpeg_cmd = shlex.split(env.ffmpeg_bin)

    if ffmpeg_cmd and shutil.which(ffmpeg_cmd[0]) and shutil.which("ffprobe"):
        _ok("ffmpeg/ffprobe found")
    else:
        _fail("ffmpeg/ffprobe not found. Install ffmpeg or set RENDER_FFMPEG_BIN.")

    code, out, _ = run_cmd([*ffmpeg_cmd, "-hide_banner", "-filters"])
    if code == 0 and has_subtitles_filter(out):
        _ok("subtitles filter available (libass)")
    else:
        _warn("subtitles filter missing: caption burn-in will fail. Build ffmpeg with libass.")

    code, out, _ = run_cmd([*ffmpeg_cmd, "-hide_banner", "-encoders"])
    if code == 0 and has_libx264(out):
        _ok("libx264 encoder available")
    else:
        _fail("libx264 encoder missing.")

    try:
        policy = load_render_policy(env)
    except (OSError, ValueError) as e:
        _fail(f"render policy invalid: {e}")
    _ok(
        f"Render policy: {policy.canvas_w}x{policy.canvas_h}@{policy.fps} "
        f"cap={policy.duration_cap_sec or 'none'} preset={policy.x264_preset}"
    )

    _check_writable("Scratch dir", Path(env.scratch_dir))
    _check_writable("Log dir", Path(env.log_dir))

    if args.profile == "prod":
        if env.max_active_transcodes > (os.cpu_count() or 1):
            _warn("RENDER_MAX_ACTIVE_TRANSCODES exceeds CPU count.")
        if not env.public_base_url:
            _warn("RENDER_PUBLIC_BASE_URL is empty; download URLs follow the request host.")

    _ok("Doctor finished.")


if __name__ == "__main__":
    main()
