from __future__ import annotations

import os
from pathlib import Path
from dotenv import load_dotenv


def load_profile_env() -> str:
    """Load render API settings from deploy/ based on RENDER_PROFILE (default prod).

    Order (first existing file wins):
    - deploy/env.<profile>, e.g. deploy/env.local with a small
      RENDER_MAX_UPLOAD_MB and RENDER_PUBLIC_BASE_URL unset
    - deploy/env

    Variables already present in the process environment win, so a
    container can override RENDER_SCRATCH_DIR or RENDER_PORT per host.
    Returns the loaded path, or "" when neither file exists.
    """
    profile = os.environ.get("RENDER_PROFILE", "").strip() or "prod"
    cand = Path("deploy") / f"env.{profile}"
    if cand.exists():
        load_dotenv(str(cand), override=False)
        return str(cand)
    fallback = Path("deploy") / "env"
    if fallback.exists():
        load_dotenv(str(fallback), override=False)
        return str(fallback)
    return ""
