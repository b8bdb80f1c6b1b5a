from __future__ import annotations

from services.common.profile import load_profile_env
import uvicorn

from services.common.env import Env
from services.common.logging_setup import setup_logging, get_logger


def main() -> None:
    # load deploy/env if present
    load_profile_env()
    env = Env.load()
    setup_logging(env, service="render_api")
    log = get_logger("render_api")
    log.info(
        "starting api bind=%s port=%s scratch=%s max_active=%s",
        env.bind,
        env.port,
        env.scratch_dir,
        env.max_active_transcodes,
    )
    uvicorn.run("services.render_api.app:app", host=env.bind, port=env.port, reload=False)


if __name__ == "__main__":
    main()
