from __future__ import annotations

import logging
import unittest
from pathlib import Path

from services.common.logging_setup import setup_logging, get_logger, _CONFIGURED_FOR

from tests._helpers import temp_env


class TestSetupLogging(unittest.TestCase):
    def test_setup_logging_creates_service_log_file(self) -> None:
        with temp_env() as (_, env):
            # reset configured services for isolation
            _CONFIGURED_FOR.clear()

            root = logging.getLogger()
            for h in list(root.handlers):
                try:
                    h.close()
                except Exception:
                    pass
                root.removeHandler(h)

            setup_logging(env, service="svc_test")
            setup_logging(env, service="svc_test")
            log = get_logger("render.pipeline")
            log.info("render_received request_id=req_x")

            p = Path(env.log_dir) / "svc_test.log"
            self.assertTrue(p.exists())
            txt = p.read_text(encoding="utf-8", errors="ignore")
            self.assertIn("render_received request_id=req_x", txt)
            self.assertIn("| svc_test |", txt)
            self.assertEqual(txt.count("render_received"), 1)

            for h in list(root.handlers):
                h.close()
                root.removeHandler(h)
            _CONFIGURED_FOR.clear()


if __name__ == "__main__":
    unittest.main()
