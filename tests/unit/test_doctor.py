from __future__ import annotations

import sys
import unittest

from scripts.doctor import has_libx264, has_subtitles_filter, run_cmd


class TestDoctorHelpers(unittest.TestCase):
    def test_filter_and_encoder_detection(self) -> None:
        filters = " ... subtitles         V->V       Render text subtitles onto input video using the libass library.\n"
        encoders = " V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC (codec h264)\n"
        self.assertTrue(has_subtitles_filter(filters))
        self.assertFalse(has_subtitles_filter(" ... ass  V->V  Render ASS subtitles\n"))
        self.assertTrue(has_libx264(encoders))
        self.assertFalse(has_libx264(" V....D libx265 H.265\n"))

    def test_run_cmd_missing_binary(self) -> None:
        code, _out, err = run_cmd(["definitely-not-a-real-ffmpeg-binary"])
        self.assertEqual(code, 127)
        self.assertTrue(err)

    def test_run_cmd_captures_output(self) -> None:
        code, out, _err = run_cmd([sys.executable, "-c", "print('ok')"])
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), "ok")


if __name__ == "__main__":
    unittest.main()
