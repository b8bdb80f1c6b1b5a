from __future__ import annotations

import asyncio
import os
import unittest
from unittest.mock import patch

from services.render.artifacts import (
    ROLE_AUDIO_IN,
    ROLE_CAPTIONS_IN,
    ROLE_VIDEO_IN,
    ROLE_VIDEO_OUT,
    STATE_READY,
)
from services.render.errors import (
    BusyError,
    OutputMissingError,
    RenderError,
    TranscodeFailure,
    TranscodeTimeout,
    ValidationError,
)
from services.render.pipeline import STATE_FAILED, STATE_RECEIVED, STATE_SUCCEEDED

from tests._helpers import add_input, ffmpeg_calls, make_pipeline, scratch_files, temp_env


class TestPipelineRender(unittest.TestCase):
    def test_success_keeps_only_output(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            self.assertEqual(req.state, STATE_RECEIVED)
            add_input(p, req, ROLE_VIDEO_IN, b"video-bytes")
            add_input(p, req, ROLE_AUDIO_IN, b"audio-bytes")
            add_input(p, req, ROLE_CAPTIONS_IN, b"1\n00:00:00,000 --> 00:00:01,000\nhi\n", suffix=".srt")

            rec = asyncio.run(p.render(req))

            self.assertEqual(req.state, STATE_SUCCEEDED)
            self.assertEqual(rec.request_id, req.request_id)
            self.assertGreater(rec.size_bytes, 0)
            files = scratch_files(env)
            self.assertEqual(files, [rec.artifact.path])
            self.assertEqual(rec.artifact.role, ROLE_VIDEO_OUT)
            self.assertEqual(rec.artifact.state, STATE_READY)
            self.assertIs(p.registry.lookup(rec.token), rec)

            calls = ffmpeg_calls(env)
            self.assertEqual(len(calls), 1)
            vf = calls[0][calls[0].index("-vf") + 1]
            self.assertEqual(vf.count("subtitles="), 1)
            self.assertIn(str(req.artifacts[ROLE_CAPTIONS_IN].path), vf)

    def test_without_captions_has_no_caption_stage(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            asyncio.run(p.render(req))
            argv = ffmpeg_calls(env)[0]
            self.assertNotIn("subtitles", argv[argv.index("-vf") + 1])

    def test_missing_audio_rejected_without_spawn(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            with self.assertRaises(ValidationError) as cm:
                asyncio.run(p.render(req))
            self.assertEqual(cm.exception.details["missing"], ["audio"])
            self.assertEqual(req.state, STATE_FAILED)
            self.assertEqual(ffmpeg_calls(env), [])
            self.assertEqual(scratch_files(env), [])

    def test_missing_video_rejected_without_spawn(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            with self.assertRaises(ValidationError):
                asyncio.run(p.render(req))
            self.assertEqual(ffmpeg_calls(env), [])
            self.assertEqual(scratch_files(env), [])

    def test_empty_input_rejected(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            with self.assertRaises(ValidationError):
                asyncio.run(p.render(req))
            self.assertEqual(ffmpeg_calls(env), [])

    def test_oversized_input_rejected_413(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            p.max_upload_bytes = 4
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"0123456789")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            with self.assertRaises(ValidationError) as cm:
                asyncio.run(p.render(req))
            self.assertEqual(cm.exception.status_code, 413)
            self.assertEqual(ffmpeg_calls(env), [])
            self.assertEqual(scratch_files(env), [])

    def test_nonzero_exit_cleans_everything(self) -> None:
        with temp_env(mode="fail") as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            add_input(p, req, ROLE_CAPTIONS_IN, b"c")
            with self.assertRaises(TranscodeFailure) as cm:
                asyncio.run(p.render(req))
            err = cm.exception
            self.assertEqual(err.request_id, req.request_id)
            self.assertEqual(err.details["reason"], "exit")
            self.assertIn("Invalid data found", err.details["stderr_tail"])
            self.assertEqual(req.state, STATE_FAILED)
            # partial output included
            self.assertEqual(scratch_files(env), [])
            self.assertEqual(len(p.registry), 0)

    def test_exit_zero_without_output(self) -> None:
        with temp_env(mode="empty") as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            with self.assertRaises(OutputMissingError) as cm:
                asyncio.run(p.render(req))
            self.assertEqual(cm.exception.request_id, req.request_id)
            self.assertEqual(scratch_files(env), [])

    def test_timeout(self) -> None:
        with temp_env(mode="hang") as (_, env):
            p = make_pipeline(env, timeout_sec=0.5)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            with self.assertRaises(TranscodeTimeout) as cm:
                asyncio.run(p.render(req))
            self.assertEqual(cm.exception.status_code, 504)
            self.assertEqual(scratch_files(env), [])

    def test_concurrent_identical_requests_are_isolated(self) -> None:
        with temp_env() as (_, env):
            os.environ["FAKE_FFMPEG_SLEEP"] = "0.2"
            p = make_pipeline(env)
            reqs = [p.open_request() for _ in range(2)]
            for req in reqs:
                add_input(p, req, ROLE_VIDEO_IN, b"same video")
                add_input(p, req, ROLE_AUDIO_IN, b"same audio")

            async def both():
                return await asyncio.gather(*(p.render(r) for r in reqs))

            recs = asyncio.run(both())
            self.assertNotEqual(recs[0].request_id, recs[1].request_id)
            self.assertNotEqual(recs[0].token, recs[1].token)
            self.assertNotEqual(recs[0].artifact.path, recs[1].artifact.path)
            self.assertEqual(sorted(scratch_files(env)), sorted(r.artifact.path for r in recs))
            self.assertEqual(len(ffmpeg_calls(env)), 2)

    def test_busy_when_gate_full(self) -> None:
        with temp_env() as (_, env):
            os.environ["FAKE_FFMPEG_SLEEP"] = "0.5"
            p = make_pipeline(env, max_active=1, max_waiting=0)
            reqs = [p.open_request() for _ in range(2)]
            for req in reqs:
                add_input(p, req, ROLE_VIDEO_IN, b"v")
                add_input(p, req, ROLE_AUDIO_IN, b"a")

            async def both():
                first = asyncio.create_task(p.render(reqs[0]))
                await asyncio.sleep(0.1)
                second = await asyncio.gather(p.render(reqs[1]), return_exceptions=True)
                return await first, second[0]

            rec, err = asyncio.run(both())
            self.assertIsInstance(err, BusyError)
            self.assertEqual(err.request_id, reqs[1].request_id)
            self.assertEqual(reqs[1].state, STATE_FAILED)
            self.assertEqual(scratch_files(env), [rec.artifact.path])
            self.assertEqual(len(ffmpeg_calls(env)), 1)

    def test_inputs_closed_after_render(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            asyncio.run(p.render(req))
            with self.assertRaises(RuntimeError):
                p.allocate_input(req, ROLE_CAPTIONS_IN)
            with self.assertRaises(RuntimeError):
                req.advance(STATE_FAILED)


    def test_output_allocation_failure_cleans_inputs(self) -> None:
        with temp_env() as (_, env):
            p = make_pipeline(env)
            req = p.open_request()
            add_input(p, req, ROLE_VIDEO_IN, b"v")
            add_input(p, req, ROLE_AUDIO_IN, b"a")
            real_allocate = p.store.allocate

            def allocate(request_id, role, suffix=None):
                if role == ROLE_VIDEO_OUT:
                    raise OSError(28, "No space left on device")
                return real_allocate(request_id, role, suffix)

            with patch.object(p.store, "allocate", side_effect=allocate):
                with self.assertRaises(RenderError) as cm:
                    asyncio.run(p.render(req))
            self.assertEqual(cm.exception.status_code, 500)
            self.assertEqual(cm.exception.request_id, req.request_id)
            self.assertEqual(req.state, STATE_FAILED)
            self.assertEqual(scratch_files(env), [])
            self.assertEqual(ffmpeg_calls(env), [])


if __name__ == "__main__":
    unittest.main()
