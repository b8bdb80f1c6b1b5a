from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from services.common.config import RenderPolicy


# ffmpeg filtergraph escaping happens on two levels: first the option value
# (av_get_token), then the whole graph description.
_OPTION_SPECIALS = "\\':"
_GRAPH_SPECIALS = "\\'[],;"


def _escape_chars(value: str, specials: str) -> str:
    return "".join("\\" + ch if ch in specials else ch for ch in value)


def ffmpeg_filter_escape_path(p: Path | str) -> str:
    """Escape a file path for use as a filter option inside -vf."""
    return _escape_chars(_escape_chars(str(p), _OPTION_SPECIALS), _GRAPH_SPECIALS)


@dataclass(frozen=True)
class TransformSpec:
    filter_graph: str
    video_codec: str
    audio_codec: str
    pixel_format: str
    preset: str
    frame_rate: int
    audio_bitrate: str
    video_bitrate: Optional[str]
    duration_cap_sec: Optional[int]
    container_flags: str
    loop_video: bool

    @property
    def has_captions(self) -> bool:
        return "subtitles=" in self.filter_graph


def cover_fit_filter(width: int, height: int) -> str:
    return f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}"


def caption_filter(captions_path: Path | str, policy: RenderPolicy) -> str:
    return f"subtitles=filename={ffmpeg_filter_escape_path(captions_path)}:force_style='{policy.captions.force_style()}'"


def build_transform_spec(policy: RenderPolicy, captions_path: Optional[Path] = None) -> TransformSpec:
    stages = [cover_fit_filter(policy.canvas_w, policy.canvas_h)]
    if captions_path is not None:
        stages.append(caption_filter(captions_path, policy))

    return TransformSpec(
        filter_graph=",".join(stages),
        video_codec="libx264",
        audio_codec="aac",
        pixel_format="yuv420p",
        preset=policy.x264_preset,
        frame_rate=policy.fps,
        audio_bitrate=policy.audio_bitrate,
        video_bitrate=policy.video_bitrate,
        duration_cap_sec=policy.duration_cap_sec,
        container_flags="+faststart",
        loop_video=True,
    )


def build_ffmpeg_argv(
    ffmpeg_cmd: Sequence[str],
    spec: TransformSpec,
    *,
    video: Path,
    audio: Path,
    output: Path,
) -> List[str]:
    """Assemble the argument vector. Never joined into a shell string.

    Duration: the video loops forever, -shortest stops at the end of the
    voice track, and -t caps the result if a cap is configured.
    """
    cmd: List[str] = [
        *ffmpeg_cmd,
        "-nostdin",
        "-y",
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "error",
    ]
    if spec.loop_video:
        cmd += ["-stream_loop", "-1"]
    cmd += [
        "-i",
        str(video),
        "-i",
        str(audio),
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-vf",
        spec.filter_graph,
        "-r",
        str(spec.frame_rate),
        "-c:v",
        spec.video_codec,
        "-preset",
        spec.preset,
        "-pix_fmt",
        spec.pixel_format,
    ]
    if spec.video_bitrate:
        cmd += ["-b:v", spec.video_bitrate]
    cmd += [
        "-c:a",
        spec.audio_codec,
        "-b:a",
        spec.audio_bitrate,
        "-shortest",
    ]
    if spec.duration_cap_sec:
        cmd += ["-t", str(spec.duration_cap_sec)]
    cmd += [
        "-movflags",
        spec.container_flags,
        str(output),
    ]
    return cmd
