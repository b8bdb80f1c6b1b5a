from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from services.common.env import Env


@dataclass(frozen=True)
class CaptionStyle:
    font_size: int = 48
    outline: int = 2
    border_style: int = 1
    alignment: int = 2  # ASS numpad layout: 2 = bottom centre
    margin_v: int = 80

    def force_style(self) -> str:
        return (
            f"Fontsize={self.font_size},Outline={self.outline},BorderStyle={self.border_style},"
            f"Alignment={self.alignment},MarginV={self.margin_v}"
        )


@dataclass(frozen=True)
class RenderPolicy:
    canvas_w: int = 1080
    canvas_h: int = 1920
    fps: int = 30
    duration_cap_sec: Optional[int] = 60
    x264_preset: str = "veryfast"
    audio_bitrate: str = "192k"
    video_bitrate: Optional[str] = None
    captions: CaptionStyle = CaptionStyle()


def _read_yaml(path: Path) -> Dict[str, Any]:
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


def _cap_or_none(value: Any) -> Optional[int]:
    cap = int(value or 0)
    return cap if cap > 0 else None


def policy_from_env(env: Env) -> RenderPolicy:
    return RenderPolicy(
        canvas_w=env.canvas_w,
        canvas_h=env.canvas_h,
        fps=env.fps,
        duration_cap_sec=_cap_or_none(env.duration_cap_sec),
        x264_preset=env.x264_preset,
        audio_bitrate=env.audio_bitrate,
        video_bitrate=env.video_bitrate or None,
        captions=CaptionStyle(
            font_size=env.caption_font_size,
            outline=env.caption_outline,
            border_style=env.caption_border_style,
            alignment=env.caption_alignment,
            margin_v=env.caption_margin_v,
        ),
    )


def apply_policy_overrides(policy: RenderPolicy, data: Dict[str, Any]) -> RenderPolicy:
    """Overlay a render_policy.yaml document on top of an existing policy.

    Only keys present in the document change; everything else is kept.
    """
    canvas = data.get("canvas") or {}
    captions = data.get("captions") or {}
    encode = data.get("encode") or {}

    style = policy.captions
    style = replace(
        style,
        font_size=int(captions.get("font_size", style.font_size)),
        outline=int(captions.get("outline", style.outline)),
        border_style=int(captions.get("border_style", style.border_style)),
        alignment=int(captions.get("alignment", style.alignment)),
        margin_v=int(captions.get("margin_v", style.margin_v)),
    )

    out = replace(
        policy,
        canvas_w=int(canvas.get("width", policy.canvas_w)),
        canvas_h=int(canvas.get("height", policy.canvas_h)),
        fps=int(canvas.get("fps", policy.fps)),
        x264_preset=str(encode.get("preset", policy.x264_preset)),
        audio_bitrate=str(encode.get("audio_bitrate", policy.audio_bitrate)),
        captions=style,
    )
    if "video_bitrate" in encode:
        out = replace(out, video_bitrate=(str(encode["video_bitrate"]) if encode["video_bitrate"] else None))
    if "duration_cap_sec" in data:
        out = replace(out, duration_cap_sec=_cap_or_none(data["duration_cap_sec"]))
    return out


def load_render_policy(env: Env) -> RenderPolicy:
    policy = policy_from_env(env)
    if env.policy_file:
        policy = apply_policy_overrides(policy, _read_yaml(Path(env.policy_file)))
    if policy.canvas_w <= 0 or policy.canvas_h <= 0:
        raise ValueError(f"invalid canvas {policy.canvas_w}x{policy.canvas_h}")
    return policy
