import os
import tempfile
from dataclasses import dataclass


@dataclass(frozen=True)
class Env:
    bind: str
    port: int

    # storage
    scratch_dir: str
    log_dir: str

    # external transcoder (shlex-split, e.g. "nice -n 10 ffmpeg")
    ffmpeg_bin: str

    # limits / reliability knobs
    max_upload_mb: int
    transcode_timeout_sec: int
    download_ttl_sec: int
    sweep_interval_sec: int
    max_active_transcodes: int
    max_queued_transcodes: int
    output_tail_bytes: int

    # delivery
    public_base_url: str

    # render policy (see services.common.config.load_render_policy)
    policy_file: str
    canvas_w: int
    canvas_h: int
    fps: int
    duration_cap_sec: int     # 0 = no cap, audio governs alone
    x264_preset: str
    audio_bitrate: str
    video_bitrate: str        # empty = let the preset pick

    # caption style (burn-in)
    caption_font_size: int
    caption_outline: int
    caption_border_style: int
    caption_alignment: int
    caption_margin_v: int

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @staticmethod
    def load() -> "Env":
        return Env(
            bind=os.environ.get("RENDER_BIND", "0.0.0.0"),
            port=int(os.environ.get("RENDER_PORT") or os.environ.get("PORT", "3000")),

            scratch_dir=os.environ.get("RENDER_SCRATCH_DIR", os.path.join(tempfile.gettempdir(), "render-scratch")),
            log_dir=os.environ.get("RENDER_LOG_DIR", "storage/logs"),

            ffmpeg_bin=os.environ.get("RENDER_FFMPEG_BIN", "ffmpeg"),

            max_upload_mb=int(os.environ.get("RENDER_MAX_UPLOAD_MB", "200")),
            transcode_timeout_sec=int(os.environ.get("RENDER_TRANSCODE_TIMEOUT_SEC", "600")),
            download_ttl_sec=int(os.environ.get("RENDER_DOWNLOAD_TTL_SEC", "600")),
            sweep_interval_sec=int(os.environ.get("RENDER_SWEEP_INTERVAL_SEC", "30")),
            max_active_transcodes=int(os.environ.get("RENDER_MAX_ACTIVE_TRANSCODES", "2")),
            max_queued_transcodes=int(os.environ.get("RENDER_MAX_QUEUED_TRANSCODES", "8")),
            output_tail_bytes=int(os.environ.get("RENDER_OUTPUT_TAIL_BYTES", "16384")),

            public_base_url=os.environ.get("RENDER_PUBLIC_BASE_URL", ""),

            policy_file=os.environ.get("RENDER_POLICY_FILE", ""),
            canvas_w=int(os.environ.get("RENDER_CANVAS_W", "1080")),
            canvas_h=int(os.environ.get("RENDER_CANVAS_H", "1920")),
            fps=int(os.environ.get("RENDER_FPS", "30")),
            duration_cap_sec=int(os.environ.get("RENDER_DURATION_CAP_SEC", "60")),
            x264_preset=os.environ.get("RENDER_X264_PRESET", "veryfast"),
            audio_bitrate=os.environ.get("RENDER_AUDIO_BITRATE", "192k"),
            video_bitrate=os.environ.get("RENDER_VIDEO_BITRATE", ""),

            caption_font_size=int(os.environ.get("RENDER_CAPTION_FONT_SIZE", "48")),
            caption_outline=int(os.environ.get("RENDER_CAPTION_OUTLINE", "2")),
            caption_border_style=int(os.environ.get("RENDER_CAPTION_BORDER_STYLE", "1")),
            caption_alignment=int(os.environ.get("RENDER_CAPTION_ALIGNMENT", "2")),
            caption_margin_v=int(os.environ.get("RENDER_CAPTION_MARGIN_V", "80")),
        )
