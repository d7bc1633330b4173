"""ffmpeg argument lines for the relay transcoder."""

from dataclasses import dataclass

from castrelay.app_config import AppEnvironConfig

from .targets import TranscodeTargetSet


@dataclass(frozen=True)
class FfmpegCommandBuilder:
    """Builds the argv that re-muxes stdin media to RTMP.

    One target uses a direct flv output. Several targets use the tee muxer so
    the stream is encoded once and copied to every destination.
    """

    ffmpeg_path: str = "ffmpeg"
    input_format: str = "webm"
    video_bitrate: str = "2500k"
    audio_bitrate: str = "128k"
    framerate: int = 30
    keyframe_interval: int = 60

    @classmethod
    def from_config(cls, cfg: AppEnvironConfig) -> "FfmpegCommandBuilder":
        return cls(
            ffmpeg_path=cfg.FFMPEG_PATH,
            input_format=cfg.TRANSCODER_INPUT_FORMAT,
            video_bitrate=cfg.TRANSCODER_VIDEO_BITRATE,
            audio_bitrate=cfg.TRANSCODER_AUDIO_BITRATE,
            framerate=cfg.TRANSCODER_FRAMERATE,
            keyframe_interval=cfg.TRANSCODER_KEYFRAME_INTERVAL,
        )

    def input_args(self) -> list[str]:
        args = ["-hide_banner", "-loglevel", "warning"]
        if self.input_format:
            args += ["-f", self.input_format]
        return args + ["-i", "pipe:0"]

    def encode_args(self) -> list[str]:
        return [
            # Video
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-pix_fmt", "yuv420p",
            "-r", str(self.framerate),
            "-g", str(self.keyframe_interval),
            "-keyint_min", str(self.keyframe_interval),
            "-sc_threshold", "0",
            "-b:v", self.video_bitrate,
            "-maxrate", self.video_bitrate,
            "-bufsize", "2M",
            "-max_muxing_queue_size", "1024",
            # Audio
            "-c:a", "aac",
            "-b:a", self.audio_bitrate,
            "-ar", "44100",
            "-af", "aresample=async=1",
        ]

    def output_args(self, targets: TranscodeTargetSet) -> list[str]:
        if targets.is_empty:
            raise ValueError("transcoder needs at least one destination")
        if not targets.is_fan_out:
            return ["-f", "flv", targets.urls[0]]
        tee = "|".join(f"[f=flv:onfail=ignore]{url}" for url in targets.urls)
        return ["-map", "0:v?", "-map", "0:a?", "-f", "tee", tee]

    def build(self, targets: TranscodeTargetSet) -> list[str]:
        return [self.ffmpeg_path, *self.input_args(), *self.encode_args(), *self.output_args(targets)]

    def version_command(self) -> list[str]:
        return [self.ffmpeg_path, "-version"]
