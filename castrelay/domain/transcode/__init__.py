from .command import FfmpegCommandBuilder
from .probe import probe_ffmpeg
from .supervisor import TranscodeSupervisor
from .targets import TranscodeTargetSet, build_ingest_url, redact_url
from .transcoder import FeedResult, TranscoderHandle

__all__ = [
    "FeedResult",
    "FfmpegCommandBuilder",
    "TranscodeSupervisor",
    "TranscodeTargetSet",
    "TranscoderHandle",
    "build_ingest_url",
    "probe_ffmpeg",
    "redact_url",
]
