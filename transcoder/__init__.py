# Transcoder Adapters
# Lossless -> lossy conversion into the staging area

from .base import Transcoder, TranscodeOptions
from .ffmpeg import FFmpegTranscoder

__all__ = [
    'Transcoder',
    'TranscodeOptions',
    'FFmpegTranscoder'
]
