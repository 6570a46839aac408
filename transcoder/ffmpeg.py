#!/usr/bin/env python3
"""
ffmpeg transcoder.

Runs the ffmpeg binary as a subprocess. The default M4A encoder is the
native "aac"; builds with libfdk_aac can select it with cutoff=20000 and
afterburner=1 through transcode.options.extra.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from errors import TranscodeError
from tags.base import ContainerKind

from .base import TranscodeOptions, Transcoder


logger = logging.getLogger("reorganizer.transcoder")

# ffmpeg muxer name per target
FORMATS = {
    ContainerKind.M4A: "ipod",
    ContainerKind.MP3: "mp3",
    ContainerKind.FLAC: "flac",
}

DEFAULT_CODECS = {
    ContainerKind.M4A: "aac",
    ContainerKind.MP3: "libmp3lame",
    ContainerKind.FLAC: "flac",
}


def build_command(
    binary: str,
    source: str,
    output: str,
    target_kind: ContainerKind,
    options: TranscodeOptions
) -> List[str]:
    """ffmpeg argument list for one transcode"""
    command = [
        binary, "-nostdin", "-hide_banner", "-loglevel", "error", "-y",
        "-i", str(source),
        "-map", "0:a:0",
        "-map_metadata", "0",
        "-c:a", options.codec or DEFAULT_CODECS[target_kind],
    ]
    if options.bitrate and not target_kind.is_lossless:
        command += ["-b:a", options.bitrate]
    for key, value in options.extra:
        command += [f"-{key}", value]
    command += ["-f", FORMATS[target_kind], str(output)]
    return command


class FFmpegTranscoder(Transcoder):
    """Transcodes with the ffmpeg command line tool"""

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def transcode(
        self,
        source: str,
        target_kind: ContainerKind,
        options: TranscodeOptions,
        staging_dir: str,
        name: Optional[str] = None
    ) -> str:
        output = Path(staging_dir) / f"{name or Path(source).stem}.{target_kind.extension}"
        command = build_command(self.binary, source, str(output), target_kind, options)
        logger.debug(f"Running: {' '.join(command)}")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors='replace',
                timeout=options.timeout
            )
        except subprocess.TimeoutExpired as e:
            self._discard(output)
            raise TranscodeError(f"ffmpeg timed out after {options.timeout}s", path=source, cause=e) from e
        except (subprocess.SubprocessError, OSError) as e:
            self._discard(output)
            raise TranscodeError(f"ffmpeg failed to start: {e}", path=source, cause=e) from e

        if result.returncode != 0:
            self._discard(output)
            stderr = (result.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else f"exit code {result.returncode}"
            raise TranscodeError(f"ffmpeg error: {detail}", path=source)

        if not output.exists():
            raise TranscodeError("ffmpeg produced no output", path=source)

        return str(output)

    def _discard(self, output: Path) -> None:
        try:
            output.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial output {output}: {e}")

    def __repr__(self) -> str:
        return f"FFmpegTranscoder(binary={self.binary!r})"
