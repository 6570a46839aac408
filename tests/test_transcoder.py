"""Tests for the ffmpeg transcoder."""

import os
import subprocess
from pathlib import Path

import pytest

from errors import TranscodeError
from tags.base import ContainerKind
from transcoder import FFmpegTranscoder, TranscodeOptions
from transcoder.ffmpeg import build_command


def test_command_for_m4a():
    options = TranscodeOptions(extra=(("cutoff", "20000"),))

    command = build_command("ffmpeg", "/in/a.flac", "/stage/a.m4a", ContainerKind.M4A, options)

    assert command[0] == "ffmpeg"
    assert command[command.index("-i") + 1] == "/in/a.flac"
    assert command[command.index("-c:a") + 1] == "aac"
    assert command[command.index("-b:a") + 1] == "256k"
    assert command[command.index("-cutoff") + 1] == "20000"
    assert command[-3:] == ["-f", "ipod", "/stage/a.m4a"]


def test_lossless_target_has_no_bitrate():
    command = build_command("ffmpeg", "a.wav", "a.flac", ContainerKind.FLAC, TranscodeOptions())
    assert "-b:a" not in command


def test_options_from_config():
    options = TranscodeOptions.from_config({'codec': 'libfdk_aac', 'extra': {'afterburner': 1}, 'timeout': 30})
    assert options.codec == 'libfdk_aac'
    assert options.extra == (('afterburner', '1'),)
    assert options.timeout == 30.0


class TestTranscode:

    def test_success(self, tmp_path, monkeypatch):
        def fake_run(command, **kwargs):
            Path(command[-1]).write_bytes(b"m4a")
            return subprocess.CompletedProcess(command, 0, "", "")

        monkeypatch.setattr(subprocess, "run", fake_run)

        output = FFmpegTranscoder().transcode(
            str(tmp_path / "a.flac"), ContainerKind.M4A, TranscodeOptions(), str(tmp_path), name="01 - One")

        assert output == str(tmp_path / "01 - One.m4a")

    def test_nonzero_exit_discards_partial_output(self, tmp_path, monkeypatch):
        def fake_run(command, **kwargs):
            Path(command[-1]).write_bytes(b"partial")
            return subprocess.CompletedProcess(command, 1, "", "warning\nInvalid data found")

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(TranscodeError, match="Invalid data found"):
            FFmpegTranscoder().transcode(str(tmp_path / "a.flac"), ContainerKind.M4A, TranscodeOptions(), str(tmp_path))
        assert not (tmp_path / "a.m4a").exists()

    def test_timeout(self, tmp_path, monkeypatch):
        def fake_run(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(TranscodeError, match="timed out"):
            FFmpegTranscoder().transcode(
                str(tmp_path / "a.flac"), ContainerKind.M4A, TranscodeOptions(timeout=1), str(tmp_path))

    def test_missing_binary(self, tmp_path):
        transcoder = FFmpegTranscoder(binary=str(tmp_path / "no-ffmpeg"))

        assert not transcoder.is_available()
        with pytest.raises(TranscodeError, match="failed to start"):
            transcoder.transcode(str(tmp_path / "a.flac"), ContainerKind.M4A, TranscodeOptions(), str(tmp_path))

    @pytest.mark.skipif(os.name == 'nt', reason="needs a POSIX shell script as ffmpeg")
    def test_undecodable_stderr_is_reported(self, tmp_path):
        script = tmp_path / "ffmpeg"
        script.write_text("#!/bin/sh\nprintf 'bad \\377\\376 name\\n' >&2\nexit 1\n")
        script.chmod(0o755)

        with pytest.raises(TranscodeError, match="bad"):
            FFmpegTranscoder(binary=str(script)).transcode(
                str(tmp_path / "a.flac"), ContainerKind.M4A, TranscodeOptions(), str(tmp_path))
