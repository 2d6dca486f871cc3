"""Tests for the FFmpeg command builder and subprocess encoder.

Stand-in shell scripts replace the ffmpeg binary so the process handling
(exit codes, missing output, timeout, cancellation) runs for real.
"""

import os
import stat
import threading
import time

import pytest

from modules.errors import EncodeFailure, EncoderUnavailable
from modules.transcode.config import TranscodeConfig
from modules.transcode.ffmpeg import EncodeOptions, FFmpegEncoder, FFmpegRunner

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


def make_script(tmp_path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def make_options(output_path: str, **overrides) -> EncodeOptions:
    values = dict(
        quality=480,
        resolution="854x480",
        video_bitrate="800k",
        output_path=output_path,
        video_codec="libx264",
        audio_codec="aac",
        audio_bitrate="128k",
        container="mpegts",
        timeout=30,
        cancel_event=None,
    )
    values.update(overrides)
    return EncodeOptions(**values)


# Writes a few bytes to the last argument (the output path)
WRITE_OUTPUT = 'for last; do :; done\nprintf "tsdata" > "$last"'


class TestFFmpegRunner:

    def test_build_command(self) -> None:
        runner = FFmpegRunner(TranscodeConfig(loglevel="error"), ffmpeg_path="/usr/bin/ffmpeg")
        cmd = runner.build_command("/in/source.mp4", make_options("/out/ad-480p.ts"))

        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-loglevel") + 1] == "error"
        assert cmd[cmd.index("-i") + 1] == "/in/source.mp4"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-s") + 1] == "854x480"
        assert cmd[cmd.index("-b:v") + 1] == "800k"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-f") + 1] == "mpegts"
        assert cmd[cmd.index("-muxdelay") + 1] == "0"
        assert cmd[cmd.index("-muxpreload") + 1] == "0"
        assert cmd[cmd.index("-output_ts_offset") + 1] == "0"
        assert cmd[-2:] == ["-y", "/out/ad-480p.ts"]

    def test_default_binary_comes_from_config(self) -> None:
        runner = FFmpegRunner(TranscodeConfig(ffmpeg_path="/opt/ffmpeg"))
        assert runner.ffmpeg_path == "/opt/ffmpeg"


class TestFFmpegEncoder:

    def test_missing_binary_is_fatal(self, tmp_path) -> None:
        config = TranscodeConfig(ffmpeg_path=str(tmp_path / "no-such-ffmpeg"))
        encoder = FFmpegEncoder(config)
        assert not encoder.is_available()
        with pytest.raises(EncoderUnavailable):
            encoder.run("in.mp4", make_options(str(tmp_path / "out.ts")))

    @posix_only
    def test_successful_run_returns_output_and_removes_log(self, tmp_path) -> None:
        config = TranscodeConfig(ffmpeg_path=make_script(tmp_path, "ffmpeg", WRITE_OUTPUT))
        output = str(tmp_path / "ad-480p.ts")
        assert FFmpegEncoder(config).run("in.mp4", make_options(output)) == output
        assert os.path.getsize(output) > 0
        assert not os.path.exists(output + ".log")

    @posix_only
    def test_nonzero_exit_is_tier_failure(self, tmp_path, caplog) -> None:
        config = TranscodeConfig(ffmpeg_path=make_script(tmp_path, "ffmpeg", 'echo "bad codec" >&2\nexit 3'))
        output = str(tmp_path / "ad-480p.ts")
        with caplog.at_level("WARNING"):
            with pytest.raises(EncodeFailure) as exc_info:
                FFmpegEncoder(config).run("in.mp4", make_options(output))
        assert exc_info.value.quality == 480
        assert "code 3" in exc_info.value.reason
        assert "bad codec" in caplog.text
        assert not os.path.exists(output + ".log")

    @posix_only
    def test_empty_output_is_tier_failure(self, tmp_path) -> None:
        config = TranscodeConfig(ffmpeg_path=make_script(tmp_path, "ffmpeg", "exit 0"))
        with pytest.raises(EncodeFailure) as exc_info:
            FFmpegEncoder(config).run("in.mp4", make_options(str(tmp_path / "out.ts")))
        assert "no output" in exc_info.value.reason

    @posix_only
    def test_zero_byte_output_is_removed(self, tmp_path) -> None:
        script = make_script(tmp_path, "ffmpeg", 'for last; do :; done\n: > "$last"')
        output = str(tmp_path / "out.ts")
        with pytest.raises(EncodeFailure):
            FFmpegEncoder(TranscodeConfig(ffmpeg_path=script)).run("in.mp4", make_options(output))
        assert not os.path.exists(output)

    @posix_only
    def test_timeout_terminates_process(self, tmp_path) -> None:
        config = TranscodeConfig(ffmpeg_path=make_script(tmp_path, "ffmpeg", "exec sleep 30"))
        started = time.monotonic()
        with pytest.raises(EncodeFailure) as exc_info:
            FFmpegEncoder(config).run("in.mp4", make_options(str(tmp_path / "out.ts"), timeout=1))
        assert "timed out" in exc_info.value.reason
        assert time.monotonic() - started < 15

    @posix_only
    def test_cancel_terminates_process(self, tmp_path) -> None:
        config = TranscodeConfig(ffmpeg_path=make_script(tmp_path, "ffmpeg", "exec sleep 30"))
        cancel_event = threading.Event()
        timer = threading.Timer(0.5, cancel_event.set)
        timer.start()
        try:
            with pytest.raises(EncodeFailure) as exc_info:
                FFmpegEncoder(config).run(
                    "in.mp4", make_options(str(tmp_path / "out.ts"), cancel_event=cancel_event)
                )
        finally:
            timer.cancel()
        assert exc_info.value.reason == "cancelled"
