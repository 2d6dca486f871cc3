"""Tests for source duration probing."""

import json
import os
import stat

import pytest

from modules.transcode.ffprobe import FFprobeRunner, resolve_duration

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")

PROBE_OUTPUT = {
    "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": "30.040000"},
    "streams": [
        {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080,
         "r_frame_rate": "30000/1001"},
        {"codec_type": "audio", "codec_name": "aac"},
    ],
}


def make_ffprobe(tmp_path, stdout: str, exit_code: int = 0) -> str:
    (tmp_path / "probe.json").write_text(stdout)
    path = tmp_path / "ffprobe"
    path.write_text(f'#!/bin/sh\ncat "{tmp_path / "probe.json"}"\nexit {exit_code}\n')
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


class StaticProbe:

    def __init__(self, result):
        self.result = result

    def get_duration(self, source_path, timeout=30):
        return self.result


class TestFFprobeRunner:

    def test_parse_media_info(self) -> None:
        info = FFprobeRunner()._parse_media_info(PROBE_OUTPUT)
        assert info == {
            "duration": pytest.approx(30.04),
            "format": "mov,mp4,m4a,3gp,3g2,mj2",
            "video_codec": "h264",
            "audio_codec": "aac",
        }

    def test_parse_tolerates_missing_fields(self) -> None:
        info = FFprobeRunner()._parse_media_info({"format": {"duration": "N/A"}})
        assert info["duration"] == 0.0
        assert info["video_codec"] == ""

    def test_missing_binary(self, tmp_path) -> None:
        ok, duration, error = FFprobeRunner(str(tmp_path / "nope")).get_duration("in.mp4")
        assert not ok
        assert duration == 0.0
        assert error == "ffprobe not found"

    @posix_only
    def test_get_duration_from_process(self, tmp_path) -> None:
        runner = FFprobeRunner(make_ffprobe(tmp_path, json.dumps(PROBE_OUTPUT)))
        ok, duration, error = runner.get_duration("in.mp4")
        assert ok
        assert duration == pytest.approx(30.04)
        assert error is None

    @posix_only
    def test_detected_codecs_are_logged(self, tmp_path, caplog) -> None:
        runner = FFprobeRunner(make_ffprobe(tmp_path, json.dumps(PROBE_OUTPUT)))
        with caplog.at_level("INFO", logger="modules.transcode.ffprobe"):
            runner.get_duration("in.mp4")
        assert "video h264, audio aac" in caplog.text

    @posix_only
    def test_unparseable_output(self, tmp_path) -> None:
        runner = FFprobeRunner(make_ffprobe(tmp_path, "not json"))
        ok, _, error = runner.get_duration("in.mp4")
        assert not ok
        assert "parse" in error

    @posix_only
    def test_nonzero_exit(self, tmp_path) -> None:
        runner = FFprobeRunner(make_ffprobe(tmp_path, "", exit_code=1))
        ok, _, _ = runner.get_duration("in.mp4")
        assert not ok


class TestResolveDuration:

    def test_probe_wins(self) -> None:
        assert resolve_duration(StaticProbe((True, 12.5, None)), "x", known_duration=99) == 12.5

    def test_known_duration_fallback(self) -> None:
        assert resolve_duration(StaticProbe((False, 0.0, "boom")), "x", known_duration=8) == 8.0

    @pytest.mark.parametrize("known", [None, 0, -3])
    def test_no_duration_available(self, known) -> None:
        assert resolve_duration(StaticProbe((False, 0.0, "boom")), "x", known_duration=known) == 0.0
