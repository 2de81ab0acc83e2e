import json
import subprocess
from unittest import mock

import pytest

from reels.errors import AssetError, EncodeFailure
from reels.ffmpeg import (
    SOFTWARE_CODEC,
    CodecSelector,
    MediaProber,
    ProgressThrottle,
    classify_failure,
    encoder_args,
    parse_progress_seconds,
)


class TestClassifyFailure:
    @pytest.mark.parametrize(
        "stderr, kind",
        [
            ("[h264 @ 0x1] Cannot allocate memory", EncodeFailure.OOM),
            ("av_interleaved_write_frame(): Too many open files", EncodeFailure.FD_EXHAUSTION),
            ("Output pad \"default\" with type video of the filter instance is already used", EncodeFailure.FILTER_CONFLICT),
            ("photo.mp4: Invalid data found when processing input", EncodeFailure.DECODE),
            ("moov atom not found", EncodeFailure.DECODE),
        ],
    )
    def test_known_signatures(self, stderr, kind):
        assert classify_failure(stderr) is kind

    def test_unknown_output(self):
        assert classify_failure("Conversion failed!") is None
        assert classify_failure("") is None


class TestProgress:
    def test_throttle_reports_each_ten_percent_once(self):
        throttle = ProgressThrottle()
        seen = [throttle.update(p) for p in (3, 9.9, 10, 14, 25, 25, 99, 100, 120)]
        assert [s for s in seen if s is not None] == [10, 20, 90, 100]

    def test_parse_progress_lines(self):
        assert parse_progress_seconds("out_time_us=2500000\n") == 2.5
        assert parse_progress_seconds("out_time_ms=1000000") == 1.0
        assert parse_progress_seconds("frame=12") is None
        assert parse_progress_seconds("out_time_us=N/A") is None


class TestCodecSelection:
    def test_platform_candidates(self):
        assert CodecSelector(platform="darwin").candidates() == ["h264_videotoolbox"]
        assert CodecSelector(platform="linux").candidates() == ["h264_nvenc"]

    def test_falls_back_to_software_and_caches(self):
        selector = CodecSelector(platform="linux")
        with mock.patch.object(selector, "_trial", return_value=False) as trial:
            assert selector.select() == SOFTWARE_CODEC
            assert selector.select() == SOFTWARE_CODEC
        assert trial.call_count == 1

    def test_uses_hardware_when_trial_succeeds(self):
        selector = CodecSelector(platform="darwin")
        with mock.patch.object(selector, "_trial", return_value=True):
            assert selector.select() == "h264_videotoolbox"

    def test_encoder_args(self):
        assert encoder_args("libx264") == ["-c:v", "libx264", "-preset", "medium", "-crf", "23"]
        assert encoder_args("h264_nvenc")[:2] == ["-c:v", "h264_nvenc"]


class TestMediaProber:
    def test_parses_streams(self):
        payload = {
            "format": {"duration": "4.5"},
            "streams": [
                {"codec_type": "video", "codec_name": "h264", "width": 1080, "height": 1920},
                {"codec_type": "audio", "codec_name": "aac"},
            ],
        }
        done = subprocess.CompletedProcess([], 0, stdout=json.dumps(payload), stderr="")
        with mock.patch("reels.ffmpeg.subprocess.run", return_value=done):
            info = MediaProber().probe("/work/a.mp4")
        assert info.duration == 4.5
        assert info.has_video and info.has_audio
        assert (info.width, info.height, info.video_codec) == (1080, 1920, "h264")

    def test_probe_failure_is_asset_error(self):
        error = subprocess.CalledProcessError(1, ["ffprobe"])
        with mock.patch("reels.ffmpeg.subprocess.run", side_effect=error):
            with pytest.raises(AssetError):
                MediaProber().probe("/work/broken.mp4")
