"""Thin wrappers around the ffmpeg / ffprobe executables."""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Sequence

from .encode_queue import EncodeTicket
from .errors import AssetError, EncodeError, EncodeFailure

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 200

FAILURE_SIGNATURES = (
    (EncodeFailure.OOM, ("cannot allocate memory", "out of memory", "failed to allocate")),
    (EncodeFailure.FD_EXHAUSTION, ("too many open files",)),
    (EncodeFailure.FILTER_CONFLICT, ("duplicate output", "is already used", "already exists", "duplicate filter")),
    (EncodeFailure.DECODE, ("invalid data found", "error while decoding", "moov atom not found", "could not find codec parameters")),
)


def classify_failure(stderr: str) -> EncodeFailure | None:
    """Map ffmpeg stderr to a known failure signature, or None if nothing matches."""
    text = (stderr or "").lower()
    for kind, needles in FAILURE_SIGNATURES:
        if any(needle in text for needle in needles):
            return kind
    return None


# ── Probing ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class MediaInfo:
    duration: float
    has_video: bool
    has_audio: bool
    width: int = 0
    height: int = 0
    video_codec: str = ""


class MediaProber:
    def __init__(self, ffprobe_binary: str = "ffprobe", timeout: float = 30.0):
        self.binary = ffprobe_binary
        self.timeout = timeout

    def probe(self, path) -> MediaInfo:
        cmd = [
            self.binary, "-v", "error", "-print_format", "json",
            "-show_format", "-show_streams", str(path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=self.timeout)
            data = json.loads(result.stdout or "{}")
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            raise AssetError(f"ffprobe failed for {path}: {exc}") from exc

        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
        duration = _as_float((data.get("format") or {}).get("duration"))
        if not duration and video is not None:
            duration = _as_float(video.get("duration"))
        return MediaInfo(
            duration=duration,
            has_video=video is not None,
            has_audio=audio is not None,
            width=int((video or {}).get("width") or 0),
            height=int((video or {}).get("height") or 0),
            video_codec=str((video or {}).get("codec_name") or ""),
        )


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


# ── Codec selection ──────────────────────────────────────────────

SOFTWARE_CODEC = "libx264"


class CodecSelector:
    """
    Picks the H.264 encoder once per process: the platform's hardware encoder
    if a one-frame trial encode succeeds, libx264 otherwise.
    """

    def __init__(self, ffmpeg_binary: str = "ffmpeg", platform: str | None = None):
        self.binary = ffmpeg_binary
        self.platform = platform or sys.platform
        self._selected: str | None = None
        self._lock = threading.Lock()

    def candidates(self) -> list[str]:
        if self.platform == "darwin":
            return ["h264_videotoolbox"]
        return ["h264_nvenc"]

    def select(self) -> str:
        with self._lock:
            if self._selected is None:
                self._selected = self._probe()
                logger.info("Selected video encoder: %s", self._selected)
            return self._selected

    def _probe(self) -> str:
        for codec in self.candidates():
            if self._trial(codec):
                return codec
        return SOFTWARE_CODEC

    def _trial(self, codec: str) -> bool:
        cmd = [
            self.binary, "-hide_banner", "-loglevel", "error",
            "-f", "lavfi", "-i", "color=c=black:s=256x256:d=0.1",
            "-frames:v", "1", "-c:v", codec, "-f", "null", "-",
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=15)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Encoder trial for %s failed: %s", codec, exc)
            return False
        return result.returncode == 0


def encoder_args(codec: str) -> list[str]:
    if codec == SOFTWARE_CODEC:
        return ["-c:v", codec, "-preset", "medium", "-crf", "23"]
    return ["-c:v", codec, "-b:v", "6M"]


# ── Execution ────────────────────────────────────────────────────


class ProgressThrottle:
    """Reports progress only when it crosses the next `step`-percent boundary."""

    def __init__(self, step: int = 10):
        self.step = step
        self._last = 0

    def update(self, percent: float) -> int | None:
        boundary = int(min(100.0, max(0.0, percent)) // self.step) * self.step
        if boundary > self._last:
            self._last = boundary
            return boundary
        return None


def parse_progress_seconds(line: str) -> float | None:
    key, _, value = line.strip().partition("=")
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        # ffmpeg reports both keys in microseconds
        return int(value) / 1_000_000
    except ValueError:
        return None


class FFmpegRunner:
    def __init__(self, ffmpeg_binary: str = "ffmpeg", poll_interval: float = 0.25):
        self.binary = ffmpeg_binary
        self.poll_interval = poll_interval

    def run(
        self,
        args: Sequence[str],
        ticket: EncodeTicket,
        total_duration: float = 0.0,
        label: str = "",
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        """Run one ffmpeg process to completion; raise EncodeError on any failure."""
        cmd = [self.binary, "-hide_banner", "-y", "-nostats", "-progress", "pipe:1", *map(str, args)]
        tag = f"[{ticket.job_id}] {label or 'encode'}"
        logger.debug("%s: %s", tag, " ".join(cmd)[:4000])

        try:
            process = subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, bufsize=1,
            )
        except OSError as exc:
            raise EncodeError(f"{tag}: could not start ffmpeg: {exc}") from exc

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        throttle = ProgressThrottle()

        def read_progress():
            for line in process.stdout:
                seconds = parse_progress_seconds(line)
                if seconds is None or total_duration <= 0:
                    continue
                boundary = throttle.update(seconds / total_duration * 100)
                if boundary is not None:
                    logger.info("%s: %d%%", tag, boundary)
                    if on_progress is not None:
                        on_progress(boundary)

        def read_stderr():
            for line in process.stderr:
                line = line.rstrip()
                if line:
                    stderr_tail.append(line)

        readers = [
            threading.Thread(target=read_progress, daemon=True),
            threading.Thread(target=read_stderr, daemon=True),
        ]
        for reader in readers:
            reader.start()

        started = time.monotonic()
        killed_for = None
        while process.poll() is None:
            if ticket.cancelled:
                killed_for = EncodeFailure.CANCELLED
            elif time.monotonic() - started > ticket.timeout:
                killed_for = EncodeFailure.TIMEOUT
            if killed_for is not None:
                process.kill()
                process.wait()
                break
            ticket.cancel_event.wait(self.poll_interval)

        for reader in readers:
            reader.join(timeout=5)
        tail = "\n".join(list(stderr_tail)[-40:])

        if killed_for is EncodeFailure.TIMEOUT:
            raise EncodeError(f"{tag}: timed out after {ticket.timeout:.0f}s", kind=killed_for, stderr_tail=tail)
        if killed_for is EncodeFailure.CANCELLED:
            raise EncodeError(f"{tag}: cancelled", kind=killed_for, stderr_tail=tail)
        if process.returncode != 0:
            kind = classify_failure("\n".join(stderr_tail)) or EncodeFailure.PROCESS
            logger.error("%s failed (%s, exit %s):\n%s", tag, kind.value, process.returncode, tail)
            raise EncodeError(
                f"{tag}: ffmpeg exited with {process.returncode} ({kind.value})", kind=kind, stderr_tail=tail
            )
        logger.info("%s finished in %.1fs", tag, time.monotonic() - started)
