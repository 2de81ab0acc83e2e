from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Sequence

from .assets import AssetKind, AssetResolver
from .catalog import TemplateDefinition
from .composer import VideoClip
from .encode_queue import EncodeQueue, EncodeTicket
from .errors import AssetError, EncodeError, EncodeFailure
from .ffmpeg import CodecSelector, FFmpegRunner, MediaProber, encoder_args
from .filters import MusicInput, build_filter_graph, choose_mode
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class MediaComposer:
    """
    Renders one composed template to an mp4.

    Clip and watermark references must resolve; a music track that cannot be
    resolved is skipped with a warning. Encodes run through the shared queue and
    are retried only for transient failures (timeout, OOM, fd exhaustion).
    """

    def __init__(
        self,
        resolver: AssetResolver,
        queue: EncodeQueue,
        *,
        runner: FFmpegRunner | None = None,
        codecs: CodecSelector | None = None,
        prober: MediaProber | None = None,
        size: tuple[int, int] = (1080, 1920),
        fps: int = 24,
        encode_timeout: float = 900.0,
        max_retries: int = 2,
        watermark_position: str = "bottom-center",
        retry_delay: float = 5.0,
    ):
        self.resolver = resolver
        self.queue = queue
        self.runner = runner or FFmpegRunner()
        self.codecs = codecs or CodecSelector()
        self.prober = prober or MediaProber()
        self.size = tuple(size)
        self.fps = int(fps)
        self.encode_timeout = encode_timeout
        self.watermark_position = watermark_position
        self.retry = RetryPolicy.fixed(
            max_retries + 1,
            retry_delay,
            retry_on=(EncodeError,),
            should_retry=lambda exc: exc.retryable,
        )

    def render(
        self,
        clips: Sequence[VideoClip],
        template: TemplateDefinition,
        watermark: str | None = None,
        *,
        job_id,
        output_path,
    ) -> str:
        if not clips:
            raise EncodeError(f"[{job_id}] {template.key}: nothing to render", kind=EncodeFailure.PROCESS)

        resolved = []
        for clip in clips:
            asset = self.resolver.resolve(clip.source, AssetKind.VIDEO, job_id)
            resolved.append(dataclasses.replace(clip, source=asset.path, has_audio=asset.has_audio))

        music = None
        if template.music is not None:
            try:
                track = self.resolver.resolve(template.music.path, AssetKind.AUDIO, job_id)
                music = MusicInput(track.path, template.music.volume, template.music.start_time)
            except AssetError as exc:
                logger.warning("[%s] %s: continuing without music: %s", job_id, template.key, exc)

        watermark_ref = watermark or template.watermark
        watermark_path = None
        if watermark_ref:
            watermark_path = self.resolver.resolve(watermark_ref, AssetKind.IMAGE, job_id).path

        graph = build_filter_graph(
            resolved,
            choose_mode(resolved),
            music=music,
            watermark=watermark_path,
            watermark_position=self.watermark_position,
            size=self.size,
            fps=self.fps,
        )

        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        args = [arg for input_args in graph.inputs for arg in input_args]
        args += ["-filter_complex", graph.filter_complex, *graph.map_args()]
        args += encoder_args(self.codecs.select())
        if graph.audio_label:
            args += ["-c:a", "aac", "-b:a", "192k"]
        args += [
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            "-r", str(self.fps),
            "-t", f"{graph.duration:.3f}",
            str(output),
        ]
        logger.info(
            "[%s] Rendering %s: %d clips, %s mode, %.2fs%s%s",
            job_id, template.key, len(resolved), graph.mode.value, graph.duration,
            ", music" if music else "", ", watermark" if watermark_path else "",
        )

        def encode(ticket: EncodeTicket) -> None:
            self.runner.run(args, ticket, graph.duration, label=template.key)

        self.retry.call(
            self.queue.run, encode,
            job_id=str(job_id), timeout=self.encode_timeout, label=template.key,
            description=f"[{job_id}] encode {template.key}",
        )
        self._validate_output(output, template.key)
        return str(output)

    def _validate_output(self, output: Path, template_key: str) -> None:
        if not output.is_file() or output.stat().st_size == 0:
            raise EncodeError(f"{template_key}: encoder produced no output", kind=EncodeFailure.INVALID_OUTPUT)
        try:
            info = self.prober.probe(output)
        except AssetError as exc:
            raise EncodeError(f"{template_key}: output is unreadable: {exc}", kind=EncodeFailure.INVALID_OUTPUT) from exc
        if not info.has_video or info.duration <= 0:
            raise EncodeError(
                f"{template_key}: output has no playable video (duration={info.duration})",
                kind=EncodeFailure.INVALID_OUTPUT,
            )
