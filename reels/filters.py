"""ffmpeg filter graph construction for composed reels.

Each clip becomes one input: trimmed, timestamp-reset, scaled and padded to
the output frame, color-graded, then joined in sequence order.

  - rich: adjacent clips with a declared transition overlap via xfade; clips
    without one are concatenated.
  - simplified: one concat over all clips, no transitions. Used when the
    sequence mixes a generated map clip with photo clips.

Music (optional) is padded/trimmed to the composed duration; a watermark
(optional) is overlaid after concatenation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from .composer import VideoClip

DEFAULT_COLOR_FILTER = "eq=contrast=1.05:brightness=0.02:saturation=1.1"
NEUTRAL_COLOR_FILTER = "null"

XFADE_TRANSITIONS = {
    "crossfade": "fade",
    "fade": "fadeblack",
    "slide": "slideleft",
}

WATERMARK_MARGIN = 24

OVERLAY_POSITIONS = {
    "top-left": ("{m}", "{m}"),
    "top-center": ("(main_w-overlay_w)/2", "{m}"),
    "top-right": ("main_w-overlay_w-{m}", "{m}"),
    "middle-left": ("{m}", "(main_h-overlay_h)/2"),
    "middle-center": ("(main_w-overlay_w)/2", "(main_h-overlay_h)/2"),
    "middle-right": ("main_w-overlay_w-{m}", "(main_h-overlay_h)/2"),
    "bottom-left": ("{m}", "main_h-overlay_h-{m}"),
    "bottom-center": ("(main_w-overlay_w)/2", "main_h-overlay_h-{m}"),
    "bottom-right": ("main_w-overlay_w-{m}", "main_h-overlay_h-{m}"),
}


class GraphMode(str, Enum):
    RICH = "rich"
    SIMPLIFIED = "simplified"


@dataclass(frozen=True)
class MusicInput:
    path: str
    volume: float = 1.0
    start_time: float = 0.0


@dataclass
class FilterGraph:
    inputs: list[list[str]]           # per-input ffmpeg args, e.g. ["-i", path]
    filter_complex: str
    duration: float
    video_label: str = "[vout]"
    audio_label: str | None = None
    mode: GraphMode = GraphMode.RICH
    parts: list[str] = field(default_factory=list)

    def map_args(self) -> list[str]:
        args = ["-map", self.video_label]
        if self.audio_label:
            args += ["-map", self.audio_label]
        return args


def choose_mode(clips: Sequence[VideoClip]) -> GraphMode:
    return GraphMode.SIMPLIFIED if any(c.is_map_clip for c in clips) else GraphMode.RICH


def overlay_position(position: str, margin: int = WATERMARK_MARGIN) -> str:
    try:
        x, y = OVERLAY_POSITIONS[position]
    except KeyError:
        raise ValueError(f"Unknown overlay position '{position}'. Valid: {sorted(OVERLAY_POSITIONS)}") from None
    return f"{x.format(m=margin)}:{y.format(m=margin)}"


def _fmt(seconds: float) -> str:
    return f"{seconds:.3f}"


def _clip_chain(index: int, clip: VideoClip, size: tuple[int, int], fps: int) -> str:
    w, h = size
    color = NEUTRAL_COLOR_FILTER if clip.is_map_clip else (clip.color_filter or DEFAULT_COLOR_FILTER)
    return (
        f"[{index}:v]trim=duration={_fmt(clip.duration)},setpts=PTS-STARTPTS,"
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={fps},format=yuv420p,"
        f"{color}[v{index}]"
    )


def _rich_join(clips: Sequence[VideoClip], parts: list[str]) -> tuple[str, float]:
    current = "[v0]"
    running = clips[0].duration
    for i in range(1, len(clips)):
        clip = clips[i]
        out = f"[x{i}]"
        transition = clip.transition
        if transition is not None:
            # the overlap must fit inside both the outgoing and incoming clip
            xd = min(transition.duration, clips[i - 1].duration * 0.9, clip.duration * 0.9)
            offset = max(0.0, running - xd)
            name = XFADE_TRANSITIONS.get(transition.type, "fade")
            parts.append(
                f"{current}[v{i}]xfade=transition={name}:duration={_fmt(xd)}:offset={_fmt(offset)}{out}"
            )
            running += clip.duration - xd
        else:
            parts.append(f"{current}[v{i}]concat=n=2:v=1:a=0{out}")
            running += clip.duration
        current = out
    return current, running


def build_filter_graph(
    clips: Sequence[VideoClip],
    mode: GraphMode | None = None,
    *,
    music: MusicInput | None = None,
    watermark: str | None = None,
    watermark_position: str = "bottom-center",
    size: tuple[int, int] = (1080, 1920),
    fps: int = 24,
) -> FilterGraph:
    """Build the -filter_complex graph and matching input list for `clips`.

    Returns a FilterGraph whose `video_label`/`audio_label` are ready for -map.
    Raises ValueError for an empty clip list or an unknown watermark position.
    """
    if not clips:
        raise ValueError("cannot build a filter graph without clips")
    mode = mode or choose_mode(clips)

    inputs = [["-i", str(c.source)] for c in clips]
    parts = [_clip_chain(i, c, size, fps) for i, c in enumerate(clips)]
    audio_label = None

    if mode is GraphMode.RICH and len(clips) > 1:
        video, duration = _rich_join(clips, parts)
    elif len(clips) == 1:
        video, duration = "[v0]", clips[0].duration
    else:
        duration = sum(c.duration for c in clips)
        n = len(clips)
        if music is None and all(c.has_audio for c in clips):
            for i, c in enumerate(clips):
                parts.append(f"[{i}:a]atrim=duration={_fmt(c.duration)},asetpts=PTS-STARTPTS[a{i}]")
            joined = "".join(f"[v{i}][a{i}]" for i in range(n))
            parts.append(f"{joined}concat=n={n}:v=1:a=1[vcat][aout]")
            audio_label = "[aout]"
        else:
            joined = "".join(f"[v{i}]" for i in range(n))
            parts.append(f"{joined}concat=n={n}:v=1:a=0[vcat]")
        video = "[vcat]"

    if music is not None:
        music_index = len(inputs)
        seek = ["-ss", _fmt(music.start_time)] if music.start_time > 0 else []
        inputs.append([*seek, "-i", str(music.path)])
        parts.append(
            f"[{music_index}:a]apad,atrim=duration={_fmt(duration)},asetpts=PTS-STARTPTS,"
            f"volume={music.volume:g},"
            f"aformat=sample_fmts=fltp:sample_rates=44100:channel_layouts=stereo[aout]"
        )
        audio_label = "[aout]"

    if watermark:
        wm_index = len(inputs)
        inputs.append(["-i", str(watermark)])
        parts.append(f"{video}[{wm_index}:v]overlay={overlay_position(watermark_position)}:format=auto[vout]")
    else:
        parts.append(f"{video}null[vout]")

    return FilterGraph(
        inputs=inputs,
        filter_complex=";".join(parts),
        duration=duration,
        audio_label=audio_label,
        mode=mode,
        parts=parts,
    )
