"""Read-only template catalog loaded from YAML at startup.

Each template declares an ordered sequence of slots (photo indices or the
reserved "map" marker), per-slot durations (a list matched by position or a
mapping keyed by slot), and optional transitions, color grading, music and
watermark. Malformed files fail at load time with ValueError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

MAP_SLOT = "map"

VALID_TRANSITIONS = {"crossfade", "fade", "slide"}


@dataclass(frozen=True)
class Transition:
    type: str
    duration: float


@dataclass(frozen=True)
class MusicTrack:
    path: str
    volume: float = 1.0
    start_time: float = 0.0


@dataclass(frozen=True)
class TemplateDefinition:
    key: str
    name: str
    sequence: tuple
    durations: tuple | dict
    description: str = ""
    transitions: tuple[Transition, ...] = ()
    color_correction: str | None = None
    music: MusicTrack | None = None
    watermark: str | None = None
    tags: tuple[str, ...] = field(default=())

    @property
    def requires_map(self) -> bool:
        return MAP_SLOT in self.sequence

    @property
    def required_slots(self) -> int:
        return sum(1 for slot in self.sequence if slot != MAP_SLOT)

    @property
    def keyed_durations(self) -> bool:
        return isinstance(self.durations, dict)


class TemplateCatalog:
    def __init__(self, templates: dict[str, TemplateDefinition]):
        self._templates = dict(templates)

    @classmethod
    def from_yaml(cls, path) -> "TemplateCatalog":
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        entries = raw.get("templates")
        if not isinstance(entries, dict) or not entries:
            raise ValueError(f"{path}: expected a non-empty 'templates' mapping")
        templates = {str(key): _parse_template(str(key), body) for key, body in entries.items()}
        logger.info("Loaded %d templates from %s", len(templates), path)
        return cls(templates)

    def get(self, key: str) -> TemplateDefinition:
        try:
            return self._templates[key]
        except KeyError:
            raise ValidationError(
                f"Unknown template '{key}'. Valid: {sorted(self._templates)}", template=key
            ) from None

    def keys(self) -> list[str]:
        return list(self._templates)

    def requires_map(self, key: str) -> bool:
        return self.get(key).requires_map

    def __contains__(self, key) -> bool:
        return key in self._templates


# ── Parsing ──────────────────────────────────────────────────────


def _parse_slot(key: str, slot):
    if slot == MAP_SLOT:
        return MAP_SLOT
    try:
        index = int(slot)
    except (TypeError, ValueError):
        raise ValueError(f"Template '{key}': invalid slot {slot!r}") from None
    if index < 0:
        raise ValueError(f"Template '{key}': negative slot index {index}")
    return index


def _parse_template(key: str, body: dict) -> TemplateDefinition:
    if not isinstance(body, dict):
        raise ValueError(f"Template '{key}': expected a mapping")
    sequence = tuple(_parse_slot(key, slot) for slot in body.get("sequence") or [])
    if not sequence:
        raise ValueError(f"Template '{key}': 'sequence' must be non-empty")

    raw_durations = body.get("durations")
    if isinstance(raw_durations, list):
        durations = tuple(float(d) for d in raw_durations)
        if len(durations) != len(sequence):
            raise ValueError(
                f"Template '{key}': {len(durations)} durations for {len(sequence)} slots"
            )
        values = durations
    elif isinstance(raw_durations, dict):
        durations = {str(slot): float(d) for slot, d in raw_durations.items()}
        missing = [slot for slot in sequence if str(slot) not in durations]
        if missing:
            raise ValueError(f"Template '{key}': no duration for slots {missing}")
        values = tuple(durations.values())
    else:
        raise ValueError(f"Template '{key}': 'durations' must be a list or mapping")
    if any(d <= 0 for d in values):
        raise ValueError(f"Template '{key}': durations must be positive")

    transitions = []
    for i, item in enumerate(body.get("transitions") or []):
        kind = (item or {}).get("type")
        duration = float((item or {}).get("duration", 0))
        if kind not in VALID_TRANSITIONS:
            raise ValueError(
                f"Template '{key}': transition {i} has unknown type {kind!r}. "
                f"Valid: {sorted(VALID_TRANSITIONS)}"
            )
        if duration <= 0:
            raise ValueError(f"Template '{key}': transition {i} needs a positive duration")
        transitions.append(Transition(type=kind, duration=duration))

    color = body.get("color_correction")
    if color is not None and (not isinstance(color, str) or not color.strip() or "[" in color or ";" in color):
        raise ValueError(f"Template '{key}': color_correction must be a single filter chain")

    music = body.get("music")
    if music is not None:
        if not music.get("path"):
            raise ValueError(f"Template '{key}': music needs a 'path'")
        music = MusicTrack(
            path=str(music["path"]),
            volume=float(music.get("volume", 1.0)),
            start_time=float(music.get("start_time", 0.0)),
        )

    return TemplateDefinition(
        key=key,
        name=str(body.get("name") or key),
        description=str(body.get("description") or ""),
        sequence=sequence,
        durations=durations,
        transitions=tuple(transitions),
        color_correction=color.strip() if color else None,
        music=music,
        watermark=body.get("watermark"),
        tags=tuple(body.get("tags") or ()),
    )
