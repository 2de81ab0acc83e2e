"""Expands a template into an ordered clip list for the clips a listing actually has."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .catalog import MAP_SLOT, TemplateCatalog, TemplateDefinition, Transition
from .errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VideoClip:
    source: str
    duration: float
    transition: Transition | None = None
    color_filter: str | None = None
    watermark: str | None = None
    has_audio: bool = False
    is_map_clip: bool = False


@dataclass(frozen=True)
class Slot:
    slot: object        # template sequence entry (int or MAP_SLOT)
    index: object       # adapted index into the available clips (or MAP_SLOT)


def adapt_sequence(template: TemplateDefinition, available: int) -> list[Slot]:
    """
    Fit the template's sequence to `available` clips.

    With fewer clips than the template references, every index wraps modulo the
    clip count so the full sequence is still produced. Otherwise indices past the
    end are dropped and the sequence shrinks.
    """
    wrap = available < template.required_slots
    adapted = []
    for slot in template.sequence:
        if slot == MAP_SLOT:
            adapted.append(Slot(slot, MAP_SLOT))
        elif wrap:
            adapted.append(Slot(slot, slot % available))
        elif slot < available:
            adapted.append(Slot(slot, slot))
    return adapted


def slot_duration(template: TemplateDefinition, position: int, slot) -> float:
    if template.keyed_durations:
        try:
            return template.durations[str(slot)]
        except KeyError:
            raise ValidationError(
                f"Template '{template.key}' has no duration for slot {slot!r}", template=template.key
            ) from None
    return template.durations[position % len(template.durations)]


class SequenceComposer:
    def __init__(self, catalog: TemplateCatalog):
        self.catalog = catalog

    def compose(
        self,
        template_key: str,
        available_clip_paths: Sequence[str],
        map_clip_path: str | None = None,
    ) -> list[VideoClip]:
        template = self.catalog.get(template_key)
        paths = list(available_clip_paths)
        if not paths:
            raise ValidationError(f"Template '{template_key}' has no clips to compose", template=template_key)
        if template.requires_map and not map_clip_path:
            raise ValidationError(
                f"Template '{template_key}' requires a map clip but no coordinates were supplied",
                template=template_key,
            )

        adapted = adapt_sequence(template, len(paths))
        clips = []
        for position, entry in enumerate(adapted):
            is_map = entry.index == MAP_SLOT
            transition = None
            if position > 0 and template.transitions:
                transition = template.transitions[(position - 1) % len(template.transitions)]
            clips.append(
                VideoClip(
                    source=map_clip_path if is_map else paths[entry.index],
                    duration=slot_duration(template, position, entry.slot),
                    transition=transition,
                    color_filter=None if is_map else template.color_correction,
                    watermark=template.watermark,
                    is_map_clip=is_map,
                )
            )

        if not clips or len(clips) != len(adapted):
            raise ValidationError(
                f"Template '{template_key}' produced {len(clips)} clips for {len(adapted)} slots",
                template=template_key,
            )
        logger.debug(
            "Composed %s: %d clips from %d inputs (%.2fs)",
            template_key, len(clips), len(paths), sum(c.duration for c in clips),
        )
        return clips
