import pytest

from reels.catalog import TemplateCatalog, TemplateDefinition
from reels.composer import SequenceComposer, adapt_sequence
from reels.errors import ValidationError


def _paths(n):
    return [f"s3://bucket/segments/photo-{i}.mp4" for i in range(n)]


class TestCompose:
    @pytest.mark.parametrize("available", [1, 3, 7, 10, 14])
    def test_every_template_yields_valid_clips(self, catalog, available):
        composer = SequenceComposer(catalog)
        paths = _paths(available)
        for key in catalog.keys():
            map_clip = "s3://bucket/maps/m.mp4" if catalog.requires_map(key) else None
            clips = composer.compose(key, paths, map_clip)
            assert clips
            assert all(c.duration > 0 for c in clips)
            assert all(c.source in paths for c in clips if not c.is_map_clip)

    def test_fewer_clips_than_slots_wraps_indices(self, catalog):
        clips = SequenceComposer(catalog).compose("crescendo", _paths(3))
        template = catalog.get("crescendo")
        assert len(clips) == len(template.sequence)
        expected = [_paths(3)[i % 3] for i in template.sequence]
        assert [c.source for c in clips] == expected
        assert [c.duration for c in clips] == list(template.durations)

    def test_map_template_requires_map_clip(self, catalog):
        with pytest.raises(ValidationError) as excinfo:
            SequenceComposer(catalog).compose("googlezoomintro", _paths(10))
        assert excinfo.value.template == "googlezoomintro"

    def test_map_clip_leads_and_is_not_color_graded(self, catalog):
        clips = SequenceComposer(catalog).compose("googlezoomintro", _paths(10), "s3://bucket/maps/m.mp4")
        assert clips[0].is_map_clip
        assert clips[0].source == "s3://bucket/maps/m.mp4"
        assert clips[0].duration == 3.0
        assert clips[0].color_filter is None
        assert clips[1].duration == 1.25
        assert len(clips) == 11

    def test_transitions_cycle_from_second_clip(self, catalog):
        clips = SequenceComposer(catalog).compose("hyperpop", _paths(10))
        assert clips[0].transition is None
        assert [c.transition.type for c in clips[1:5]] == ["slide", "crossfade", "slide", "crossfade"]

    def test_color_correction_is_applied(self, catalog):
        clips = SequenceComposer(catalog).compose("wesanderson", _paths(10))
        assert all(c.color_filter.startswith("eq=saturation=1.3") for c in clips)

    def test_no_clips(self, catalog):
        with pytest.raises(ValidationError):
            SequenceComposer(catalog).compose("wave", [])

    def test_unknown_template(self, catalog):
        with pytest.raises(ValidationError):
            SequenceComposer(catalog).compose("nope", _paths(3))


class TestAdaptSequence:
    def _template(self, sequence, durations):
        return TemplateDefinition(key="t", name="t", sequence=tuple(sequence), durations=tuple(durations))

    def test_out_of_range_indices_are_dropped_when_enough_clips(self):
        adapted = adapt_sequence(self._template([0, 5, 1], [1, 1, 1]), 3)
        assert [s.index for s in adapted] == [0, 1]

    def test_wraps_when_short(self):
        adapted = adapt_sequence(self._template([0, 5, 1], [1, 1, 1]), 2)
        assert [s.index for s in adapted] == [0, 1, 1]

    def test_dropped_slots_shrink_the_composition(self):
        catalog = TemplateCatalog({"t": self._template([0, 5, 1], [1.0, 2.0, 3.0])})
        clips = SequenceComposer(catalog).compose("t", _paths(3))
        assert [c.source for c in clips] == [_paths(3)[0], _paths(3)[1]]
        assert [c.duration for c in clips] == [1.0, 2.0]
