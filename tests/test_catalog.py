"""Tests for the YAML template catalog."""

import pytest
import yaml

from reels.catalog import MAP_SLOT, TemplateCatalog
from reels.errors import ValidationError


def _write_catalog(tmp_path, templates):
    path = tmp_path / "templates.yaml"
    path.write_text(yaml.safe_dump({"templates": templates}))
    return path


def _template(**overrides):
    t = {"sequence": [0, 1, 2], "durations": [1.0, 1.5, 2.0]}
    t.update(overrides)
    return t


class TestBundledCatalog:
    def test_loads_all_templates(self, catalog):
        assert set(catalog.keys()) == {
            "crescendo", "wave", "storyteller", "googlezoomintro", "wesanderson", "hyperpop",
        }

    def test_map_requirement(self, catalog):
        assert catalog.requires_map("googlezoomintro")
        assert not catalog.requires_map("storyteller")

    def test_keyed_durations_cover_map_slot(self, catalog):
        zoom = catalog.get("googlezoomintro")
        assert zoom.keyed_durations
        assert zoom.sequence[0] == MAP_SLOT
        assert zoom.durations["map"] == 3.0
        assert zoom.required_slots == 10

    def test_transitions_and_music(self, catalog):
        story = catalog.get("storyteller")
        assert story.transitions[0].type == "crossfade"
        assert story.transitions[0].duration == 0.5
        assert story.music.path == "music/minimal.mp3"

    def test_unknown_key_raises_validation_error(self, catalog):
        with pytest.raises(ValidationError) as excinfo:
            catalog.get("vaporwave")
        assert excinfo.value.template == "vaporwave"


class TestLoadErrors:
    def test_missing_templates_mapping(self, tmp_path):
        path = tmp_path / "templates.yaml"
        path.write_text("other: 1\n")
        with pytest.raises(ValueError, match="templates"):
            TemplateCatalog.from_yaml(path)

    def test_duration_count_must_match_sequence(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(durations=[1.0, 2.0])})
        with pytest.raises(ValueError, match="2 durations for 3 slots"):
            TemplateCatalog.from_yaml(path)

    def test_keyed_durations_must_cover_every_slot(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(sequence=["map", 0], durations={0: 1.0})})
        with pytest.raises(ValueError, match="no duration"):
            TemplateCatalog.from_yaml(path)

    def test_durations_must_be_positive(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(durations=[1.0, 0, 2.0])})
        with pytest.raises(ValueError, match="positive"):
            TemplateCatalog.from_yaml(path)

    def test_empty_sequence(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(sequence=[], durations=[])})
        with pytest.raises(ValueError, match="non-empty"):
            TemplateCatalog.from_yaml(path)

    def test_unknown_transition_type(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(transitions=[{"type": "spin", "duration": 0.5}])})
        with pytest.raises(ValueError, match="unknown type"):
            TemplateCatalog.from_yaml(path)

    def test_color_correction_must_be_single_chain(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(color_correction="eq=saturation=2;[x]null")})
        with pytest.raises(ValueError, match="single filter chain"):
            TemplateCatalog.from_yaml(path)

    def test_music_needs_path(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(music={"volume": 0.5})})
        with pytest.raises(ValueError, match="music"):
            TemplateCatalog.from_yaml(path)

    def test_invalid_slot(self, tmp_path):
        path = _write_catalog(tmp_path, {"t": _template(sequence=[0, "intro", 2])})
        with pytest.raises(ValueError, match="invalid slot"):
            TemplateCatalog.from_yaml(path)
