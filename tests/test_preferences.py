"""Tests for src/preferences.py."""

from src.models import AIFeatureSelection, UserAISelection
from src.preferences import PreferenceStore


def test_missing_file_loads_none(tmp_path):
    assert PreferenceStore(tmp_path / "prefs.yaml").load() is None


def test_save_then_load(tmp_path):
    store = PreferenceStore(tmp_path / "nested" / "prefs.yaml")
    selection = UserAISelection(
        selected_tier="premium",
        feature_selections=[AIFeatureSelection("summaries", "Summaries", ["claude-opus-4-6"])],
        custom_overrides={"chat": "gemini-3-pro-preview"},
    )
    store.save(selection)
    assert store.load() == selection


def test_malformed_file_loads_none(tmp_path):
    path = tmp_path / "prefs.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert PreferenceStore(path).load() is None


def test_unparseable_yaml_loads_none(tmp_path):
    path = tmp_path / "prefs.yaml"
    path.write_text("selectedTier: [unclosed\n", encoding="utf-8")
    assert PreferenceStore(path).load() is None


def test_missing_tier_loads_none(tmp_path):
    path = tmp_path / "prefs.yaml"
    path.write_text("customOverrides: {}\n", encoding="utf-8")
    assert PreferenceStore(path).load() is None
