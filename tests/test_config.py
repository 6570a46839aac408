"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from errors import ConfigError
from orchestrator.config import ConfigManager
from tags.base import ContainerKind


def test_defaults_when_file_missing(tmp_path):
    config = ConfigManager(str(tmp_path / "missing.yaml"), credentials_path=None)

    assert config.get('run.workers') == 4
    assert config.get('matching.ambiguity_epsilon') == 0.02
    assert config.get('scanning.duplicates') == 'skip'
    assert config.primary_source == 'discogs'


def test_file_values_merge_over_defaults(tmp_path):
    path = tmp_path / "music-config.yaml"
    path.write_text(
        "library:\n"
        "  root: /music\n"
        "matching:\n"
        "  weights:\n"
        "    tracks: 0.5\n",
        encoding='utf-8'
    )

    config = ConfigManager(str(path), credentials_path=None)

    assert config.library_root == "/music"
    assert config.get('matching.weights.tracks') == 0.5
    assert config.get('matching.weights.album') == 0.30
    assert config.get('library.clean_source_dirs') is True


def test_environment_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("MUSIC_TEST_TOKEN", "secret")
    credentials = tmp_path / "credentials.yaml"
    credentials.write_text("discogs:\n  token: ${MUSIC_TEST_TOKEN}\n", encoding='utf-8')

    config = ConfigManager(None, credentials_path=str(credentials))

    assert config.get_credential('discogs.token') == "secret"
    assert config.get_credential('discogs.missing') is None


def test_overrides_use_dot_notation():
    config = ConfigManager(None, credentials_path=None, overrides={'run.workers': 8})
    assert config.workers == 8


def test_staging_root_defaults_to_hidden_sibling(tmp_path):
    config = ConfigManager.from_dict({'library.root': str(tmp_path / "music")})
    assert Path(config.staging_root) == tmp_path.resolve() / ".music.staging"


def test_transcode_target():
    config = ConfigManager.from_dict({'transcode': {'enabled': True, 'target': 'MP3'}})
    assert config.transcode_target == ContainerKind.MP3


@pytest.mark.parametrize("data", [
    {'naming.template': "{artist}/{album}.{ext}"},
    {'matching.track_floor': 1.5},
    {'matching.weights.album': -1},
    {'run.workers': 0},
    {'run.max_catalog_failures': 0},
    {'scanning.duplicates': 'delete'},
    {'transcode': {'enabled': True, 'target': 'ogg'}},
])
def test_invalid_values_rejected(data):
    with pytest.raises(ConfigError):
        ConfigManager.from_dict(data)


def test_staging_inside_library_rejected(tmp_path):
    with pytest.raises(ConfigError):
        ConfigManager.from_dict({
            'library.root': str(tmp_path / "music"),
            'library.staging_root': str(tmp_path / "music" / ".staging"),
        })


def test_invalid_yaml(tmp_path):
    path = tmp_path / "music-config.yaml"
    path.write_text("library: [unclosed\n", encoding='utf-8')

    with pytest.raises(ConfigError):
        ConfigManager(str(path), credentials_path=None)
