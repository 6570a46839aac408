#!/usr/bin/env python3
"""
Configuration management for the reorganizer.
Loads YAML config and credentials with environment variable support.
"""

import copy
import logging
import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from agents.paths import DEFAULT_TEMPLATE, PathTemplate
from errors import ConfigError
from tags.base import ContainerKind


logger = logging.getLogger("reorganizer.config")

DUPLICATE_POLICIES = ('skip', 'keep')


def _default_config() -> Dict[str, Any]:
    """Return default configuration"""
    return {
        'library': {
            'root': None,
            'staging_root': None,
            'clean_source_dirs': True,
            'fsync': False
        },
        'naming': {
            'template': DEFAULT_TEMPLATE
        },
        'scanning': {
            'duplicates': 'skip'
        },
        'matching': {
            'max_candidates': 10,
            'track_floor': 0.6,
            'ambiguity_epsilon': 0.02,
            'min_confidence': 0.5,
            'weights': {
                'album': 0.30,
                'artist': 0.20,
                'track_count': 0.10,
                'tracks': 0.40
            },
            'move_unmatched': False
        },
        'reconcile': {
            'artist_join': None,
            'genre_join': '; '
        },
        'covers': {
            'enabled': True
        },
        'transcode': {
            'enabled': False,
            'target': 'm4a',
            'remove_source': False,
            'ffmpeg': 'ffmpeg',
            'options': {
                'bitrate': '256k',
                'timeout': 600
            }
        },
        'run': {
            'workers': 4,
            'catalog_retries': 1,
            'catalog_retry_delay': 5.0,
            'max_catalog_failures': None
        },
        'sources': {
            'primary': 'discogs'
        },
        'api': {
            'discogs': {
                'rate_limit': 1.0,
                'max_retries': 3,
                'timeout': 30,
                'per_page': 25,
                'user_agent': 'MusicReorganizer/1.0'
            },
            'musicbrainz': {
                'rate_limit': 1.0,
                'max_retries': 3,
                'timeout': 30,
                'user_agent': 'MusicReorganizer/1.0'
            }
        },
        'cache': {
            'dir': None
        },
        'output': {
            'reports_path': None,
            'logs_path': None,
            'log_level': 'INFO'
        }
    }


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into base (in place)"""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _expand(value: Any) -> Any:
    """Expand ${VAR_NAME} values; unset variables become None"""
    if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
        return os.environ.get(value[2:-1])
    return value


class ConfigManager:
    """
    Configuration manager that loads settings from YAML files.

    File values are merged over built-in defaults, so a config file only
    needs the keys it changes. Supports environment variable expansion for
    sensitive values. Invalid settings raise ConfigError at load time.
    """

    def __init__(
        self,
        config_path: Optional[str] = "music-config.yaml",
        credentials_path: Optional[str] = "credentials.yaml",
        overrides: Optional[Dict[str, Any]] = None
    ):
        self.config_path = Path(config_path) if config_path else None
        self.credentials_path = Path(credentials_path) if credentials_path else None
        self._config: Dict[str, Any] = _default_config()
        self._credentials: Dict[str, Any] = {}
        self.load()
        for key, value in (overrides or {}).items():
            self.set(key, value)
        self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], credentials: Optional[Dict[str, Any]] = None) -> "ConfigManager":
        """Build a config from a dict instead of files (nested or dot keys)"""
        config = cls(config_path=None, credentials_path=None)
        for key, value in data.items():
            if '.' in key:
                config.set(key, value)
            elif isinstance(value, dict) and isinstance(config._config.get(key), dict):
                _merge(config._config[key], copy.deepcopy(value))
            else:
                config._config[key] = value
        config._credentials = dict(credentials or {})
        config.validate()
        return config

    def load(self) -> None:
        """Load configuration and credentials files"""
        if self.config_path is not None:
            if self.config_path.exists():
                self._config = _merge(_default_config(), self._read_yaml(self.config_path))
            else:
                logger.warning(f"Config file not found: {self.config_path}, using defaults")

        # Load credentials (optional)
        if self.credentials_path is not None and self.credentials_path.exists():
            self._credentials = self._read_yaml(self.credentials_path)

    def _read_yaml(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}", path=str(path), cause=e) from e
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}", path=str(path), cause=e) from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping", path=str(path))
        return data

    def validate(self) -> None:
        """Check values the pipeline cannot run with"""
        self.template = PathTemplate(self.get('naming.template', DEFAULT_TEMPLATE))

        for key in ('matching.track_floor', 'matching.ambiguity_epsilon', 'matching.min_confidence'):
            value = self.get(key)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not 0 <= value <= 1:
                raise ConfigError(f"{key} must be a number between 0 and 1, got {value!r}")

        weights = self.get('matching.weights', {}) or {}
        for name, weight in weights.items():
            if not isinstance(weight, (int, float)) or weight < 0:
                raise ConfigError(f"matching.weights.{name} must be a non-negative number, got {weight!r}")

        workers = self.get('run.workers')
        if not isinstance(workers, int) or isinstance(workers, bool) or workers < 1:
            raise ConfigError(f"run.workers must be a positive integer, got {workers!r}")

        retries = self.get('run.catalog_retries', 0)
        if not isinstance(retries, int) or retries < 0:
            raise ConfigError(f"run.catalog_retries must be a non-negative integer, got {retries!r}")

        limit = self.get('run.max_catalog_failures')
        if limit is not None and (not isinstance(limit, int) or limit < 1):
            raise ConfigError(f"run.max_catalog_failures must be a positive integer or null, got {limit!r}")

        if self.get('scanning.duplicates') not in DUPLICATE_POLICIES:
            raise ConfigError(f"scanning.duplicates must be one of {DUPLICATE_POLICIES}")

        if self.transcode_enabled:
            try:
                self.transcode_target
            except ValueError as e:
                raise ConfigError(f"transcode.target: {e}", cause=e) from e

        root, staging = self.library_root, self.staging_root
        if root and staging:
            root_path = Path(root).resolve()
            staging_path = Path(staging).resolve()
            if staging_path == root_path or root_path in staging_path.parents:
                raise ConfigError(f"Staging root {staging} must not be inside the library root {root}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get config value with dot notation.

        Examples:
            config.get('api.discogs.rate_limit')
            config.get('library.root')

        Environment variables are expanded if value is like ${VAR_NAME}
        """
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
            if value is None:
                return default

        value = _expand(value)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        """Set config value with dot notation"""
        keys = key.split('.')
        target = self._config
        for k in keys[:-1]:
            if not isinstance(target.get(k), dict):
                target[k] = {}
            target = target[k]
        target[keys[-1]] = value

    def get_credential(self, key: str) -> Optional[str]:
        """
        Get credential value with dot notation.

        Examples:
            config.get_credential('discogs.token')
        """
        value = self._credentials
        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return None
        return _expand(value)

    def get_api_settings(self, source: str) -> Dict[str, Any]:
        """Get API settings for a specific source"""
        return self.get(f'api.{source}', {}) or {}

    @property
    def library_root(self) -> Optional[str]:
        return self.get('library.root')

    @property
    def staging_root(self) -> Optional[str]:
        """Configured staging root, else a hidden sibling of the library root"""
        configured = self.get('library.staging_root')
        if configured:
            return configured
        root = self.library_root
        if not root:
            return None
        root_path = Path(root).resolve()
        return str(root_path.parent / f".{root_path.name}.staging")

    @property
    def reports_path(self) -> Optional[str]:
        return self.get('output.reports_path')

    @property
    def logs_path(self) -> Optional[str]:
        return self.get('output.logs_path')

    @property
    def log_level(self) -> str:
        return self.get('output.log_level', 'INFO')

    @property
    def primary_source(self) -> str:
        return self.get('sources.primary', 'discogs')

    @property
    def workers(self) -> int:
        return self.get('run.workers', 4)

    @property
    def transcode_enabled(self) -> bool:
        return bool(self.get('transcode.enabled', False))

    @property
    def transcode_target(self) -> ContainerKind:
        return ContainerKind.from_name(self.get('transcode.target', 'm4a'))

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def __repr__(self) -> str:
        return f"ConfigManager(config={self.config_path}, credentials={self.credentials_path})"
