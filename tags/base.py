#!/usr/bin/env python3
"""
Base types for tag codecs.
All container codecs (ID3, MP4 atoms, Vorbis comments) inherit from this.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from errors import TagCodecError


class ContainerKind(Enum):
    """Audio container kinds the pipeline understands"""
    MP3 = "mp3"
    M4A = "m4a"
    FLAC = "flac"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def is_lossless(self) -> bool:
        return self is ContainerKind.FLAC

    @classmethod
    def from_path(cls, path) -> Optional["ContainerKind"]:
        """Map a file extension to a container kind, None if unsupported"""
        return _EXTENSIONS.get(Path(path).suffix.lower())

    @classmethod
    def from_name(cls, name: str) -> "ContainerKind":
        try:
            return cls(name.lower().lstrip('.'))
        except ValueError:
            raise ValueError(f"Unsupported container: {name}")


_EXTENSIONS = {
    '.mp3': ContainerKind.MP3,
    '.m4a': ContainerKind.M4A,
    '.mp4': ContainerKind.M4A,
    '.flac': ContainerKind.FLAC,
}


@dataclass(frozen=True)
class TagFields:
    """Container-independent tag set. None means the field is absent."""
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    album_artist: Optional[str] = None
    year: Optional[int] = None
    track_number: Optional[int] = None
    total_tracks: Optional[int] = None
    disc_number: Optional[int] = None
    total_discs: Optional[int] = None
    genre: Optional[str] = None
    extras: Tuple[Tuple[str, str], ...] = ()

    def extra(self, key: str) -> Optional[str]:
        for k, v in self.extras:
            if k == key:
                return v
        return None

    def with_extra(self, key: str, value: Optional[str]) -> "TagFields":
        items = {k: v for k, v in self.extras}
        if value is None:
            items.pop(key, None)
        else:
            items[key] = value
        return replace(self, extras=tuple(sorted(items.items())))

    def matches(self, existing: "TagFields") -> bool:
        """True when every field set here already has the same value in existing"""
        for f in fields(self):
            if f.name == 'extras':
                continue
            value = getattr(self, f.name)
            if value is not None and getattr(existing, f.name) != value:
                return False
        for key, value in self.extras:
            if existing.extra(key) != value:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'extras'}
        data['extras'] = dict(self.extras)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TagFields":
        known = {f.name for f in fields(cls)} - {'extras'}
        values = {k: v for k, v in data.items() if k in known}
        extras = data.get('extras') or {}
        return cls(**values, extras=tuple(sorted(extras.items())))


class TagCodec(ABC):
    """
    Abstract base class for container tag codecs.

    Codecs must preserve every field they are not explicitly asked to
    overwrite; fields that are None in the written TagFields are left alone.
    """

    @property
    @abstractmethod
    def kind(self) -> ContainerKind:
        """Container kind handled by this codec"""
        pass

    @abstractmethod
    def read_tags(self, path: str) -> TagFields:
        pass

    @abstractmethod
    def write_tags(self, path: str, tags: TagFields) -> None:
        pass

    def read_duration(self, path: str) -> Optional[float]:
        """Duration in seconds, None if the stream info can't be read"""
        return None

    def _fail(self, action: str, path: str, error: Exception) -> TagCodecError:
        return TagCodecError(f"Failed to {action} {self.kind.value} tags: {error}", path=path, cause=error)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


def get_first(value) -> Optional[str]:
    """Get first element from list or return string"""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_number_pair(value) -> Tuple[Optional[int], Optional[int]]:
    """Parse "3", "3/12" or ["3/12"] into (3, 12)"""
    value = get_first(value)
    if not value:
        return None, None

    number, _, total = value.partition('/')
    return _to_int(number), _to_int(total)


def parse_year(value) -> Optional[int]:
    """Extract year from date string like 1975 or 1975-04-01"""
    value = get_first(value)
    if value and len(value) >= 4:
        return _to_int(value[:4])
    return None


def format_number_pair(number: Optional[int], total: Optional[int]) -> Optional[str]:
    if number is None:
        return None
    return f"{number}/{total}" if total else str(number)


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def merge_extras(items: Iterable[Tuple[str, str]]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted({k: v for k, v in items if v}.items()))
