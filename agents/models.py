#!/usr/bin/env python3
"""
In-memory model shared by the pipeline agents.

LocalTrack -> AlbumGroup -> MatchCandidate -> ResolvedTrack
"""

import hashlib
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from unidecode import unidecode

from sources.base import CatalogRelease, CatalogTrack
from tags.base import ContainerKind, TagFields


# "01 - Title", "01. Title", "1_Title"
TRACK_PREFIX = re.compile(r'^\s*\d{1,3}\s*[-._)]?\s+|^\s*\d{1,3}\s*[-._)]\s*')


def normalize_key(value: Optional[str]) -> str:
    """Case- and diacritic-insensitive form used for grouping and voting"""
    if not value:
        return ""
    value = unidecode(value).casefold()
    value = re.sub(r'[^\w\s]', ' ', value)
    return ' '.join(value.split())


def dominant(values: Iterable[Optional[str]]) -> Optional[str]:
    """
    Majority vote over normalized values.

    Returns the most common raw spelling inside the winning bucket. Ties go
    to whichever value was seen first.
    """
    buckets: Dict[str, Counter] = {}
    for value in values:
        key = normalize_key(value)
        if not key:
            continue
        buckets.setdefault(key, Counter())[value.strip()] += 1

    if not buckets:
        return None

    best = max(buckets.values(), key=lambda c: sum(c.values()))
    return best.most_common(1)[0][0]


def album_id_for(key: Tuple[str, str]) -> str:
    """Generate consistent album ID from the group key"""
    return hashlib.md5("\x1f".join(key).encode('utf-8')).hexdigest()[:12]


@dataclass(frozen=True)
class LocalTrack:
    """One scanned audio file"""
    path: str
    kind: ContainerKind
    tags: TagFields
    duration: Optional[float] = None
    size: int = 0
    content_hash: Optional[str] = None

    @property
    def filename(self) -> str:
        return Path(self.path).name

    @property
    def stem(self) -> str:
        return Path(self.path).stem

    @property
    def display_title(self) -> str:
        """Title tag, else the file stem without its track-number prefix"""
        if self.tags.title:
            return self.tags.title
        return TRACK_PREFIX.sub('', self.stem, count=1).strip() or self.stem

    @property
    def album_artist(self) -> Optional[str]:
        return self.tags.album_artist or self.tags.artist

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "kind": self.kind.value,
            "tags": self.tags.to_dict(),
            "duration": self.duration,
            "size": self.size
        }


@dataclass
class AlbumGroup:
    """Local tracks believed to belong to one release"""
    key: Tuple[str, str]
    tracks: List[LocalTrack] = field(default_factory=list)
    album_id: str = ""
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.album_id:
            self.album_id = album_id_for(self.key)

    @property
    def track_count(self) -> int:
        return len(self.tracks)

    @property
    def artist(self) -> Optional[str]:
        return dominant(t.album_artist for t in self.tracks)

    @property
    def title(self) -> Optional[str]:
        return dominant(t.tags.album for t in self.tracks)

    @property
    def year(self) -> Optional[int]:
        years = [t.tags.year for t in self.tracks if t.tags.year]
        if years:
            return Counter(years).most_common(1)[0][0]
        return None

    @property
    def folder_name(self) -> str:
        """Most common parent directory name, used when there is no album tag"""
        names = Counter(Path(t.path).parent.name for t in self.tracks)
        return names.most_common(1)[0][0] if names else ""

    @property
    def source_dirs(self) -> List[str]:
        return sorted({str(Path(t.path).parent) for t in self.tracks})

    def sort(self) -> None:
        def order(track: LocalTrack):
            disc = track.tags.disc_number
            number = track.tags.track_number
            return (
                disc is None, disc or 0,
                number is None, number or 0,
                track.path
            )
        self.tracks.sort(key=order)

    @property
    def label(self) -> str:
        artist = self.artist or "Unknown Artist"
        title = self.title or self.folder_name or "Unknown Album"
        return f"{artist} - {title}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "album_id": self.album_id,
            "artist": self.artist,
            "title": self.title,
            "year": self.year,
            "track_count": self.track_count,
            "warnings": self.warnings,
            "tracks": [t.path for t in self.tracks]
        }


@dataclass(frozen=True)
class TrackAlignment:
    """A local track and the release track it was aligned to (None if unmatched)"""
    local: LocalTrack
    remote_index: Optional[int] = None
    similarity: float = 0.0

    @property
    def matched(self) -> bool:
        return self.remote_index is not None


@dataclass
class MatchCandidate:
    """A scored release for an album group"""
    group: AlbumGroup
    release: CatalogRelease
    confidence: float
    alignments: List[TrackAlignment] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def unmatched(self) -> List[LocalTrack]:
        return [a.local for a in self.alignments if not a.matched]

    def remote_track(self, alignment: TrackAlignment) -> Optional[CatalogTrack]:
        if alignment.remote_index is None:
            return None
        return self.release.tracks[alignment.remote_index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "release_id": self.release.release_id,
            "source": self.release.source,
            "title": self.release.title,
            "uri": self.release.uri,
            "confidence": round(self.confidence, 4),
            "scores": {k: round(v, 4) for k, v in self.scores.items()},
            "aligned": len(self.alignments) - len(self.unmatched),
            "unmatched": [t.path for t in self.unmatched]
        }


@dataclass(frozen=True)
class ResolvedTrack:
    """Local track plus its final tag set and destination"""
    local: LocalTrack
    tags: TagFields
    matched: bool = True
    destination: Optional[str] = None
    transcode_to: Optional[ContainerKind] = None

    @property
    def target_kind(self) -> ContainerKind:
        return self.transcode_to or self.local.kind
