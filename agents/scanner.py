#!/usr/bin/env python3
"""
Scanner Agent - Discovers audio files and groups them into albums.

Responsibilities:
- Traverse input paths (files or directories, recursively)
- Read existing tags through the tag codec registry (MP3, M4A, FLAC)
- Hash file content for duplicate detection
- Group tracks by (normalized artist, normalized album)
- Flag potential issues (inconsistent album names, missing track numbers)
"""

import hashlib
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from errors import TagCodecError
from tags import TagCodecRegistry

from .base import BaseAgent
from .models import AlbumGroup, LocalTrack, normalize_key


class ScannerAgent(BaseAgent):
    """
    Scanner agent for discovering and grouping tracks.

    Unreadable files are skipped with a warning; the scan never aborts
    because of a single bad file.
    """

    HASH_CHUNK = 1024 * 1024

    def __init__(self, config, codecs: TagCodecRegistry):
        super().__init__(config)
        self.codecs = codecs
        self.duplicates = config.get('scanning.duplicates', 'skip')
        self.skipped: List[Tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "Scanner"

    # ==================== Scanning ====================

    def scan(self, paths: Iterable[str]) -> List[LocalTrack]:
        """
        Scan input paths for supported audio files.

        Args:
            paths: Files or directories to scan

        Returns:
            LocalTrack per readable file, in path order
        """
        tracks = []
        for filepath in self._find_audio_files(paths):
            track = self.read_track(filepath)
            if track is not None:
                tracks.append(track)

        self.log(f"Scanned {len(tracks)} tracks ({len(self.skipped)} skipped)")
        return tracks

    def read_track(self, filepath: Path) -> Optional[LocalTrack]:
        """Read one file, None if it can't be read"""
        codec = self.codecs.for_path(filepath)
        if codec is None:
            return None

        try:
            tags = codec.read_tags(str(filepath))
            duration = codec.read_duration(str(filepath))
            size = filepath.stat().st_size
            content_hash = self._hash_file(filepath)
        except (TagCodecError, OSError) as e:
            self.log_warning(f"Skipping unreadable file {filepath}: {e}")
            self.skipped.append((str(filepath), str(e)))
            return None

        return LocalTrack(
            path=str(filepath),
            kind=codec.kind,
            tags=tags,
            duration=duration,
            size=size,
            content_hash=content_hash
        )

    def _find_audio_files(self, paths: Iterable[str]) -> List[Path]:
        """Find all supported files; hidden directories are not entered"""
        files = []
        for raw in paths:
            path = Path(raw)
            if path.is_file():
                if self.codecs.for_path(path):
                    files.append(path.resolve())
                continue
            if not path.is_dir():
                self.log_warning(f"Path not found: {path}")
                continue

            for root, dirs, filenames in os.walk(path):
                dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
                for filename in sorted(filenames):
                    if filename.startswith('.'):
                        continue
                    candidate = Path(root) / filename
                    if self.codecs.for_path(candidate):
                        files.append(candidate.resolve())

        # Same file given twice (e.g. a directory and a file inside it)
        return sorted(set(files))

    def _hash_file(self, filepath: Path) -> str:
        digest = hashlib.sha1()
        with open(filepath, 'rb') as f:
            for chunk in iter(lambda: f.read(self.HASH_CHUNK), b''):
                digest.update(chunk)
        return digest.hexdigest()

    # ==================== Grouping ====================

    def group(self, tracks: Iterable[LocalTrack]) -> List[AlbumGroup]:
        """
        Group tracks into albums.

        Key is (normalized album artist or artist, normalized album). Tracks
        with neither tag are grouped by parent directory.
        """
        groups: Dict[Tuple[str, str], AlbumGroup] = {}
        seen_hashes: Dict[str, str] = {}

        for track in tracks:
            key = self._group_key(track)
            group = groups.get(key)
            if group is None:
                group = groups[key] = AlbumGroup(key=key)

            if track.content_hash and track.content_hash in seen_hashes:
                original = seen_hashes[track.content_hash]
                if self.duplicates == 'skip':
                    group.warnings.append(f"Duplicate of {original} left in place: {track.path}")
                    self.log_warning(f"Duplicate skipped: {track.path} (same content as {original})")
                    continue
                group.warnings.append(f"Duplicate of {original}: {track.path}")
            elif track.content_hash:
                seen_hashes[track.content_hash] = track.path

            group.tracks.append(track)

        result = []
        for group in groups.values():
            if not group.tracks:
                continue
            group.sort()
            group.warnings.extend(self._identify_issues(group))
            result.append(group)

        result.sort(key=lambda g: g.key)
        self.log(f"Grouped into {len(result)} albums")
        return result

    def _group_key(self, track: LocalTrack) -> Tuple[str, str]:
        artist = normalize_key(track.album_artist)
        album = normalize_key(track.tags.album)
        if not artist and not album:
            return ("", f"dir:{Path(track.path).parent}")
        return (artist, album)

    def _identify_issues(self, group: AlbumGroup) -> List[str]:
        """Identify issues with album"""
        issues = []

        # Inconsistent spelling of the album name
        album_names = sorted({t.tags.album for t in group.tracks if t.tags.album})
        if len(album_names) > 1:
            issues.append(f"Multiple album names found: {album_names}")

        # Gaps in track numbering
        numbers = [t.tags.track_number for t in group.tracks if t.tags.track_number]
        discs = {t.tags.disc_number for t in group.tracks if t.tags.disc_number}
        if numbers and len(discs) <= 1:
            expected = set(range(1, max(numbers) + 1))
            missing = expected - set(numbers)
            if missing:
                issues.append(f"Missing track numbers: {sorted(missing)}")

        return issues
