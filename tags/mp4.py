#!/usr/bin/env python3
"""
MP4 atom codec for M4A files.
"""

from typing import Any, Dict, List, Optional

from mutagen.mp4 import MP4, MP4FreeForm

from .base import ContainerKind, TagCodec, TagFields, get_first, merge_extras, parse_year


ATOM_FIELDS = {
    '\xa9nam': 'title',
    '\xa9ART': 'artist',
    '\xa9alb': 'album',
    'aART': 'album_artist',
    '\xa9gen': 'genre',
}

FREEFORM_PREFIX = '----:com.apple.iTunes:'


def _pair(value) -> tuple:
    """trkn/disk atoms hold [(number, total)]; 0 means unset"""
    if not value:
        return None, None
    first = value[0]
    if not isinstance(first, tuple):
        return None, None
    number = first[0] or None
    total = first[1] if len(first) > 1 and first[1] else None
    return number, total


def _text(value) -> Optional[str]:
    if isinstance(value, (list, tuple)) and value:
        value = value[0]
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    return get_first(value)


def decode_atoms(atoms: Dict[str, List[Any]]) -> TagFields:
    """Build TagFields from an MP4 atom mapping"""
    values = {name: get_first(atoms.get(atom)) for atom, name in ATOM_FIELDS.items()}
    track, total_tracks = _pair(atoms.get('trkn'))
    disc, total_discs = _pair(atoms.get('disk'))
    extras = [
        (key[len(FREEFORM_PREFIX):], _text(value))
        for key, value in atoms.items()
        if key.startswith(FREEFORM_PREFIX)
    ]

    return TagFields(
        year=parse_year(atoms.get('\xa9day')),
        track_number=track,
        total_tracks=total_tracks,
        disc_number=disc,
        total_discs=total_discs,
        extras=merge_extras(extras),
        **values
    )


def encode_atoms(tags: TagFields) -> Dict[str, List[Any]]:
    """Atoms to write for the non-empty fields of tags"""
    atoms: Dict[str, List[Any]] = {}
    for atom, name in ATOM_FIELDS.items():
        value = getattr(tags, name)
        if value is not None:
            atoms[atom] = [value]
    if tags.year is not None:
        atoms['\xa9day'] = [str(tags.year)]
    if tags.track_number is not None:
        atoms['trkn'] = [(tags.track_number, tags.total_tracks or 0)]
    if tags.disc_number is not None:
        atoms['disk'] = [(tags.disc_number, tags.total_discs or 0)]
    for key, value in tags.extras:
        atoms[FREEFORM_PREFIX + key] = [MP4FreeForm(value.encode('utf-8'))]
    return atoms


class MP4Codec(TagCodec):
    """Reads and writes iTunes-style MP4 atoms with mutagen"""

    @property
    def kind(self) -> ContainerKind:
        return ContainerKind.M4A

    def read_tags(self, path: str) -> TagFields:
        try:
            audio = MP4(str(path))
        except Exception as e:
            raise self._fail("read", path, e) from e
        return decode_atoms(dict(audio.tags or {}))

    def write_tags(self, path: str, tags: TagFields) -> None:
        try:
            audio = MP4(str(path))
            if audio.tags is None:
                audio.add_tags()
            for atom, value in encode_atoms(tags).items():
                audio.tags[atom] = value
            audio.save()
        except Exception as e:
            raise self._fail("write", path, e) from e

    def read_duration(self, path: str) -> Optional[float]:
        try:
            audio = MP4(str(path))
            return audio.info.length if audio.info else None
        except Exception:
            return None
