#!/usr/bin/env python3
"""
Vorbis comment codec for FLAC files.
"""

from typing import Dict, List, Optional

from mutagen.flac import FLAC

from .base import (
    ContainerKind, TagCodec, TagFields, get_first, merge_extras,
    parse_number_pair, parse_year
)


COMMENT_FIELDS = {
    'title': 'title',
    'artist': 'artist',
    'album': 'album',
    'albumartist': 'album_artist',
    'genre': 'genre',
}

# Keys consumed by standard fields; everything else is an extra
STANDARD_KEYS = set(COMMENT_FIELDS) | {
    'date', 'year', 'tracknumber', 'tracktotal', 'totaltracks',
    'discnumber', 'disctotal', 'totaldiscs',
}


def decode_comments(comments: Dict[str, List[str]]) -> TagFields:
    """Build TagFields from a Vorbis comment mapping (keys any case)"""
    comments = {k.lower(): v for k, v in comments.items()}
    values = {name: get_first(comments.get(key)) for key, name in COMMENT_FIELDS.items()}

    track, total_tracks = parse_number_pair(comments.get('tracknumber'))
    disc, total_discs = parse_number_pair(comments.get('discnumber'))
    total_tracks = total_tracks or parse_number_pair(
        comments.get('tracktotal') or comments.get('totaltracks'))[0]
    total_discs = total_discs or parse_number_pair(
        comments.get('disctotal') or comments.get('totaldiscs'))[0]

    extras = [
        (key.upper(), get_first(value))
        for key, value in comments.items()
        if key not in STANDARD_KEYS
    ]

    return TagFields(
        year=parse_year(comments.get('date') or comments.get('year')),
        track_number=track,
        total_tracks=total_tracks,
        disc_number=disc,
        total_discs=total_discs,
        extras=merge_extras(extras),
        **values
    )


def encode_comments(tags: TagFields) -> Dict[str, List[str]]:
    """Comments to write for the non-empty fields of tags"""
    comments = {}
    for key, name in COMMENT_FIELDS.items():
        value = getattr(tags, name)
        if value is not None:
            comments[key] = [value]
    if tags.year is not None:
        comments['date'] = [str(tags.year)]
    if tags.track_number is not None:
        comments['tracknumber'] = [str(tags.track_number)]
    if tags.total_tracks is not None:
        comments['tracktotal'] = [str(tags.total_tracks)]
    if tags.disc_number is not None:
        comments['discnumber'] = [str(tags.disc_number)]
    if tags.total_discs is not None:
        comments['disctotal'] = [str(tags.total_discs)]
    for key, value in tags.extras:
        comments[key.upper()] = [value]
    return comments


class FLACCodec(TagCodec):
    """Reads and writes Vorbis comments with mutagen"""

    @property
    def kind(self) -> ContainerKind:
        return ContainerKind.FLAC

    def read_tags(self, path: str) -> TagFields:
        try:
            audio = FLAC(str(path))
        except Exception as e:
            raise self._fail("read", path, e) from e

        comments: Dict[str, List[str]] = {}
        for key, value in (audio.tags or []):
            comments.setdefault(key.lower(), []).append(value)
        return decode_comments(comments)

    def write_tags(self, path: str, tags: TagFields) -> None:
        try:
            audio = FLAC(str(path))
            if audio.tags is None:
                audio.add_tags()
            encoded = encode_comments(tags)
            # Drop the alternate spellings so totals aren't stored twice
            if 'tracktotal' in encoded:
                audio.pop('totaltracks', None)
            if 'disctotal' in encoded:
                audio.pop('totaldiscs', None)
            for key, value in encoded.items():
                audio[key] = value
            audio.save()
        except Exception as e:
            raise self._fail("write", path, e) from e

    def read_duration(self, path: str) -> Optional[float]:
        try:
            audio = FLAC(str(path))
            return audio.info.length if audio.info else None
        except Exception:
            return None
