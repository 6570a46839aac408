#!/usr/bin/env python3
"""
ID3 codec for MP3 files.

Standard fields map to text frames; custom fields are stored as TXXX frames
keyed by description (e.g. TXXX:DISCOGS_RELEASE).
"""

from typing import Dict, Optional

from mutagen.id3 import ID3, ID3NoHeaderError, TXXX, Frames
from mutagen.mp3 import MP3

from .base import (
    ContainerKind, TagCodec, TagFields, format_number_pair, get_first,
    merge_extras, parse_number_pair, parse_year
)


FRAME_FIELDS = {
    'TIT2': 'title',
    'TPE1': 'artist',
    'TALB': 'album',
    'TPE2': 'album_artist',
    'TCON': 'genre',
}


def decode_frames(frames: Dict[str, str]) -> TagFields:
    """Build TagFields from a {frame key: text} mapping"""
    values = {name: get_first(frames.get(frame_id)) for frame_id, name in FRAME_FIELDS.items()}
    track, total_tracks = parse_number_pair(frames.get('TRCK'))
    disc, total_discs = parse_number_pair(frames.get('TPOS'))
    extras = [
        (key[len('TXXX:'):], get_first(text))
        for key, text in frames.items()
        if key.startswith('TXXX:')
    ]

    return TagFields(
        year=parse_year(frames.get('TDRC')),
        track_number=track,
        total_tracks=total_tracks,
        disc_number=disc,
        total_discs=total_discs,
        extras=merge_extras(extras),
        **values
    )


def encode_frames(tags: TagFields) -> Dict[str, str]:
    """Frames to write for the non-empty fields of tags"""
    frames = {}
    for frame_id, name in FRAME_FIELDS.items():
        value = getattr(tags, name)
        if value is not None:
            frames[frame_id] = value
    if tags.year is not None:
        frames['TDRC'] = str(tags.year)

    trck = format_number_pair(tags.track_number, tags.total_tracks)
    if trck:
        frames['TRCK'] = trck
    tpos = format_number_pair(tags.disc_number, tags.total_discs)
    if tpos:
        frames['TPOS'] = tpos

    for key, value in tags.extras:
        frames[f'TXXX:{key}'] = value
    return frames


class ID3Codec(TagCodec):
    """Reads and writes ID3v2 tags with mutagen"""

    @property
    def kind(self) -> ContainerKind:
        return ContainerKind.MP3

    def read_tags(self, path: str) -> TagFields:
        try:
            tags = ID3(str(path))
        except ID3NoHeaderError:
            return TagFields()
        except Exception as e:
            raise self._fail("read", path, e) from e

        frames = {}
        for key, frame in tags.items():
            text = getattr(frame, 'text', None)
            if text:
                frames[key] = str(text[0])
        return decode_frames(frames)

    def write_tags(self, path: str, tags: TagFields) -> None:
        try:
            try:
                id3 = ID3(str(path))
            except ID3NoHeaderError:
                id3 = ID3()

            for key, text in encode_frames(tags).items():
                id3.delall(key)
                if key.startswith('TXXX:'):
                    id3.add(TXXX(encoding=3, desc=key[len('TXXX:'):], text=[text]))
                else:
                    id3.add(Frames[key](encoding=3, text=[text]))

            id3.save(str(path))
        except Exception as e:
            raise self._fail("write", path, e) from e

    def read_duration(self, path: str) -> Optional[float]:
        try:
            audio = MP3(str(path))
            return audio.info.length if audio.info else None
        except Exception:
            return None
