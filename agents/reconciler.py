#!/usr/bin/env python3
"""
Reconciler Agent - Merges a matched release into per-track tag sets.

Aligned tracks take their fields from the release when the release has a
non-empty value and keep the local value otherwise. Unmatched tracks keep
their tags unchanged. No I/O; the same input always yields the same output.
"""

from dataclasses import replace
from typing import List, Optional, Sequence

from sources.base import CatalogArtist, CatalogRelease, CatalogTrack
from tags.base import TagFields

from .base import BaseAgent
from .models import AlbumGroup, LocalTrack, MatchCandidate, ResolvedTrack


VARIOUS_ARTISTS = "Various Artists"


def join_artists(artists: Sequence[CatalogArtist], separator: Optional[str] = None) -> Optional[str]:
    """
    Join artist credits into one string.

    With no separator the catalog's own join phrase is used ("&" when it
    has none); a comma join reads "A, B" rather than "A , B".
    """
    names = [a for a in artists if a.name]
    if not names:
        return None

    parts = []
    for i, artist in enumerate(names):
        parts.append(artist.name)
        if i == len(names) - 1:
            break
        if separator is not None:
            parts.append(separator)
            continue
        phrase = (artist.join or "&").strip()
        parts.append(f"{phrase} " if phrase == "," else f" {phrase} ")
    return "".join(parts).strip()


class ReconcilerAgent(BaseAgent):
    """Builds the final tag set for every track of a matched album"""

    def __init__(self, config):
        super().__init__(config)
        self.artist_join = config.get('reconcile.artist_join')
        self.genre_join = config.get('reconcile.genre_join', '; ')

    @property
    def name(self) -> str:
        return "Reconciler"

    def reconcile(self, candidate: MatchCandidate) -> List[ResolvedTrack]:
        """One ResolvedTrack per local track, in group order (no destination yet)"""
        resolved = []
        for alignment in candidate.alignments:
            remote = candidate.remote_track(alignment)
            if remote is None:
                resolved.append(ResolvedTrack(local=alignment.local, tags=alignment.local.tags, matched=False))
                continue
            tags = self.merge(alignment.local, candidate.release, remote)
            resolved.append(ResolvedTrack(local=alignment.local, tags=tags, matched=True))
        return resolved

    def keep_local(self, group: AlbumGroup) -> List[ResolvedTrack]:
        """Tracks of an unmatched album, moved with their own tags"""
        return [ResolvedTrack(local=t, tags=t.tags, matched=False) for t in group.tracks]

    def merge(self, local: LocalTrack, release: CatalogRelease, remote: CatalogTrack) -> TagFields:
        current = local.tags
        album_artist = join_artists(release.artists, self.artist_join)

        if remote.artists:
            artist = join_artists(remote.artists, self.artist_join)
            album_artist = VARIOUS_ARTISTS
        else:
            artist = album_artist

        multi_disc = release.disc_count > 1
        genre = self.genre_join.join(release.genres) if release.genres else None

        tags = replace(
            current,
            title=remote.title or current.title,
            album=release.title or current.album,
            artist=artist or current.artist,
            album_artist=album_artist or current.album_artist,
            year=release.year or current.year,
            track_number=remote.position or current.track_number,
            total_tracks=release.tracks_on_disc(remote.disc) or current.total_tracks,
            disc_number=remote.disc if multi_disc else current.disc_number,
            total_discs=release.disc_count if multi_disc else current.total_discs,
            genre=genre or current.genre
        )

        key = f"{release.source.upper()}_RELEASE"
        return tags.with_extra(key, release.uri or release.release_id)
