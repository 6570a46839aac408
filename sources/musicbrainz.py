#!/usr/bin/env python3
"""
MusicBrainz API adapter.
Free, no authentication required, but needs user agent.

API Documentation:
https://musicbrainz.org/doc/MusicBrainz_API

Rate Limits: 1 request per second per IP (503 when exceeded)
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import requests

from .base import CatalogArtist, CatalogRelease, CatalogTrack, DataSource, ReleaseSummary


def parse_artist_credit(credits: Optional[List[Dict[str, Any]]]) -> Tuple[CatalogArtist, ...]:
    artists = []
    for credit in credits or []:
        name = (credit.get("name") or credit.get("artist", {}).get("name") or "").strip()
        if not name:
            continue
        join = (credit.get("joinphrase") or "").strip() or None
        artists.append(CatalogArtist(name=name, join=join))
    return tuple(artists)


class MusicBrainzSource(DataSource):
    """
    MusicBrainz API data source.

    Alternative catalog; cover art comes from the Cover Art Archive.
    """

    BASE_URL = "https://musicbrainz.org/ws/2"
    COVER_ART_URL = "https://coverartarchive.org"
    RELEASE_URL = "https://musicbrainz.org/release"

    def __init__(
        self,
        user_agent: str = "MusicReorganizer/1.0",
        rate_limit: float = 1.0,
        max_retries: int = 3,
        timeout: float = 30,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize MusicBrainz source.

        Args:
            user_agent: User agent string (required by API)
            rate_limit: Seconds between requests (1.0 required by API)
        """
        super().__init__(rate_limit, max_retries=max_retries, timeout=timeout, session=session)
        self.user_agent = user_agent
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "application/json"
        })

    @property
    def name(self) -> str:
        return "musicbrainz"

    def search(self, artist: Optional[str], album: str, year: Optional[int] = None) -> List[ReleaseSummary]:
        terms = [f'release:"{self._escape(album)}"']
        if artist:
            terms.append(f'artist:"{self._escape(artist)}"')
        if year:
            terms.append(f'date:{year}')

        params = {
            "query": " AND ".join(terms),
            "fmt": "json",
            "limit": 25
        }
        data = self._get_json(f"{self.BASE_URL}/release", params=params)

        results = []
        for release in data.get("releases", []):
            credits = parse_artist_credit(release.get("artist-credit"))
            results.append(ReleaseSummary(
                release_id=release.get("id"),
                title=release.get("title", ""),
                artist=credits[0].name if credits else None,
                year=self._extract_year(release.get("date")),
                source="musicbrainz"
            ))
        return results

    def fetch_release(self, release_id: str) -> CatalogRelease:
        params = {
            "fmt": "json",
            "inc": "recordings+artist-credits+genres"
        }
        release = self._get_json(f"{self.BASE_URL}/release/{release_id}", params=params)

        tracks = []
        for medium in release.get("media", []):
            disc_number = medium.get("position") or 1
            for index, track in enumerate(medium.get("tracks", []), 1):
                recording = track.get("recording") or {}
                length = track.get("length") or recording.get("length")
                tracks.append(CatalogTrack(
                    title=(track.get("title") or recording.get("title") or "").strip(),
                    position=track.get("position") or index,
                    disc=disc_number,
                    duration=length / 1000.0 if length else None,
                    artists=parse_artist_credit(track.get("artist-credit"))
                ))

        artists = parse_artist_credit(release.get("artist-credit"))
        # Drop track credits identical to the release credit
        tracks = [
            t if t.artists != artists else CatalogTrack(t.title, t.position, t.disc, t.duration)
            for t in tracks
        ]

        genres = sorted(
            release.get("genres") or [],
            key=lambda g: -(g.get("count") or 0)
        )
        has_front = (release.get("cover-art-archive") or {}).get("front", False)

        return CatalogRelease(
            release_id=release_id,
            source="musicbrainz",
            title=(release.get("title") or "").strip(),
            artists=artists,
            tracks=tuple(sorted(tracks, key=lambda t: (t.disc, t.position))),
            year=self._extract_year(release.get("date")),
            genres=tuple(g["name"] for g in genres if g.get("name")),
            cover_ref=f"{self.COVER_ART_URL}/release/{release_id}/front-1200" if has_front else None,
            uri=f"{self.RELEASE_URL}/{release_id}"
        )

    def _escape(self, value: str) -> str:
        """Escape Lucene special characters inside a quoted term"""
        return re.sub(r'(["\\])', r'\\\1', value)
