#!/usr/bin/env python3
"""
Discogs API adapter.
Primary catalog source - styles, images and per-track artist credits.

API Documentation:
https://www.discogs.com/developers

Rate Limits:
- Authenticated: 60 requests per minute
- Unauthenticated: 25 requests per minute

A 429 response carries X-Discogs-Ratelimit / X-Discogs-Ratelimit-Used, which
are used to wait just long enough for a request slot to free up.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from .base import CatalogArtist, CatalogRelease, CatalogTrack, DataSource, ReleaseSummary


TOKEN_FILE = Path.home() / ".discogs_token"

# "Name (2)" is how Discogs disambiguates artists with the same name
ARTIST_SUFFIX = re.compile(r'\s+\(\d+\)$')
# Accepts "123" or the "[r123]" form Discogs shows on release pages
RELEASE_ID = re.compile(r'^\[?r?(\d+)\]?$', re.IGNORECASE)


def normalize_release_id(value: str) -> str:
    """Turn "123" or "[r123]" into "123"; raises ValueError otherwise"""
    match = RELEASE_ID.match(str(value).strip())
    if not match:
        raise ValueError(f"Not a Discogs release id: {value}")
    return match.group(1)


def load_token(token_file: Path = TOKEN_FILE) -> Optional[str]:
    """Read a personal access token from the token file, if present"""
    try:
        token = token_file.read_text(encoding='utf-8').strip()
    except OSError:
        return None
    return token or None


def clean_artist_name(name: str) -> str:
    return ARTIST_SUFFIX.sub('', (name or '').strip()).strip()


def parse_artists(items: Optional[List[Dict[str, Any]]]) -> Tuple[CatalogArtist, ...]:
    artists = []
    for item in items or []:
        name = clean_artist_name(item.get("anv") or item.get("name", ""))
        if not name:
            continue
        join = (item.get("join") or "").strip() or None
        artists.append(CatalogArtist(name=name, join=join))
    return tuple(artists)


def flatten_tracklist(tracklist: List[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
    """Yield real tracks, descending into index tracks; headings are dropped"""
    for entry in tracklist or []:
        if entry.get("type_", "track") == "track":
            yield entry
        yield from flatten_tracklist(entry.get("sub_tracks") or [])


def parse_position(position: Optional[str]) -> Optional[Tuple[int, int]]:
    """
    Parse a tracklist position into (disc, number).

    "7" -> (1, 7), "2-03" or "2.03" -> (2, 3). Vinyl sides ("A1") and
    anything else unparseable give None.
    """
    position = (position or '').strip()
    if not position:
        return None

    match = re.match(r'^(?:(\d+)[-.])?(\d+)$', position)
    if not match:
        return None

    disc = int(match.group(1)) if match.group(1) else 1
    return disc, int(match.group(2))


def parse_duration(value: Optional[str]) -> Optional[float]:
    """Parse "M:SS" or "H:MM:SS" into seconds"""
    if not value:
        return None
    seconds = 0
    try:
        for part in value.strip().split(':'):
            seconds = seconds * 60 + int(part)
    except ValueError:
        return None
    return float(seconds)


def parse_tracks(tracklist: List[Dict[str, Any]]) -> Tuple[CatalogTrack, ...]:
    """
    Build CatalogTracks from a raw tracklist.

    Positions are used only when every track has a numeric one; otherwise
    the whole release is numbered by running index on disc 1.
    """
    entries = list(flatten_tracklist(tracklist))
    positions = [parse_position(e.get("position")) for e in entries]
    use_positions = bool(entries) and all(positions)

    tracks = []
    for index, (entry, parsed) in enumerate(zip(entries, positions), 1):
        disc, number = parsed if use_positions else (1, index)
        tracks.append(CatalogTrack(
            title=(entry.get("title") or "").strip(),
            position=number,
            disc=disc,
            duration=parse_duration(entry.get("duration")),
            artists=parse_artists(entry.get("artists"))
        ))
    return tuple(tracks)


def pick_cover(images: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """Primary image, else the first secondary one"""
    images = images or []
    for kind in ("primary", "secondary"):
        for image in images:
            if image.get("type") == kind:
                uri = image.get("uri") or image.get("resource_url")
                if uri:
                    return uri
    return None


def parse_release(data: Dict[str, Any]) -> CatalogRelease:
    """Convert a /releases/{id} payload into a CatalogRelease"""
    styles = [s.strip() for s in data.get("styles") or [] if s and s.strip()]
    genres = [g.strip() for g in data.get("genres") or [] if g and g.strip()]
    year = data.get("year")

    return CatalogRelease(
        release_id=str(data.get("id")),
        source="discogs",
        title=(data.get("title") or "").strip(),
        artists=parse_artists(data.get("artists")),
        tracks=parse_tracks(data.get("tracklist") or []),
        year=int(year) if year else None,
        genres=tuple(styles or genres),
        cover_ref=pick_cover(data.get("images")),
        uri=data.get("uri")
    )


def parse_search_result(result: Dict[str, Any]) -> ReleaseSummary:
    # Search titles come as "Artist - Album"
    full_title = result.get("title", "")
    if " - " in full_title:
        artist, title = full_title.split(" - ", 1)
    else:
        artist, title = None, full_title

    year = result.get("year")
    try:
        year = int(year) if year else None
    except (TypeError, ValueError):
        year = None

    return ReleaseSummary(
        release_id=str(result.get("id")),
        title=title.strip(),
        artist=clean_artist_name(artist) if artist else None,
        year=year,
        source="discogs"
    )


class DiscogsSource(DataSource):
    """
    Discogs API data source.

    Requires a personal access token from discogs.com/settings/developers,
    taken from the argument, DISCOGS_TOKEN, or ~/.discogs_token.
    """

    BASE_URL = "https://api.discogs.com"

    def __init__(
        self,
        token: Optional[str] = None,
        user_agent: str = "MusicReorganizer/1.0",
        rate_limit: float = 1.0,
        max_retries: int = 3,
        timeout: float = 30,
        per_page: int = 25,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Discogs source.

        Args:
            token: Discogs personal access token
            user_agent: User agent string
            rate_limit: Seconds between requests (1.0 = 60 req/min)
        """
        super().__init__(rate_limit, max_retries=max_retries, timeout=timeout, session=session)

        self.token = token or os.environ.get("DISCOGS_TOKEN") or load_token()
        self.user_agent = user_agent
        self.per_page = per_page

        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "application/json"
        })
        if self.token:
            self.session.headers["Authorization"] = f"Discogs token={self.token}"

    @property
    def name(self) -> str:
        return "discogs"

    def search(self, artist: Optional[str], album: str, year: Optional[int] = None) -> List[ReleaseSummary]:
        params = {
            "type": "release",
            "release_title": album,
            "per_page": self.per_page
        }
        if artist:
            params["artist"] = artist
        if year:
            params["year"] = str(year)

        data = self._get_json(f"{self.BASE_URL}/database/search", params=params)
        return [parse_search_result(r) for r in data.get("results", []) if r.get("id") is not None]

    def fetch_release(self, release_id: str) -> CatalogRelease:
        data = self._get_json(f"{self.BASE_URL}/releases/{release_id}")
        release = parse_release(data)
        self.log(f"Will use {release.uri or release.release_id}")
        return release

    def _retry_after(self, response: requests.Response, attempt: int) -> float:
        """Wait for one request slot based on the Discogs rate limit headers"""
        try:
            limit = float(response.headers["X-Discogs-Ratelimit"])
            used = float(response.headers["X-Discogs-Ratelimit-Used"])
        except (KeyError, TypeError, ValueError):
            return super()._retry_after(response, attempt)

        if limit <= 0:
            return super()._retry_after(response, attempt)
        slots = max(used - limit, 0) + 1
        return slots * 60.0 / limit
