#!/usr/bin/env python3
"""
Base class for catalog source adapters.
All sources (Discogs, MusicBrainz) inherit from this.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging
import threading
import time

import requests

from errors import CatalogError, NetworkError, NotFoundError, RateLimitedError


@dataclass(frozen=True)
class CatalogArtist:
    """Artist credit; join is the phrase linking it to the next credit"""
    name: str
    join: Optional[str] = None


@dataclass(frozen=True)
class CatalogTrack:
    """Track from a catalog release"""
    title: str
    position: int
    disc: int = 1
    duration: Optional[float] = None
    artists: Tuple[CatalogArtist, ...] = ()


@dataclass(frozen=True)
class CatalogRelease:
    """Full release as returned by fetch_release"""
    release_id: str
    source: str
    title: str
    artists: Tuple[CatalogArtist, ...] = ()
    tracks: Tuple[CatalogTrack, ...] = ()
    year: Optional[int] = None
    genres: Tuple[str, ...] = ()
    cover_ref: Optional[str] = None
    uri: Optional[str] = None

    @property
    def disc_count(self) -> int:
        return len({t.disc for t in self.tracks}) or 1

    def tracks_on_disc(self, disc: int) -> int:
        return sum(1 for t in self.tracks if t.disc == disc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogRelease":
        def artists(items):
            return tuple(CatalogArtist(**a) for a in items or [])

        return cls(
            release_id=str(data["release_id"]),
            source=data["source"],
            title=data["title"],
            artists=artists(data.get("artists")),
            tracks=tuple(
                CatalogTrack(
                    title=t["title"],
                    position=t["position"],
                    disc=t.get("disc", 1),
                    duration=t.get("duration"),
                    artists=artists(t.get("artists"))
                )
                for t in data.get("tracks") or []
            ),
            year=data.get("year"),
            genres=tuple(data.get("genres") or []),
            cover_ref=data.get("cover_ref"),
            uri=data.get("uri")
        )


@dataclass(frozen=True)
class ReleaseSummary:
    """Search hit; fetch_release gives the full release"""
    release_id: str
    title: str
    artist: Optional[str] = None
    year: Optional[int] = None
    source: Optional[str] = None


class DataSource(ABC):
    """
    Abstract base class for catalog sources.

    Sources provide authoritative release metadata:
    - Discogs: Primary source, includes styles and images
    - MusicBrainz: Alternative source, cover art via Cover Art Archive

    Retry is bounded and lives here: 429 waits for the server's hint,
    connection errors and 5xx back off exponentially. Anything that is still
    failing after max_retries is raised as a CatalogError subclass.
    """

    def __init__(
        self,
        rate_limit: float = 1.0,
        max_retries: int = 3,
        timeout: float = 30,
        backoff: float = 1.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize data source with rate limiting.

        Args:
            rate_limit: Minimum seconds between requests
            max_retries: Retries after the first attempt
            timeout: Per-request timeout in seconds
            backoff: Base delay for exponential backoff
            session: Optional preconfigured requests session
        """
        self.rate_limit = rate_limit
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff = backoff
        self.session = session or requests.Session()
        self._last_request: float = 0
        self._rate_lock = threading.Lock()
        self._sleep = time.sleep
        self._logger = logging.getLogger(f"reorganizer.{self.name}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Source name identifier"""
        pass

    @abstractmethod
    def search(self, artist: Optional[str], album: str, year: Optional[int] = None) -> List[ReleaseSummary]:
        """
        Search for releases.

        Args:
            artist: Artist name, None to search by album only
            album: Album title
            year: Optional release year

        Returns:
            Matching release summaries, best first
        """
        pass

    @abstractmethod
    def fetch_release(self, release_id: str) -> CatalogRelease:
        """
        Get release details by source-specific ID.

        Raises:
            NotFoundError: Release does not exist
        """
        pass

    def fetch_cover_art(self, ref: str) -> bytes:
        """Download cover image bytes from a release's cover_ref"""
        return self._get(ref).content

    # ==================== HTTP ====================

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """GET with rate limiting and bounded retry"""
        attempt = 0
        while True:
            self._rate_limit_wait()
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.max_retries:
                    raise NetworkError(f"{self.name} request failed: {e}", path=url, cause=e) from e
                self._backoff(attempt, f"network error: {e}")
                attempt += 1
                continue
            except requests.RequestException as e:
                raise NetworkError(f"{self.name} request failed: {e}", path=url, cause=e) from e

            status = response.status_code
            if status == 404:
                raise NotFoundError(f"{self.name}: not found", path=url)

            if status == 429:
                if attempt >= self.max_retries:
                    raise RateLimitedError(f"{self.name}: rate limit exhausted after {attempt + 1} attempts", path=url)
                delay = self._retry_after(response, attempt)
                self.log_warning(f"Reached requests limit, waiting {delay:.1f}s")
                self._sleep(delay)
                attempt += 1
                continue

            if status >= 500:
                if attempt >= self.max_retries:
                    raise NetworkError(f"{self.name}: server error {status}", path=url)
                self._backoff(attempt, f"server error {status}")
                attempt += 1
                continue

            if status >= 400:
                raise CatalogError(f"{self.name}: unexpected status {status}", path=url)

            return response

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._get(url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"{self.name}: invalid JSON response", path=url, cause=e) from e

    def _retry_after(self, response: requests.Response, attempt: int) -> float:
        """Seconds to wait after a 429"""
        value = response.headers.get("Retry-After")
        if value:
            try:
                return max(float(value), 0.0)
            except ValueError:
                pass
        return self.backoff * (2 ** attempt)

    def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.backoff * (2 ** attempt)
        self.log_warning(f"Retrying in {delay:.1f}s ({reason})")
        self._sleep(delay)

    def _rate_limit_wait(self) -> None:
        """Wait if necessary to respect rate limits"""
        with self._rate_lock:
            if self._last_request > 0:
                elapsed = time.time() - self._last_request
                if elapsed < self.rate_limit:
                    self._sleep(self.rate_limit - elapsed)
            self._last_request = time.time()

    def _extract_year(self, date_str: Optional[str]) -> Optional[int]:
        """Extract year from date string"""
        if date_str and len(str(date_str)) >= 4:
            try:
                year = int(str(date_str)[:4])
                return year or None
            except ValueError:
                pass
        return None

    def log(self, message: str) -> None:
        self._logger.info(message)

    def log_warning(self, message: str) -> None:
        self._logger.warning(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rate_limit={self.rate_limit}, max_retries={self.max_retries})"
