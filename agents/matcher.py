#!/usr/bin/env python3
"""
Matcher Agent - Resolves album groups to catalog releases.

Responsibilities:
- Build a search query from the group's dominant artist/album/year
- Search the catalog, fetching each candidate release through the run cache
- Score candidates on album, artist, track count and per-track titles
- Align local tracks to release tracks (greedy, highest similarity first)
- Refuse to guess: near-ties without a year to break them are ambiguous
"""

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Tuple

from unidecode import unidecode

from errors import (
    AmbiguousMatchError, CatalogError, CatalogUnavailableError,
    NoCandidatesError, NotFoundError
)
from sources.base import CatalogRelease, CatalogTrack, ReleaseSummary

from .base import BaseAgent
from .models import AlbumGroup, LocalTrack, MatchCandidate, TrackAlignment, dominant
from .reconciler import join_artists


DEFAULT_WEIGHTS = {
    'album': 0.30,
    'artist': 0.20,
    'track_count': 0.10,
    'tracks': 0.40,
}


@dataclass(frozen=True)
class AlbumQuery:
    artist: Optional[str]
    album: Optional[str]
    year: Optional[int]

    def combinations(self) -> List[Tuple[Optional[str], str, Optional[int]]]:
        """Searches to try, most specific first"""
        if not self.album:
            return []
        combos = []
        for combo in (
            (self.artist, self.album, self.year),
            (self.artist, self.album, None),
            (None, self.album, self.year),
            (None, self.album, None),
        ):
            if combo not in combos:
                combos.append(combo)
        return combos


def normalize_string(s: Optional[str]) -> str:
    """Normalize string for comparison"""
    if not s:
        return ""

    s = unidecode(s).lower()

    # Remove common variations
    s = s.replace('_', ' ')
    s = s.replace('-', ' ')
    s = s.replace(':', ' ')
    s = s.replace("'", '')
    s = s.replace('"', '')
    s = s.replace('&', ' and ')

    # Remove edition markers
    s = re.sub(r'\s*[\(\[][^\)\]]*(?:edition|remaster)[^\)\]]*[\)\]]', '', s)

    # Remove disc indicators
    s = re.sub(r'\s*[\[\(]?(?:disc|cd|disk)\s*\d+[\]\)]?', '', s)

    # Remaining punctuation
    s = re.sub(r'[^\w\s]', ' ', s)

    return ' '.join(s.split())


def similarity(local: Optional[str], remote: Optional[str]) -> float:
    """Similarity score (0-1) of two normalized strings"""
    local_norm = normalize_string(local)
    remote_norm = normalize_string(remote)
    if not local_norm or not remote_norm:
        return 0.0
    if local_norm == remote_norm:
        return 1.0
    return SequenceMatcher(None, local_norm, remote_norm).ratio()


def artist_similarity(local: Optional[str], remote: Optional[str]) -> float:
    """Artist similarity; two "various artists" spellings are equal"""
    local_norm = normalize_string(local)
    remote_norm = normalize_string(remote)
    if 'various' in local_norm and 'various' in remote_norm:
        return 1.0
    return similarity(local, remote)


def track_count_score(local: int, remote: int) -> float:
    if local == 0 or remote == 0:
        return 0.0
    return min(local, remote) / max(local, remote)


def release_artist(release: CatalogRelease) -> Optional[str]:
    return join_artists(release.artists)


class MatcherAgent(BaseAgent):
    """
    Matcher agent for resolving an AlbumGroup against the catalog.

    The catalog is normally a CatalogCache so that albums resolving to the
    same release share one lookup. The matcher never retries; a failing
    catalog surfaces as CatalogUnavailableError for the orchestrator.
    """

    def __init__(self, config, catalog):
        super().__init__(config)
        self.catalog = catalog

        self.max_candidates = int(config.get('matching.max_candidates', 10))
        self.track_floor = float(config.get('matching.track_floor', 0.6))
        self.epsilon = float(config.get('matching.ambiguity_epsilon', 0.02))
        self.min_confidence = float(config.get('matching.min_confidence', 0.5))
        weights = dict(DEFAULT_WEIGHTS)
        weights.update(config.get('matching.weights', {}) or {})
        self.weights = weights

    @property
    def name(self) -> str:
        return "Matcher"

    def match(self, group: AlbumGroup, release_id: Optional[str] = None) -> MatchCandidate:
        """
        Resolve a group to a release.

        Args:
            group: Album group to resolve
            release_id: Forced release id; skips search and ambiguity checks

        Raises:
            NoCandidatesError, AmbiguousMatchError, CatalogUnavailableError
        """
        query = self.build_query(group)

        if release_id:
            try:
                release = self.catalog.fetch_release(release_id)
            except NotFoundError as e:
                raise NoCandidatesError(f"Release {release_id} not found", cause=e) from e
            except CatalogError as e:
                raise CatalogUnavailableError(f"Catalog unavailable: {e}", cause=e) from e
            return self.score(group, release, query)

        if not query.album:
            raise NoCandidatesError(f"No album name to search with for {group.label}")

        summaries = self._search(query)
        if not summaries:
            raise NoCandidatesError(f"Catalog returned no releases for {query.artist} - {query.album}")

        candidates = []
        for summary in summaries:
            try:
                release = self.catalog.fetch_release(summary.release_id)
            except NotFoundError:
                self.log_warning(f"Release {summary.release_id} disappeared, skipping")
                continue
            except CatalogError as e:
                raise CatalogUnavailableError(f"Catalog unavailable: {e}", cause=e) from e
            candidates.append(self.score(group, release, query))

        if not candidates:
            raise NoCandidatesError(f"No fetchable releases for {query.artist} - {query.album}")

        return self.select(candidates, query.year)

    # ==================== Query ====================

    def build_query(self, group: AlbumGroup) -> AlbumQuery:
        """Dominant artist/album/year; album falls back to the folder name"""
        artist = dominant(t.album_artist for t in group.tracks)
        album = dominant(t.tags.album for t in group.tracks) or group.folder_name or None
        return AlbumQuery(artist=artist, album=album, year=group.year)

    def _search(self, query: AlbumQuery) -> List[ReleaseSummary]:
        """First search combination that returns anything wins"""
        for artist, album, year in query.combinations():
            try:
                results = self.catalog.search(artist, album, year)
            except CatalogError as e:
                raise CatalogUnavailableError(f"Catalog search failed: {e}", cause=e) from e

            if results:
                seen = set()
                unique = []
                for summary in results:
                    if summary.release_id not in seen:
                        seen.add(summary.release_id)
                        unique.append(summary)
                self.log_debug(f"Search {artist!r}/{album!r}/{year!r}: {len(unique)} results")
                return unique[:self.max_candidates]

        return []

    # ==================== Scoring ====================

    def score(self, group: AlbumGroup, release: CatalogRelease, query: Optional[AlbumQuery] = None) -> MatchCandidate:
        """
        Calculate confidence score for a release.

        Weights (configurable):
        - Album title similarity: 30%
        - Artist similarity: 20%
        - Track count ratio: 10%
        - Aligned track titles: 40%
        """
        query = query or self.build_query(group)
        alignments, tracks_score = self.align(group.tracks, release.tracks)

        scores = {
            'album': similarity(query.album, release.title),
            'artist': artist_similarity(query.artist, release_artist(release)),
            'track_count': track_count_score(len(group.tracks), len(release.tracks)),
            'tracks': tracks_score,
        }
        confidence = sum(scores[k] * self.weights.get(k, 0.0) for k in scores)

        return MatchCandidate(
            group=group,
            release=release,
            confidence=confidence,
            alignments=alignments,
            scores=scores
        )

    def align(
        self,
        local_tracks: Sequence[LocalTrack],
        remote_tracks: Sequence[CatalogTrack]
    ) -> Tuple[List[TrackAlignment], float]:
        """
        Greedy highest-similarity-first assignment of local to remote tracks.

        Ties go to the lower local track number (untagged last), then local
        order, then remote order. Pairs below the floor are never assigned.

        Returns:
            (one alignment per local track in order, alignment score)
        """
        pairs = []
        for li, local in enumerate(local_tracks):
            for ri, remote in enumerate(remote_tracks):
                sim = similarity(local.display_title, remote.title)
                if sim >= self.track_floor:
                    pairs.append((sim, li, ri))

        def order(pair):
            sim, li, ri = pair
            number = local_tracks[li].tags.track_number
            return (-sim, number is None, number or 0, li, ri)

        assigned: Dict[int, Tuple[int, float]] = {}
        used_remote = set()
        for sim, li, ri in sorted(pairs, key=order):
            if li in assigned or ri in used_remote:
                continue
            assigned[li] = (ri, sim)
            used_remote.add(ri)

        alignments = []
        for li, local in enumerate(local_tracks):
            if li in assigned:
                ri, sim = assigned[li]
                alignments.append(TrackAlignment(local=local, remote_index=ri, similarity=sim))
            else:
                alignments.append(TrackAlignment(local=local))

        denominator = max(len(local_tracks), len(remote_tracks))
        total = sum(sim for _, sim in assigned.values())
        return alignments, (total / denominator if denominator else 0.0)

    # ==================== Selection ====================

    def select(self, candidates: List[MatchCandidate], local_year: Optional[int]) -> MatchCandidate:
        """Pick the best candidate or refuse"""
        ranked = sorted(candidates, key=lambda c: -c.confidence)
        best = ranked[0]

        if best.confidence < self.min_confidence:
            raise NoCandidatesError(
                f"Best candidate {best.release.release_id} scored {best.confidence:.2f} "
                f"(below {self.min_confidence:.2f})"
            )

        tied = [c for c in ranked if best.confidence - c.confidence <= self.epsilon + 1e-9]
        if len(tied) == 1:
            return best

        if local_year:
            with_year = [c for c in tied if c.release.year == local_year]
            if len(with_year) == 1:
                self.log(f"Tie broken by year {local_year}: {with_year[0].release.release_id}")
                return with_year[0]

        raise AmbiguousMatchError(
            f"{len(tied)} releases within {self.epsilon} of the best score",
            candidates=[
                {
                    "release_id": c.release.release_id,
                    "title": c.release.title,
                    "year": c.release.year,
                    "confidence": round(c.confidence, 4)
                }
                for c in tied
            ]
        )
