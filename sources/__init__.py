# Catalog Source Adapters
# Adapters for Discogs and MusicBrainz, plus the per-run release cache

from .base import DataSource, CatalogArtist, CatalogRelease, CatalogTrack, ReleaseSummary
from .cache import CatalogCache
from .discogs import DiscogsSource, normalize_release_id
from .musicbrainz import MusicBrainzSource

__all__ = [
    'DataSource',
    'CatalogArtist',
    'CatalogRelease',
    'CatalogTrack',
    'ReleaseSummary',
    'CatalogCache',
    'DiscogsSource',         # Primary - styles, images, release uri
    'MusicBrainzSource',     # Alternative - Cover Art Archive
    'normalize_release_id'
]
