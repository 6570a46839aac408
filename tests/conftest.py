"""Shared fixtures and in-memory fakes.

Audio files in these tests are small JSON documents; FakeCodec reads and
writes their "tags" object so no real audio or mutagen parsing is needed.
"""

import json
import shutil
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import CatalogError, NotFoundError, TagCodecError, TranscodeError  # noqa: E402
from orchestrator.config import ConfigManager  # noqa: E402
from sources.base import CatalogArtist, CatalogRelease, CatalogTrack, ReleaseSummary  # noqa: E402
from tags import TagCodecRegistry  # noqa: E402
from tags.base import ContainerKind, TagCodec, TagFields  # noqa: E402


PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 32
JPEG_BYTES = b'\xff\xd8\xff\xe0' + b'\x00' * 32


def write_track(path, payload: str = "", **tags) -> Path:
    """Create a fake audio file holding the given tags"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"audio": payload or path.name, "tags": tags}), encoding='utf-8')
    return path


def read_tags(path) -> Dict:
    return json.loads(Path(path).read_text(encoding='utf-8'))["tags"]


class FakeCodec(TagCodec):
    """Tag codec over JSON fake audio files"""

    def __init__(self, kind: ContainerKind, fail_on_write: bool = False):
        self._kind = kind
        self.fail_on_write = fail_on_write
        self.writes: List[str] = []

    @property
    def kind(self) -> ContainerKind:
        return self._kind

    def _load(self, path: str) -> Dict:
        try:
            return json.loads(Path(path).read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise self._fail("read", path, e) from e

    def read_tags(self, path: str) -> TagFields:
        return TagFields.from_dict(self._load(path).get("tags", {}))

    def write_tags(self, path: str, tags: TagFields) -> None:
        if self.fail_on_write:
            raise self._fail("write", path, OSError("disk full"))
        data = self._load(path)
        current = data.get("tags", {})
        for key, value in tags.to_dict().items():
            if key == "extras":
                extras = dict(current.get("extras") or {})
                extras.update(value)
                current["extras"] = extras
            elif value is not None:
                current[key] = value
        data["tags"] = current
        Path(path).write_text(json.dumps(data), encoding='utf-8')
        self.writes.append(path)

    def read_duration(self, path: str) -> Optional[float]:
        return 180.0


def fake_registry(**kwargs) -> TagCodecRegistry:
    return TagCodecRegistry([FakeCodec(kind, **kwargs) for kind in ContainerKind])


class FakeCatalog:
    """In-memory catalog with call counters"""

    def __init__(self, releases=(), name: str = "discogs"):
        self._name = name
        self.releases: Dict[str, CatalogRelease] = {r.release_id: r for r in releases}
        self.covers: Dict[str, bytes] = {}
        self.search_error: Optional[Exception] = None
        self.cover_error: Optional[Exception] = None
        self.search_calls: List[tuple] = []
        self.fetch_calls: List[str] = []
        self.cover_calls: List[str] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def search(self, artist, album, year=None):
        with self._lock:
            self.search_calls.append((artist, album, year))
        if self.search_error is not None:
            raise self.search_error
        return [
            ReleaseSummary(release_id=r.release_id, title=r.title, year=r.year, source=self._name)
            for r in self.releases.values()
            if r.title.casefold() == (album or "").casefold()
        ]

    def fetch_release(self, release_id):
        with self._lock:
            self.fetch_calls.append(release_id)
        try:
            return self.releases[release_id]
        except KeyError:
            raise NotFoundError(f"release {release_id} not found")

    def fetch_cover_art(self, ref):
        with self._lock:
            self.cover_calls.append(ref)
        if self.cover_error is not None:
            raise self.cover_error
        try:
            return self.covers[ref]
        except KeyError:
            raise CatalogError(f"no image at {ref}")


class FakeTranscoder:
    """Copies the source into staging under the target extension"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[tuple] = []

    def transcode(self, source, target_kind, options, staging_dir, name=None):
        self.calls.append((source, target_kind))
        if self.fail:
            raise TranscodeError("encoder crashed", path=source)
        output = Path(staging_dir) / f"{name or Path(source).stem}.{target_kind.extension}"
        shutil.copyfile(source, output)
        return str(output)

    def is_available(self):
        return True


def make_release(release_id="1", title="Demo", artist="The Band", year=1975, tracks=("One", "Two"),
                 cover_ref=None, discs=None, uri=None) -> CatalogRelease:
    """Release with one artist and numbered tracks (discs: disc number per track)"""
    catalog_tracks = []
    counters: Dict[int, int] = {}
    for i, track_title in enumerate(tracks):
        disc = discs[i] if discs else 1
        counters[disc] = counters.get(disc, 0) + 1
        catalog_tracks.append(CatalogTrack(title=track_title, position=counters[disc], disc=disc))
    return CatalogRelease(
        release_id=release_id,
        source="discogs",
        title=title,
        artists=(CatalogArtist(name=artist),),
        tracks=tuple(catalog_tracks),
        year=year,
        cover_ref=cover_ref,
        uri=uri
    )


def make_config(tmp_path, **overrides) -> ConfigManager:
    """Config rooted in tmp_path; overrides use dot keys with "__" for "."""
    data = {
        'library.root': str(tmp_path / "library"),
        'library.staging_root': str(tmp_path / "staging"),
        'run.catalog_retry_delay': 0,
        'run.workers': 2,
    }
    for key, value in overrides.items():
        data[key.replace('__', '.')] = value
    return ConfigManager.from_dict(data)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def codecs():
    return fake_registry()


@pytest.fixture
def catalog():
    return FakeCatalog([make_release()])
