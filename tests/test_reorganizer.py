"""Tests for the album transaction engine."""

import json
import os
import shutil
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from agents.models import AlbumGroup, LocalTrack, ResolvedTrack
from agents.paths import PathTemplate, assign_destination
from agents.reorganizer import (
    DestinationRegistry, DirectoryLocks, ReorganizerAgent, TransactionState, find_cover,
    image_extension, sync_files
)
from errors import (
    CatalogError, MoveFailedError, PathCollisionError, TagWriteFailedError,
    TranscodeFailedError, TransactionCancelledError
)
from orchestrator.state import JournalStore
from tags.base import ContainerKind

from conftest import (
    JPEG_BYTES, PNG_BYTES, FakeCatalog, FakeTranscoder, fake_registry, make_release,
    read_tags, write_track
)


def load_group(codecs, paths):
    tracks = []
    for path in paths:
        kind = ContainerKind.from_path(path)
        tags = codecs.for_kind(kind).read_tags(str(path))
        tracks.append(LocalTrack(path=str(path), kind=kind, tags=tags))
    return AlbumGroup(key=("the band", "demo"), tracks=tracks)


def resolve_all(group, root, transcode_to=None, **changes):
    template = PathTemplate()
    resolved = []
    for track in group.tracks:
        item = ResolvedTrack(local=track, tags=replace(track.tags, **changes), transcode_to=transcode_to)
        resolved.append(assign_destination(item, template, str(root)))
    return resolved


@pytest.fixture
def incoming(tmp_path):
    album = tmp_path / "incoming" / "demo"
    return [
        write_track(album / "01.mp3", title="One", artist="The Band", album="Demo", track_number=1),
        write_track(album / "02.mp3", title="Two", artist="The Band", album="Demo", track_number=2),
    ]


@pytest.fixture
def make_engine(tmp_path, config):
    def factory(codecs=None, transcoder=None, catalog=None, **kwargs):
        return ReorganizerAgent(
            config,
            JournalStore(str(tmp_path / "staging")),
            codecs or fake_registry(),
            transcoder=transcoder or FakeTranscoder(),
            catalog=catalog or FakeCatalog(),
            **kwargs
        )
    return factory


class TestCommit:

    def test_tracks_are_tagged_and_moved(self, tmp_path, incoming, make_engine):
        engine = make_engine()
        group = load_group(engine.codecs, incoming)
        resolved = resolve_all(group, tmp_path / "library", year=1975)

        result = engine.apply(group, resolved, source_roots=[str(tmp_path / "incoming")])

        destination = tmp_path / "library" / "The Band" / "1975 - Demo" / "01 - One.mp3"
        assert result.state == TransactionState.COMMITTED
        assert not result.noop
        assert str(destination) in result.destinations
        assert read_tags(destination)["year"] == 1975
        assert not any(p.exists() for p in incoming)
        # Emptied source dir is removed, the input root is kept
        assert not (tmp_path / "incoming" / "demo").exists()
        assert (tmp_path / "incoming").is_dir()
        assert not (tmp_path / "staging" / group.album_id).exists()

    def test_second_apply_is_noop(self, tmp_path, incoming, make_engine):
        engine = make_engine()
        group = load_group(engine.codecs, incoming)
        engine.apply(group, resolve_all(group, tmp_path / "library", year=1975))

        moved = sorted((tmp_path / "library").rglob("*.mp3"))
        before = {p: os.stat(p).st_mtime_ns for p in moved}

        again = load_group(engine.codecs, moved)
        result = engine.apply(again, resolve_all(again, tmp_path / "library", year=1975))

        assert result.noop
        assert {p: os.stat(p).st_mtime_ns for p in moved} == before
        assert not (tmp_path / "staging" / again.album_id).exists()

    def test_tracks_can_swap_places(self, tmp_path, make_engine):
        engine = make_engine()
        a = write_track(tmp_path / "lib" / "a.mp3", payload="first", title="A")
        b = write_track(tmp_path / "lib" / "b.mp3", payload="second", title="B")
        group = load_group(engine.codecs, [a, b])
        resolved = [
            replace(ResolvedTrack(local=group.tracks[0], tags=group.tracks[0].tags), destination=str(b)),
            replace(ResolvedTrack(local=group.tracks[1], tags=group.tracks[1].tags), destination=str(a)),
        ]

        engine.apply(group, resolved)

        assert json.loads(b.read_text())["audio"] == "first"
        assert json.loads(a.read_text())["audio"] == "second"


class TestRollback:

    def test_move_failure_restores_every_file(self, tmp_path, incoming, make_engine, monkeypatch):
        engine = make_engine()
        group = load_group(engine.codecs, incoming)
        resolved = resolve_all(group, tmp_path / "library", year=1975)
        originals = {p: p.read_text() for p in incoming}

        def failing_move(src, dst):
            if dst.endswith("02 - Two.mp3"):
                raise OSError("device not ready")
            shutil.move(src, dst)

        monkeypatch.setattr(engine, "_move_file", failing_move)

        with pytest.raises(MoveFailedError) as excinfo:
            engine.apply(group, resolved)

        assert isinstance(excinfo.value.cause, OSError)
        assert {p: p.read_text() for p in incoming} == originals
        assert not (tmp_path / "library").exists()
        assert not (tmp_path / "staging" / group.album_id).exists()
        assert engine.registry.owner(resolved[0].destination) is None

    def test_tag_write_failure_leaves_sources_untouched(self, tmp_path, incoming, make_engine):
        engine = make_engine(codecs=fake_registry(fail_on_write=True))
        group = load_group(engine.codecs, incoming)
        originals = {p: p.read_text() for p in incoming}

        with pytest.raises(TagWriteFailedError):
            engine.apply(group, resolve_all(group, tmp_path / "library", year=1975))

        assert {p: p.read_text() for p in incoming} == originals
        assert not (tmp_path / "library").exists()
        assert not (tmp_path / "staging" / group.album_id).exists()

    def test_cancel_before_commit_moves_nothing(self, tmp_path, incoming, make_engine):
        cancel = threading.Event()
        cancel.set()
        engine = make_engine(cancel_event=cancel)
        group = load_group(engine.codecs, incoming)

        with pytest.raises(TransactionCancelledError):
            engine.apply(group, resolve_all(group, tmp_path / "library", year=1975))

        assert all(p.exists() for p in incoming)
        assert not (tmp_path / "library").exists()

    def test_unexpected_error_releases_album(self, tmp_path, make_engine):
        class BrokenTranscoder(FakeTranscoder):
            def transcode(self, source, target_kind, options, staging_dir, name=None):
                raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

        engine = make_engine(transcoder=BrokenTranscoder())
        source = write_track(tmp_path / "in" / "01.flac", title="One", album="Demo", track_number=1)
        group = load_group(engine.codecs, [source])
        resolved = resolve_all(group, tmp_path / "library", transcode_to=ContainerKind.M4A)

        with pytest.raises(UnicodeDecodeError):
            engine.apply(group, resolved)

        assert source.exists()
        assert engine.registry.owner(resolved[0].destination) is None
        assert not (tmp_path / "staging" / group.album_id).exists()

    def test_journal_write_failure_discards_staging(self, tmp_path, incoming, make_engine, monkeypatch):
        engine = make_engine()
        group = load_group(engine.codecs, incoming)
        resolved = resolve_all(group, tmp_path / "library", year=1975)
        originals = {p: p.read_text() for p in incoming}

        def failing_save(journal):
            raise OSError("read-only file system")

        monkeypatch.setattr(engine.state, "save", failing_save)

        with pytest.raises(MoveFailedError) as excinfo:
            engine.apply(group, resolved)

        assert isinstance(excinfo.value.cause, OSError)
        assert {p: p.read_text() for p in incoming} == originals
        assert not (tmp_path / "staging" / group.album_id).exists()
        assert engine.registry.owner(resolved[0].destination) is None


class TestCollisions:

    def test_existing_destination_is_rejected_before_staging(self, tmp_path, incoming, make_engine):
        engine = make_engine()
        group = load_group(engine.codecs, incoming)
        resolved = resolve_all(group, tmp_path / "library", year=1975)
        occupant = write_track(resolved[0].destination, payload="someone else", title="One")

        with pytest.raises(PathCollisionError):
            engine.apply(group, resolved)

        assert json.loads(occupant.read_text())["audio"] == "someone else"
        assert all(p.exists() for p in incoming)
        assert not (tmp_path / "staging" / group.album_id).exists()

    def test_tracks_resolving_to_one_path_collide(self, tmp_path, make_engine):
        engine = make_engine()
        paths = [
            write_track(tmp_path / "in" / "a.mp3", title="Same", track_number=1),
            write_track(tmp_path / "in" / "b.mp3", title="SAME", track_number=1),
        ]
        group = load_group(engine.codecs, paths)

        with pytest.raises(PathCollisionError):
            engine.apply(group, resolve_all(group, tmp_path / "library"))

    def test_destination_planned_by_another_album(self, tmp_path, incoming, make_engine):
        registry = DestinationRegistry()
        engine = make_engine(registry=registry)
        group = load_group(engine.codecs, incoming)
        resolved = resolve_all(group, tmp_path / "library", year=1975)
        registry.claim("other-album", [resolved[1].destination.upper()])

        with pytest.raises(PathCollisionError):
            engine.apply(group, resolved)


class TestTranscode:

    def test_lossless_source_is_kept(self, tmp_path, make_engine):
        engine = make_engine()
        source = write_track(tmp_path / "in" / "01.flac", title="One", album="Demo", track_number=1)
        group = load_group(engine.codecs, [source])

        result = engine.apply(group, resolve_all(group, tmp_path / "library", transcode_to=ContainerKind.M4A))

        assert result.destinations[0].endswith("01 - One.m4a")
        assert Path(result.destinations[0]).exists()
        assert source.exists()

    def test_transcode_failure_aborts_album(self, tmp_path, make_engine):
        engine = make_engine(transcoder=FakeTranscoder(fail=True))
        source = write_track(tmp_path / "in" / "01.flac", title="One", album="Demo", track_number=1)
        group = load_group(engine.codecs, [source])

        with pytest.raises(TranscodeFailedError):
            engine.apply(group, resolve_all(group, tmp_path / "library", transcode_to=ContainerKind.M4A))

        assert not (tmp_path / "library").exists()

    def test_rerun_with_transcode_in_place_is_noop(self, tmp_path, make_engine):
        transcoder = FakeTranscoder()
        engine = make_engine(transcoder=transcoder)
        source = write_track(tmp_path / "in" / "01.flac", title="One", album="Demo", track_number=1)
        group = load_group(engine.codecs, [source])
        first = engine.apply(group, resolve_all(group, tmp_path / "library", transcode_to=ContainerKind.M4A))
        encoded = Path(first.destinations[0])
        before = os.stat(encoded).st_mtime_ns

        again = load_group(engine.codecs, [source])
        result = engine.apply(again, resolve_all(again, tmp_path / "library", transcode_to=ContainerKind.M4A))

        assert result.noop
        assert len(transcoder.calls) == 1
        assert os.stat(encoded).st_mtime_ns == before

    def test_existing_encode_with_other_tags_collides(self, tmp_path, make_engine):
        engine = make_engine()
        source = write_track(tmp_path / "in" / "01.flac", title="One", album="Demo", track_number=1)
        group = load_group(engine.codecs, [source])
        resolved = resolve_all(group, tmp_path / "library", transcode_to=ContainerKind.M4A)
        write_track(resolved[0].destination, payload="someone else", title="Other", album="Demo")

        with pytest.raises(PathCollisionError):
            engine.apply(group, resolved)


class TestCoverArt:

    def test_cover_is_placed_with_album(self, tmp_path, incoming, make_engine):
        catalog = FakeCatalog()
        catalog.covers["img:1"] = PNG_BYTES
        engine = make_engine(catalog=catalog)
        group = load_group(engine.codecs, incoming)

        result = engine.apply(group, resolve_all(group, tmp_path / "library", year=1975),
                              release=make_release(cover_ref="img:1"))

        cover = tmp_path / "library" / "The Band" / "1975 - Demo" / "cover.png"
        assert result.cover == str(cover)
        assert cover.read_bytes() == PNG_BYTES

    def test_fetch_failure_is_only_a_warning(self, tmp_path, incoming, make_engine):
        catalog = FakeCatalog()
        catalog.cover_error = CatalogError("image server down")
        engine = make_engine(catalog=catalog)
        group = load_group(engine.codecs, incoming)

        result = engine.apply(group, resolve_all(group, tmp_path / "library", year=1975),
                              release=make_release(cover_ref="img:1"))

        assert result.state == TransactionState.COMMITTED
        assert result.cover is None
        assert any(w.startswith("CoverArtUnavailable") for w in result.warnings)

    def test_existing_cover_is_not_fetched_again(self, tmp_path, incoming, make_engine):
        catalog = FakeCatalog()
        catalog.covers["img:1"] = JPEG_BYTES
        engine = make_engine(catalog=catalog)
        release = make_release(cover_ref="img:1")
        group = load_group(engine.codecs, incoming)
        engine.apply(group, resolve_all(group, tmp_path / "library", year=1975), release=release)

        moved = sorted((tmp_path / "library").rglob("*.mp3"))
        again = load_group(engine.codecs, moved)
        result = engine.apply(again, resolve_all(again, tmp_path / "library", year=1975), release=release)

        assert result.noop
        assert catalog.cover_calls == ["img:1"]

    def test_invalid_image_on_disk_does_not_count(self, tmp_path):
        (tmp_path / "cover.jpg").write_bytes(b"<html>not an image</html>")
        assert find_cover(str(tmp_path)) is None

        (tmp_path / "folder.png").write_bytes(PNG_BYTES)
        assert find_cover(str(tmp_path)) == str(tmp_path / "folder.png")

    def test_image_extension(self):
        assert image_extension(JPEG_BYTES) == "jpg"
        assert image_extension(PNG_BYTES) == "png"
        assert image_extension(b"GIF89a") is None


class TestConcurrency:

    def test_directory_lock_blocks_second_holder(self, tmp_path):
        locks = DirectoryLocks()
        entered = threading.Event()
        proceed = threading.Event()
        order = []

        def first():
            with locks.hold([str(tmp_path / "Artist")]):
                entered.set()
                proceed.wait(5)
                order.append("first")

        def second():
            with locks.hold([str(tmp_path / "ARTIST"), str(tmp_path / "Other")]):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        assert entered.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.2)

        assert t2.is_alive()
        proceed.set()
        t1.join(5)
        t2.join(5)
        assert order == ["first", "second"]

    def test_albums_sharing_a_directory_commit_one_at_a_time(self, tmp_path, make_engine, monkeypatch):
        engine = make_engine()
        template = PathTemplate("{artist}/{album} - {title}.{ext}")
        shared = tmp_path / "library" / "The Band"
        jobs = []
        for album in ("Demo", "Live"):
            paths = [
                write_track(tmp_path / "in" / album / f"{n:02d}.mp3", title=title, artist="The Band",
                            album=album, track_number=n)
                for n, title in enumerate(("One", "Two", "Three"), 1)
            ]
            group = load_group(engine.codecs, paths)
            group = AlbumGroup(key=("the band", album.lower()), tracks=group.tracks)
            resolved = [
                assign_destination(ResolvedTrack(local=t, tags=t.tags), template, str(tmp_path / "library"))
                for t in group.tracks
            ]
            jobs.append((group, resolved))

        moves = []

        def slow_move(src, dst):
            if Path(dst).parent == shared:
                moves.append(Path(dst).name.split(" - ")[0])
                time.sleep(0.01)
            shutil.move(src, dst)

        monkeypatch.setattr(engine, "_move_file", slow_move)
        results, errors = [], []

        def run(group, resolved):
            try:
                results.append(engine.apply(group, resolved))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=job) for job in jobs]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert errors == []
        assert all(r.state == TransactionState.COMMITTED for r in results)
        assert len(list(shared.glob("*.mp3"))) == 6
        # Each album's moves into the shared directory are contiguous
        assert moves in (["Demo"] * 3 + ["Live"] * 3, ["Live"] * 3 + ["Demo"] * 3)


def test_sync_files_reports_missing_paths(tmp_path):
    present = write_track(tmp_path / "a.mp3", title="A")

    failures = sync_files([str(present), str(tmp_path / "gone.mp3")])

    assert [path for path, _ in failures] == [str(tmp_path / "gone.mp3")]
