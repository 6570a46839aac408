#!/usr/bin/env python3
"""
Reorganizer Agent - Applies one album as a recoverable transaction.

Responsibilities:
- Plan destinations and detect collisions before any I/O
- Stage transcodes / tagged copies outside the library tree
- Fetch cover art once per album (never fatal)
- Commit every move under directory locks, journaling each one first
- Roll back completely if any move fails
- Leave already-organized albums untouched

States: PLANNED -> STAGED -> COMMITTED | ROLLED_BACK
"""

import os
import shutil
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import (
    CatalogError, MoveFailedError, PathCollisionError,
    TagCodecError, TagWriteFailedError, TranscodeError, TranscodeFailedError,
    TransactionCancelledError
)
from sources.base import CatalogRelease
from transcoder.base import TranscodeOptions

from .base import BaseAgent
from .models import AlbumGroup, ResolvedTrack


COVER_STEMS = ('cover', 'folder')
COVER_EXTENSIONS = ('.jpg', '.jpeg', '.png')

IMAGE_SIGNATURES = (
    (b'\xff\xd8\xff', 'jpg'),
    (b'\x89PNG\r\n\x1a\n', 'png'),
)


def image_extension(data: bytes) -> Optional[str]:
    """File extension for JPEG/PNG data, None if it is neither"""
    for signature, ext in IMAGE_SIGNATURES:
        if data.startswith(signature):
            return ext
    return None


def find_cover(directory: str) -> Optional[str]:
    """Existing cover.* / folder.* image in directory whose content checks out"""
    path = Path(directory)
    if not path.is_dir():
        return None
    for item in sorted(path.iterdir()):
        if item.stem.lower() in COVER_STEMS and item.suffix.lower() in COVER_EXTENSIONS and item.is_file():
            try:
                with open(item, 'rb') as f:
                    header = f.read(8)
            except OSError:
                continue
            if image_extension(header):
                return str(item)
    return None


def path_key(path: str) -> str:
    """Comparison key for destinations; case-insensitive on every platform"""
    return os.path.normcase(os.path.abspath(path)).casefold()


def sync_files(files: Iterable[str]) -> List[Tuple[str, OSError]]:
    """
    Flush files and their parent directories to disk.

    Returns:
        (path, error) for every file or directory that could not be synced
    """
    failures = []
    directories = set()
    for path in files:
        try:
            with open(path, 'rb') as f:
                os.fsync(f.fileno())
        except OSError as e:
            failures.append((str(path), e))
        directories.add(str(Path(path).parent))

    # Directory handles cannot be fsynced on Windows
    if not hasattr(os, 'O_DIRECTORY'):
        return failures
    for directory in sorted(directories):
        try:
            fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        except OSError as e:
            failures.append((directory, e))
            continue
        try:
            os.fsync(fd)
        except OSError as e:
            failures.append((directory, e))
        finally:
            os.close(fd)
    return failures


class TransactionState(Enum):
    PLANNED = "PLANNED"
    STAGED = "STAGED"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


@dataclass
class TrackOperation:
    """Work for one track; an operation with nothing to do is a no-op"""
    index: int
    resolved: ResolvedTrack
    needs_transcode: bool = False
    needs_tag_write: bool = False
    needs_move: bool = False
    staged_path: Optional[str] = None
    parked_path: Optional[str] = None

    @property
    def noop(self) -> bool:
        return not (self.needs_transcode or self.needs_tag_write or self.needs_move)

    @property
    def source(self) -> str:
        return self.resolved.local.path

    @property
    def destination(self) -> str:
        return self.resolved.destination

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "destination": self.destination,
            "transcode": self.needs_transcode,
            "tag_write": self.needs_tag_write,
            "move": self.needs_move
        }


@dataclass
class CoverOperation:
    directory: str
    ref: str
    staged_path: Optional[str] = None
    destination: Optional[str] = None


@dataclass
class TransactionPlan:
    album_id: str
    label: str
    staging_dir: str
    operations: List[TrackOperation] = field(default_factory=list)
    cover: Optional[CoverOperation] = None
    state: TransactionState = TransactionState.PLANNED
    warnings: List[str] = field(default_factory=list)

    @property
    def active_operations(self) -> List[TrackOperation]:
        return [op for op in self.operations if not op.noop]

    @property
    def is_noop(self) -> bool:
        return not self.active_operations and (self.cover is None or self.cover.staged_path is None)

    @property
    def directories(self) -> List[str]:
        dirs = {str(Path(op.destination).parent) for op in self.operations}
        if self.cover:
            dirs.add(self.cover.directory)
        return sorted(dirs)


@dataclass
class TransactionResult:
    album_id: str
    state: TransactionState
    noop: bool = False
    destinations: List[str] = field(default_factory=list)
    cover: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "album_id": self.album_id,
            "state": self.state.value,
            "noop": self.noop,
            "destinations": self.destinations,
            "cover": self.cover,
            "warnings": self.warnings
        }


class DestinationRegistry:
    """Run-wide record of which album planned which destination"""

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self._lock = threading.Lock()

    def claim(self, album_id: str, destinations: Iterable[str]) -> None:
        destinations = list(destinations)
        with self._lock:
            for destination in destinations:
                owner = self._owners.get(path_key(destination))
                if owner is not None and owner != album_id:
                    raise PathCollisionError(
                        f"Destination already planned by album {owner}: {destination}",
                        path=destination
                    )
            for destination in destinations:
                self._owners[path_key(destination)] = album_id

    def release(self, album_id: str) -> None:
        with self._lock:
            for key in [k for k, owner in self._owners.items() if owner == album_id]:
                del self._owners[key]

    def owner(self, destination: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(path_key(destination))


class DirectoryLocks:
    """One exclusive lock per destination directory, acquired in sorted order"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> threading.Lock:
        with self._lock:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, directories: Iterable[str]):
        keys = sorted({path_key(d) for d in directories})
        acquired = []
        try:
            for key in keys:
                lock = self._get(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class ReorganizerAgent(BaseAgent):
    """
    Transaction engine for one album at a time (safe to share across workers).

    Originals are never modified in place: tags are written to staged copies,
    and an original only leaves its directory during commit, when it is
    parked in the staging area so rollback can put it back.
    """

    def __init__(
        self,
        config,
        state,
        codecs,
        transcoder=None,
        catalog=None,
        registry: Optional[DestinationRegistry] = None,
        locks: Optional[DirectoryLocks] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        super().__init__(config, state)
        self.codecs = codecs
        self.transcoder = transcoder
        self.catalog = catalog
        self.registry = registry or DestinationRegistry()
        self.locks = locks or DirectoryLocks()
        self.cancel_event = cancel_event

        self.transcode_options = TranscodeOptions.from_config(config.get('transcode.options', {}))
        self.remove_transcoded_source = config.get('transcode.remove_source', False)
        self.fetch_covers = config.get('covers.enabled', True)
        self.clean_source_dirs = config.get('library.clean_source_dirs', True)
        self.fsync = config.get('library.fsync', False)

    @property
    def name(self) -> str:
        return "Reorganizer"

    def apply(
        self,
        group: AlbumGroup,
        resolved: List[ResolvedTrack],
        release: Optional[CatalogRelease] = None,
        source_roots: Optional[Iterable[str]] = None
    ) -> TransactionResult:
        """
        Apply an album.

        Args:
            group: The album being applied
            resolved: One ResolvedTrack (with destination) per track
            release: Matched release, used for cover art
            source_roots: Input paths; empty source dirs are removed up to these

        Raises:
            TransactionError subclass; the album is left as it was. Any other
            exception is re-raised after the album's claims are released.
        """
        plan = self.plan(group, resolved)
        try:
            with self.locks.hold(plan.directories):
                self.stage(plan, release)
                if plan.is_noop:
                    self.state.discard(plan.album_id)
                    self.log(f"Nothing to do for {plan.label}")
                    return self._result(plan, noop=True)
                self._check_cancel(plan)
                self.commit(plan)
        except Exception:
            self.registry.release(group.album_id)
            raise

        self._finish(plan, source_roots)
        self.log(f"Committed {plan.label} ({len(plan.active_operations)} files)")
        return self._result(plan)

    # ==================== Plan ====================

    def plan(self, group: AlbumGroup, resolved: List[ResolvedTrack]) -> TransactionPlan:
        """Compute operations and detect collisions; performs no writes"""
        sources = {path_key(r.local.path) for r in resolved}
        seen: Dict[str, str] = {}
        operations = []

        for index, item in enumerate(resolved):
            if not item.destination:
                raise ValueError(f"No destination resolved for {item.local.path}")

            key = path_key(item.destination)
            if key in seen:
                raise PathCollisionError(
                    f"{seen[key]} and {item.local.path} both resolve to {item.destination}",
                    path=item.destination
                )
            seen[key] = item.local.path

            needs_transcode = item.transcode_to is not None and item.transcode_to != item.local.kind

            if key not in sources and os.path.lexists(item.destination):
                # A kept lossless source whose encoded copy is already in place
                if needs_transcode and self._already_transcoded(item):
                    operations.append(TrackOperation(index=index, resolved=item))
                    continue
                raise PathCollisionError(f"Destination already exists: {item.destination}", path=item.destination)

            in_place = os.path.abspath(item.destination) == os.path.abspath(item.local.path)
            operations.append(TrackOperation(
                index=index,
                resolved=item,
                needs_transcode=needs_transcode,
                needs_tag_write=needs_transcode or not item.tags.matches(item.local.tags),
                needs_move=needs_transcode or not in_place
            ))

        self.registry.claim(group.album_id, [op.destination for op in operations])

        return TransactionPlan(
            album_id=group.album_id,
            label=group.label,
            staging_dir=str(self.state.album_dir(group.album_id)),
            operations=operations
        )

    def _already_transcoded(self, item: ResolvedTrack) -> bool:
        try:
            existing = self.codecs.for_kind(item.target_kind).read_tags(item.destination)
        except TagCodecError as e:
            self.log_debug(f"Could not read {item.destination}: {e}")
            return False
        return item.tags.matches(existing)

    # ==================== Stage ====================

    def stage(self, plan: TransactionPlan, release: Optional[CatalogRelease] = None) -> None:
        """Produce every staged artifact; originals are only read"""
        plan.cover = self._plan_cover(plan, release)
        active = plan.active_operations
        if not active and plan.cover is None:
            return

        staging = Path(plan.staging_dir)
        try:
            staging.mkdir(parents=True, exist_ok=True)
            journal = self.state.new_journal(plan.album_id, plan.label)
            journal["operations"] = [
                {"index": op.index, "source": op.source, "destination": op.destination}
                for op in active
            ]
            self.state.save(journal)

            for op in active:
                self._check_cancel(plan)
                self._stage_track(op, staging)
            if plan.cover is not None:
                self._stage_cover(plan, staging)

            plan.state = TransactionState.STAGED
            journal["state"] = plan.state.value
            self.state.save(journal)
        except OSError as e:
            self._discard(plan)
            raise MoveFailedError(f"Could not stage {plan.label}: {e}", path=str(staging), cause=e) from e
        except Exception:
            self._discard(plan)
            raise

    def _stage_track(self, op: TrackOperation, staging: Path) -> None:
        resolved = op.resolved
        target_kind = resolved.target_kind

        if op.needs_transcode:
            if self.transcoder is None:
                raise TranscodeFailedError("No transcoder configured", path=op.source)
            try:
                staged = self.transcoder.transcode(
                    op.source, target_kind, self.transcode_options, str(staging), name=str(op.index)
                )
            except TranscodeError as e:
                raise TranscodeFailedError(f"Transcode failed: {e}", path=op.source, cause=e) from e
        elif op.needs_tag_write:
            staged = str(staging / f"{op.index}.{target_kind.extension}")
            try:
                shutil.copy2(op.source, staged)
            except OSError as e:
                raise MoveFailedError(f"Could not stage copy: {e}", path=op.source, cause=e) from e
        else:
            # Pure relocation, the original itself is moved at commit
            return

        try:
            self.codecs.for_kind(target_kind).write_tags(staged, resolved.tags)
        except TagCodecError as e:
            raise TagWriteFailedError(f"Tag write failed: {e}", path=op.source, cause=e) from e
        op.staged_path = staged

    def _plan_cover(self, plan: TransactionPlan, release: Optional[CatalogRelease],
                    directory: Optional[str] = None) -> Optional[CoverOperation]:
        if not self.fetch_covers or release is None or not release.cover_ref or self.catalog is None:
            return None

        if directory is None:
            if not plan.operations:
                return None
            parents = Counter(str(Path(op.destination).parent) for op in plan.operations)
            directory = parents.most_common(1)[0][0]

        if find_cover(directory):
            return None
        return CoverOperation(directory=directory, ref=release.cover_ref)

    def _stage_cover(self, plan: TransactionPlan, staging: Path) -> None:
        """Fetch and stage the cover; every failure is a warning"""
        cover = plan.cover
        try:
            data = self.catalog.fetch_cover_art(cover.ref)
        except CatalogError as e:
            self._warn(plan, f"CoverArtUnavailable: {e}")
            plan.cover = None
            return

        ext = image_extension(data or b'')
        if ext is None:
            self._warn(plan, f"CoverArtUnavailable: {cover.ref} is not a JPEG or PNG image")
            plan.cover = None
            return

        destination = Path(cover.directory) / f"cover.{ext}"
        if destination.exists():
            self._warn(plan, f"CoverArtUnavailable: {destination} exists but is not a valid image")
            plan.cover = None
            return

        staged = staging / f"cover.{ext}"
        try:
            staged.write_bytes(data)
        except OSError as e:
            self._warn(plan, f"CoverArtUnavailable: {e}")
            plan.cover = None
            return

        cover.staged_path = str(staged)
        cover.destination = str(destination)

    # ==================== Commit ====================

    def commit(self, plan: TransactionPlan) -> None:
        """
        Move everything into place.

        Relocated originals are parked in staging first so that swaps inside
        an album work, then staged files move to their destinations. Any
        failure reverses every recorded move and raises MoveFailedError.
        """
        journal = self.state.load(plan.album_id) or self.state.new_journal(plan.album_id, plan.label)
        journal["state"] = TransactionState.STAGED.value
        parked = Path(plan.staging_dir) / "originals"
        current = None

        try:
            for op in plan.active_operations:
                if self._parks_original(op):
                    current = op.source
                    target = parked / f"{op.index}{Path(op.source).suffix}"
                    self._ensure_dir(parked, journal, record=False)
                    self._move(op.source, target, journal)
                    op.parked_path = str(target)

            for op in plan.active_operations:
                current = op.destination
                if os.path.lexists(op.destination):
                    raise PathCollisionError(f"Destination appeared during commit: {op.destination}",
                                             path=op.destination)
                self._ensure_dir(Path(op.destination).parent, journal)
                self._move(op.staged_path or op.parked_path, op.destination, journal)

            if plan.cover is not None and plan.cover.staged_path:
                current = plan.cover.destination
                self._ensure_dir(Path(plan.cover.destination).parent, journal)
                self._move(plan.cover.staged_path, plan.cover.destination, journal)

        except Exception as e:
            self._rollback(plan, journal)
            raise MoveFailedError(f"Commit failed, album rolled back: {e}", path=current, cause=e) from e

        plan.state = TransactionState.COMMITTED
        journal["state"] = plan.state.value
        self.state.save(journal)

    def _parks_original(self, op: TrackOperation) -> bool:
        if op.needs_transcode:
            return self.remove_transcoded_source
        return True

    def _move(self, src, dst, journal: Dict[str, Any]) -> None:
        """Journal first, then move"""
        journal["moves"].append({"from": str(src), "to": str(dst)})
        self.state.save(journal)
        self._move_file(str(src), str(dst))

    def _move_file(self, src: str, dst: str) -> None:
        shutil.move(src, dst)

    def _ensure_dir(self, directory, journal: Dict[str, Any], record: bool = True) -> None:
        """Create directory if absent, recording every level this commit created"""
        directory = Path(directory)
        missing = []
        level = directory
        while not level.exists():
            missing.append(level)
            if level.parent == level:
                break
            level = level.parent

        if not missing:
            return
        if record:
            journal["created_dirs"].extend(str(d) for d in reversed(missing))
            self.state.save(journal)
        directory.mkdir(parents=True, exist_ok=True)

    def _rollback(self, plan: TransactionPlan, journal: Dict[str, Any]) -> None:
        try:
            self.state.undo(journal)
        except OSError as e:
            # Journal stays STAGED so the recovery pass can finish the job
            self.log_error(f"Rollback of {plan.label} incomplete, run 'recover': {e}")
            return

        plan.state = TransactionState.ROLLED_BACK
        journal["state"] = plan.state.value
        self.state.save(journal)
        self.state.discard(plan.album_id)
        self.log_warning(f"Rolled back {plan.label}")

    def _discard(self, plan: TransactionPlan) -> None:
        plan.state = TransactionState.ROLLED_BACK
        self.state.discard(plan.album_id)

    def _check_cancel(self, plan: TransactionPlan) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            self._discard(plan)
            raise TransactionCancelledError(f"Cancelled before commit: {plan.label}")

    # ==================== Cleanup ====================

    def _finish(self, plan: TransactionPlan, source_roots: Optional[Iterable[str]]) -> None:
        """Post-commit cleanup; failures here never undo the commit"""
        self.state.discard(plan.album_id)

        if self.clean_source_dirs:
            moved_from = {str(Path(op.source).parent) for op in plan.active_operations if op.parked_path}
            self._remove_empty_dirs(moved_from, source_roots)

        if self.fsync:
            files = [op.destination for op in plan.active_operations]
            if plan.cover is not None and plan.cover.destination:
                files.append(plan.cover.destination)
            for path, error in sync_files(files):
                self.log_warning(f"fsync failed for {path}: {error}")

    def _remove_empty_dirs(self, directories: Iterable[str], source_roots: Optional[Iterable[str]]) -> None:
        stops = {path_key(r) for r in (source_roots or [])}
        for directory in sorted(directories, key=lambda d: len(Path(d).parts), reverse=True):
            current = Path(directory)
            while True:
                try:
                    if any(current.iterdir()):
                        break
                    current.rmdir()
                except OSError:
                    break
                self.log_debug(f"Removed empty directory {current}")
                # Without known roots only the immediate source directory goes
                if not stops or path_key(str(current.parent)) in stops or current.parent == current:
                    break
                current = current.parent

    # ==================== Covers only ====================

    def add_cover(self, album_id: str, label: str, directory: str, release: CatalogRelease) -> Optional[str]:
        """
        Place a cover in an existing album directory that lacks one.

        Returns:
            Path of the new cover, None if one existed or none could be fetched
        """
        plan = TransactionPlan(
            album_id=album_id,
            label=label,
            staging_dir=str(self.state.album_dir(album_id))
        )
        with self.locks.hold([directory]):
            plan.cover = self._plan_cover(plan, release, directory=directory)
            if plan.cover is None:
                return None

            staging = Path(plan.staging_dir)
            try:
                staging.mkdir(parents=True, exist_ok=True)
                self.state.save(self.state.new_journal(album_id, label))
                self._stage_cover(plan, staging)
            except OSError as e:
                self._discard(plan)
                raise MoveFailedError(f"Could not stage cover for {label}: {e}", path=str(staging), cause=e) from e
            if plan.cover is None:
                self.state.discard(album_id)
                for warning in plan.warnings:
                    self.log_warning(warning)
                return None
            self.commit(plan)

        self._finish(plan, None)
        return plan.cover.destination

    # ==================== Helpers ====================

    def _warn(self, plan: TransactionPlan, message: str) -> None:
        plan.warnings.append(message)
        self.log_warning(f"{plan.label}: {message}")

    def _result(self, plan: TransactionPlan, noop: bool = False) -> TransactionResult:
        cover = plan.cover.destination if plan.cover is not None and plan.cover.staged_path else None
        return TransactionResult(
            album_id=plan.album_id,
            state=TransactionState.COMMITTED if not noop else plan.state,
            noop=noop,
            destinations=[op.destination for op in plan.operations],
            cover=cover,
            warnings=list(plan.warnings)
        )
