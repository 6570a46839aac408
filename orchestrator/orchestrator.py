#!/usr/bin/env python3
"""
Reorganization Orchestrator - Main orchestration class.

Provides a programmatic interface to run the full pipeline:
    Recover -> Scan -> Group -> Match -> Reconcile -> Resolve paths -> Apply

Usage:
    from orchestrator import create_orchestrator

    orch = create_orchestrator('music-config.yaml')
    summary = orch.run(['/path/to/incoming'])
    print(summary.format_text())
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from agents import (
    DestinationRegistry, DirectoryLocks, MatcherAgent, ReconcilerAgent,
    ReorganizerAgent, ScannerAgent, assign_destination
)
from agents.models import AlbumGroup, ResolvedTrack
from agents.reorganizer import find_cover
from errors import (
    CatalogUnavailableError, ConfigError, MatchError,
    TransactionCancelledError, TransactionError
)
from sources import CatalogCache, DataSource, DiscogsSource, MusicBrainzSource, normalize_release_id
from tags import default_registry
from transcoder import FFmpegTranscoder

from .config import ConfigManager
from .report import AlbumReport, AlbumStatus, RunSummary
from .state import JournalStore


logger = logging.getLogger("reorganizer.orchestrator")


def create_source(config: ConfigManager) -> DataSource:
    """Build the configured primary catalog source"""
    primary = config.primary_source
    settings = config.get_api_settings(primary)
    common = {
        'user_agent': settings.get('user_agent', 'MusicReorganizer/1.0'),
        'rate_limit': float(settings.get('rate_limit', 1.0)),
        'max_retries': int(settings.get('max_retries', 3)),
        'timeout': float(settings.get('timeout', 30)),
    }

    if primary == 'discogs':
        token = config.get_credential('discogs.token') or settings.get('token')
        return DiscogsSource(token=token, per_page=int(settings.get('per_page', 25)), **common)
    if primary == 'musicbrainz':
        return MusicBrainzSource(**common)
    raise ConfigError(f"Unknown catalog source: {primary}")


class ReorganizationOrchestrator:
    """
    Central orchestrator for a reorganization run.

    Albums are processed concurrently, one album per worker task. A failing
    album never stops the run; only the catalog failure threshold or an
    interrupt cancels the albums that have not started yet.
    """

    def __init__(
        self,
        config: ConfigManager,
        source: Optional[DataSource] = None,
        codecs=None,
        transcoder=None
    ):
        """
        Initialize orchestrator.

        Args:
            config: Loaded configuration
            source: Catalog source (default: built from config)
            codecs: Tag codec registry (default: mutagen codecs)
            transcoder: Transcoder (default: ffmpeg when transcoding is enabled)
        """
        self.config = config
        self.codecs = codecs or default_registry()
        self.catalog = CatalogCache(source or create_source(config), config.get('cache.dir'))

        if transcoder is None and config.transcode_enabled:
            transcoder = FFmpegTranscoder(config.get('transcode.ffmpeg', 'ffmpeg'))
            if not transcoder.is_available():
                logger.warning(f"{transcoder} not found; albums needing a transcode will fail")
        self.transcoder = transcoder

        self.template = config.template
        self.move_unmatched = config.get('matching.move_unmatched', False)
        self.catalog_retries = config.get('run.catalog_retries', 1)
        self.catalog_retry_delay = float(config.get('run.catalog_retry_delay', 5.0))
        self.max_catalog_failures = config.get('run.max_catalog_failures')

        self.cancel_event = threading.Event()
        self.registry = DestinationRegistry()
        self.locks = DirectoryLocks()

        # Initialize agents
        self.scanner = ScannerAgent(config, self.codecs)
        self.matcher = MatcherAgent(config, self.catalog)
        self.reconciler = ReconcilerAgent(config)
        self._engine: Optional[ReorganizerAgent] = None

        self._catalog_failures = 0
        self._failure_lock = threading.Lock()
        self._fatal: Optional[str] = None

        # Callbacks
        self._progress_callback: Optional[Callable] = None

    def set_progress_callback(self, callback: Callable[[str, int, int], None]) -> None:
        """
        Set progress callback for UI updates.

        Args:
            callback: Function(message, current, total)
        """
        self._progress_callback = callback

    def _progress(self, message: str, current: int = 0, total: int = 0) -> None:
        """Report progress"""
        if self._progress_callback:
            self._progress_callback(message, current, total)
        else:
            logger.info(f"[{current}/{total}] {message}" if total else message)

    @property
    def library_root(self) -> str:
        root = self.config.library_root
        if not root:
            raise ConfigError("library.root is not configured")
        return root

    @property
    def engine(self) -> ReorganizerAgent:
        if self._engine is None:
            self._engine = ReorganizerAgent(
                self.config,
                JournalStore(self.config.staging_root),
                self.codecs,
                transcoder=self.transcoder,
                catalog=self.catalog,
                registry=self.registry,
                locks=self.locks,
                cancel_event=self.cancel_event
            )
        return self._engine

    # ==================== Recovery ====================

    def recover(self) -> Dict[str, List[str]]:
        """Roll back interrupted commits left by an earlier run"""
        staging_root = self.config.staging_root
        if not staging_root:
            raise ConfigError("library.root or library.staging_root must be configured")
        results = JournalStore(staging_root).recover()
        if results["rolled_back"] or results["failed"]:
            logger.warning(
                f"Recovery: {len(results['rolled_back'])} rolled back, "
                f"{len(results['failed'])} failed, {len(results['cleaned'])} cleaned"
            )
        elif results["cleaned"]:
            logger.info(f"Recovery: removed {len(results['cleaned'])} orphaned staging directories")
        return results

    # ==================== Import ====================

    def run(
        self,
        paths: Iterable[str],
        release_id: Optional[str] = None,
        dry_run: bool = False
    ) -> RunSummary:
        """
        Reorganize everything found under paths into the library.

        Args:
            paths: Files or directories to import
            release_id: Forced catalog release for every album found
            dry_run: Match and plan every album but change nothing on disk

        Returns:
            RunSummary (also written to output.reports_path when configured)
        """
        paths = [str(p) for p in paths]
        root = self.library_root
        if release_id and self.catalog.name == 'discogs':
            try:
                release_id = normalize_release_id(release_id)
            except ValueError as e:
                raise ConfigError(str(e), cause=e) from e

        summary = RunSummary()
        if not dry_run:
            summary.recovery = self.recover()

        tracks = self.scanner.scan(paths)
        summary.skipped_files = [{"path": p, "reason": r} for p, r in self.scanner.skipped]
        groups = self.scanner.group(tracks)
        if release_id and len(groups) > 1:
            logger.warning(f"Release {release_id} forced for {len(groups)} albums")

        source_roots = [str(Path(p).resolve()) for p in paths if Path(p).is_dir()]
        self._run_pool(
            summary,
            groups,
            lambda group: self.process_album(group, root, release_id, source_roots, dry_run)
        )
        if dry_run:
            for group in groups:
                self.registry.release(group.album_id)

        if groups and self.max_catalog_failures is None and self._catalog_failures == len(groups):
            self._fatal = "Catalog unavailable for every album"
        summary.fatal = self._fatal
        return self._finish(summary)

    def process_album(
        self,
        group: AlbumGroup,
        root: str,
        release_id: Optional[str] = None,
        source_roots: Optional[List[str]] = None,
        dry_run: bool = False
    ) -> AlbumReport:
        """Match, reconcile and apply one album; never raises for album-level failures"""
        report = AlbumReport(
            album_id=group.album_id,
            label=group.label,
            status=AlbumStatus.FAILED,
            source_dirs=group.source_dirs,
            warnings=list(group.warnings)
        )
        if self.cancel_event.is_set():
            return report.fail(AlbumStatus.CANCELLED, TransactionCancelledError("Run cancelled before album started"))

        release = None
        status = AlbumStatus.COMMITTED
        try:
            candidate = self._match(group, release_id)
        except MatchError as e:
            if isinstance(e, CatalogUnavailableError):
                self._record_catalog_failure()
            if not self.move_unmatched or isinstance(e, CatalogUnavailableError):
                logger.warning(f"{group.label}: {e.message}")
                return report.fail(AlbumStatus.UNMATCHED, e)
            logger.info(f"{group.label}: {e.message}; using file tags as is")
            report.warnings.append(f"Moved with local tags: {e.message}")
            resolved = self.reconciler.keep_local(group)
            status = AlbumStatus.MOVED_UNMATCHED
        else:
            release = candidate.release
            report.confidence = candidate.confidence
            report.release_id = release.release_id
            report.release_uri = release.uri
            report.unmatched = [t.path for t in candidate.unmatched]
            resolved = self.reconciler.reconcile(candidate)

        resolved = [assign_destination(self._with_transcode(r), self.template, root) for r in resolved]

        if dry_run:
            return self._preview(group, resolved, report)

        try:
            result = self.engine.apply(group, resolved, release, source_roots)
        except TransactionCancelledError as e:
            return report.fail(AlbumStatus.CANCELLED, e)
        except TransactionError as e:
            logger.error(f"{group.label}: {e.message}")
            return report.fail(AlbumStatus.FAILED, e)

        report.destinations = result.destinations
        report.cover = result.cover
        report.warnings.extend(result.warnings)
        report.status = AlbumStatus.NOOP if result.noop else status
        return report

    def _preview(self, group: AlbumGroup, resolved: List[ResolvedTrack], report: AlbumReport) -> AlbumReport:
        """Plan without staging; destinations stay claimed until the dry run ends"""
        try:
            plan = self.engine.plan(group, resolved)
        except TransactionError as e:
            logger.error(f"{group.label}: {e.message}")
            return report.fail(AlbumStatus.FAILED, e)

        report.planned = [op.to_dict() for op in plan.active_operations]
        report.destinations = [op.destination for op in plan.operations]
        report.status = AlbumStatus.NOOP if not report.planned else AlbumStatus.PLANNED
        return report

    def _match(self, group: AlbumGroup, release_id: Optional[str]):
        """Match with bounded retries on catalog outages"""
        attempt = 0
        while True:
            try:
                return self.matcher.match(group, release_id)
            except CatalogUnavailableError as e:
                attempt += 1
                if attempt > self.catalog_retries or self.cancel_event.is_set():
                    raise
                logger.warning(
                    f"{group.label}: {e.message}; retry {attempt}/{self.catalog_retries} "
                    f"in {self.catalog_retry_delay:.0f}s"
                )
                # Wakes early on cancel
                self.cancel_event.wait(self.catalog_retry_delay)

    def _with_transcode(self, resolved: ResolvedTrack) -> ResolvedTrack:
        if not self.config.transcode_enabled:
            return resolved
        target = self.config.transcode_target
        if resolved.local.kind.is_lossless and resolved.local.kind != target:
            return replace(resolved, transcode_to=target)
        return resolved

    def _record_catalog_failure(self) -> None:
        with self._failure_lock:
            self._catalog_failures += 1
            limit = self.max_catalog_failures
            if limit is not None and self._catalog_failures >= limit and not self.cancel_event.is_set():
                self._fatal = f"Catalog unavailable for {self._catalog_failures} albums, cancelling the run"
                logger.error(self._fatal)
                self.cancel_event.set()

    # ==================== Covers ====================

    def add_covers(self, root: Optional[str] = None) -> RunSummary:
        """
        Add missing cover art to album directories already in the library.

        Every directory holding audio files but no valid cover.* / folder.*
        image is matched from its tags; only the cover file is written.
        """
        root = root or self.library_root
        summary = RunSummary()
        summary.recovery = self.recover()

        directories = []
        for current, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
            if any(self.codecs.for_path(f) for f in files) and not find_cover(current):
                directories.append(current)

        self._run_pool(summary, directories, self.process_cover)
        summary.fatal = self._fatal
        return self._finish(summary)

    def process_cover(self, directory: str) -> AlbumReport:
        tracks = [
            track for track in (
                self.scanner.read_track(path)
                for path in sorted(Path(directory).iterdir())
                if path.is_file() and self.codecs.for_path(path)
            )
            if track is not None
        ]
        groups = self.scanner.group(tracks)
        if not groups:
            return AlbumReport(album_id="", label=directory, status=AlbumStatus.NOOP,
                               source_dirs=[directory], warnings=["No readable tracks"])

        group = max(groups, key=lambda g: g.track_count)
        report = AlbumReport(album_id=group.album_id, label=group.label,
                             status=AlbumStatus.NOOP, source_dirs=[directory])
        if self.cancel_event.is_set():
            return report.fail(AlbumStatus.CANCELLED, TransactionCancelledError("Run cancelled"))

        try:
            candidate = self._match(group, None)
        except MatchError as e:
            if isinstance(e, CatalogUnavailableError):
                self._record_catalog_failure()
            return report.fail(AlbumStatus.UNMATCHED, e)

        report.confidence = candidate.confidence
        report.release_id = candidate.release.release_id
        report.release_uri = candidate.release.uri
        try:
            cover = self.engine.add_cover(group.album_id, group.label, directory, candidate.release)
        except TransactionError as e:
            return report.fail(AlbumStatus.FAILED, e)

        if cover is None:
            report.warnings.append("CoverArtUnavailable: no cover could be fetched")
        else:
            report.cover = cover
            report.destinations = [cover]
            report.status = AlbumStatus.COMMITTED
        return report

    # ==================== Workers ====================

    def _run_pool(self, summary: RunSummary, items: list, task: Callable) -> None:
        """Run task over items on the worker pool, collecting reports into summary"""
        total = len(items)
        if not total:
            logger.info("Nothing to process")
            return

        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="album") as pool:
            futures = {pool.submit(self._safe, task, item): item for item in items}
            collected = set()
            try:
                for done, future in enumerate(as_completed(futures), 1):
                    report = future.result()
                    collected.add(future)
                    summary.add(report)
                    self._progress(f"{report.label}: {report.status.value}", done, total)
            except KeyboardInterrupt:
                summary.interrupted = True
                self.cancel_event.set()
                logger.warning("Interrupted; waiting for in-flight albums to commit or roll back")
                wait(futures)
                for future in futures:
                    if future not in collected:
                        summary.add(future.result())

    def _safe(self, task: Callable, item) -> AlbumReport:
        """Turn an unexpected error into a failed album instead of a dead run"""
        try:
            return task(item)
        except Exception as e:
            logger.exception(f"Unexpected error for {item}")
            if isinstance(item, AlbumGroup):
                report = AlbumReport(album_id=item.album_id, label=item.label,
                                     status=AlbumStatus.FAILED, source_dirs=item.source_dirs)
            else:
                report = AlbumReport(album_id="", label=str(item), status=AlbumStatus.FAILED)
            return report.fail(AlbumStatus.FAILED, e)

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finish()
        reports_path = self.config.reports_path
        if reports_path:
            path = summary.save_json(reports_path)
            logger.info(f"Run summary written to {path}")

        staging_root = self.config.staging_root
        if staging_root:
            try:
                Path(staging_root).rmdir()
            except OSError:
                pass
        return summary


def create_orchestrator(config_path: str = "music-config.yaml",
                        overrides: Optional[Dict] = None) -> ReorganizationOrchestrator:
    """
    Factory function to create orchestrator instance.

    Args:
        config_path: Path to configuration file
        overrides: Dot-notation config overrides, e.g. {'library.root': '/music'}

    Returns:
        Configured ReorganizationOrchestrator
    """
    config = ConfigManager(config_path, overrides=overrides)
    return ReorganizationOrchestrator(config)
