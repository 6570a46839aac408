#!/usr/bin/env python3
"""
Run summary.
One AlbumReport per album, plus run-level counts, in JSON and plain text.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import ReorganizerError


SUMMARY_NAME = "run_summary.json"


class AlbumStatus(Enum):
    """Album outcome"""
    COMMITTED = "committed"
    NOOP = "noop"
    MOVED_UNMATCHED = "moved_unmatched"
    UNMATCHED = "unmatched"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PLANNED = "planned"

    @property
    def is_failure(self) -> bool:
        return self in (AlbumStatus.UNMATCHED, AlbumStatus.FAILED, AlbumStatus.CANCELLED)


@dataclass
class AlbumReport:
    album_id: str
    label: str
    status: AlbumStatus
    source_dirs: List[str] = field(default_factory=list)
    confidence: Optional[float] = None
    release_id: Optional[str] = None
    release_uri: Optional[str] = None
    destinations: List[str] = field(default_factory=list)
    cover: Optional[str] = None
    unmatched: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    planned: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def fail(self, status: AlbumStatus, error: BaseException) -> "AlbumReport":
        self.status = status
        if isinstance(error, ReorganizerError):
            self.error = error.to_dict()
        else:
            self.error = {"type": type(error).__name__, "message": str(error), "path": None, "cause": None}
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "album_id": self.album_id,
            "label": self.label,
            "status": self.status.value,
            "source_dirs": self.source_dirs,
            "confidence": round(self.confidence, 4) if self.confidence is not None else None,
            "release_id": self.release_id,
            "release_uri": self.release_uri,
            "destinations": self.destinations,
            "cover": self.cover,
            "unmatched": self.unmatched,
            "warnings": self.warnings,
            "planned": self.planned,
            "error": self.error
        }


class RunSummary:
    """Collects album reports from worker threads"""

    def __init__(self):
        self.started_at = datetime.now().isoformat()
        self.finished_at: Optional[str] = None
        self.albums: List[AlbumReport] = []
        self.skipped_files: List[Dict[str, str]] = []
        self.recovery: Dict[str, List[str]] = {}
        self.interrupted = False
        self.fatal: Optional[str] = None
        self._lock = threading.Lock()

    def add(self, report: AlbumReport) -> None:
        with self._lock:
            self.albums.append(report)

    def finish(self) -> None:
        self.finished_at = datetime.now().isoformat()
        with self._lock:
            self.albums.sort(key=lambda r: r.label.casefold())

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in AlbumStatus}
        with self._lock:
            for report in self.albums:
                counts[report.status.value] += 1
        return counts

    @property
    def exit_code(self) -> int:
        """0 success, 2 some albums failed, 1 fatal error, 130 interrupted"""
        if self.interrupted:
            return 130
        if self.fatal:
            return 1
        if any(r.status.is_failure for r in self.albums):
            return 2
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "interrupted": self.interrupted,
            "fatal": self.fatal,
            "counts": self.counts(),
            "recovery": self.recovery,
            "skipped_files": self.skipped_files,
            "albums": [r.to_dict() for r in self.albums]
        }

    def save_json(self, directory: str) -> Path:
        """Write run_summary.json into directory"""
        path = Path(directory) / SUMMARY_NAME
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        return path

    def format_text(self) -> str:
        lines = ["=" * 60, "RUN SUMMARY", "=" * 60]

        for report in self.albums:
            line = f"[{report.status.value.upper()}] {report.label}"
            if report.confidence is not None:
                line += f" ({report.confidence:.0%})"
            lines.append(line)

            if report.release_uri or report.release_id:
                lines.append(f"    Release: {report.release_uri or report.release_id}")
            if report.status in (AlbumStatus.COMMITTED, AlbumStatus.MOVED_UNMATCHED):
                for destination in report.destinations:
                    lines.append(f"    -> {destination}")
            for item in report.planned:
                actions = [name for name in ("transcode", "tag_write", "move") if item.get(name)]
                lines.append(f"    {item['source']} -> {item['destination']} ({', '.join(actions)})")
            for path in report.unmatched:
                lines.append(f"    Unmatched track: {path}")
            for warning in report.warnings:
                lines.append(f"    Warning: {warning}")
            if report.error:
                message = f"    Error ({report.error['type']}): {report.error['message']}"
                if report.error.get('path'):
                    message += f" [{report.error['path']}]"
                lines.append(message)
                for candidate in report.error.get('candidates', []):
                    lines.append(
                        f"      candidate {candidate['release_id']}: {candidate['title']} "
                        f"({candidate.get('year') or '?'}) {candidate['confidence']:.2f}"
                    )

        if self.skipped_files:
            lines.append("")
            lines.append(f"Skipped files: {len(self.skipped_files)}")
            for item in self.skipped_files:
                lines.append(f"    {item['path']}: {item['reason']}")

        lines.append("-" * 60)
        counts = self.counts()
        lines.append("  ".join(f"{name}: {count}" for name, count in counts.items() if count))
        if self.fatal:
            lines.append(f"FATAL: {self.fatal}")
        if self.interrupted:
            lines.append("Run interrupted; remaining albums were left untouched")
        return "\n".join(lines)
