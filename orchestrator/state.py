#!/usr/bin/env python3
"""
Transaction journals for crash recovery.

Each album being applied owns <staging root>/<album_id>/ with a journal.json
recording its state, the moves performed during commit (written before each
move happens) and the directories commit created. A later run uses these to
roll back anything left half-committed and to remove orphaned staging data.
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger("reorganizer.state")

JOURNAL_NAME = "journal.json"


class JournalStore:
    """
    Persistent per-album transaction journals under the staging root.
    """

    def __init__(self, staging_root: str):
        self.staging_root = Path(staging_root)

    def album_dir(self, album_id: str) -> Path:
        return self.staging_root / album_id

    def journal_path(self, album_id: str) -> Path:
        return self.album_dir(album_id) / JOURNAL_NAME

    # ==================== Journal ====================

    def load(self, album_id: str) -> Optional[Dict[str, Any]]:
        """Load an album journal, None if missing or unreadable"""
        path = self.journal_path(album_id)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            return None

    def save(self, journal: Dict[str, Any]) -> None:
        """Write the journal atomically (temp file + replace)"""
        path = self.journal_path(journal["album_id"])
        path.parent.mkdir(parents=True, exist_ok=True)

        journal["updated_at"] = datetime.now().isoformat()
        tmp = path.with_suffix(".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(journal, f, indent=2, ensure_ascii=False)
        tmp.replace(path)

    def new_journal(self, album_id: str, label: str = "") -> Dict[str, Any]:
        return {
            "album_id": album_id,
            "label": label,
            "state": "PLANNED",
            "created_at": datetime.now().isoformat(),
            "moves": [],
            "created_dirs": []
        }

    def discard(self, album_id: str) -> None:
        """Remove an album's staging directory, journal included"""
        shutil.rmtree(self.album_dir(album_id), ignore_errors=True)

    def list_journals(self) -> List[Dict[str, Any]]:
        journals = []
        if not self.staging_root.is_dir():
            return journals
        for album_dir in sorted(self.staging_root.iterdir()):
            if album_dir.is_dir():
                journal = self.load(album_dir.name)
                if journal is not None:
                    journals.append(journal)
        return journals

    # ==================== Recovery ====================

    def recover(self) -> Dict[str, Any]:
        """
        Roll back interrupted commits and clean the staging root.

        Returns:
            Summary with rolled_back / cleaned / failed album ids
        """
        results = {"rolled_back": [], "cleaned": [], "failed": []}
        if not self.staging_root.is_dir():
            return results

        for album_dir in sorted(self.staging_root.iterdir()):
            if not album_dir.is_dir():
                try:
                    album_dir.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove stray staging file {album_dir}: {e}")
                continue

            album_id = album_dir.name
            journal = self.load(album_id)

            if journal is not None and journal.get("state") == "STAGED" and journal.get("moves"):
                try:
                    self.undo(journal)
                except OSError as e:
                    logger.error(f"Recovery of {album_id} failed, journal kept: {e}")
                    results["failed"].append(album_id)
                    continue
                logger.info(f"Rolled back interrupted commit of {journal.get('label') or album_id}")
                results["rolled_back"].append(album_id)
            else:
                results["cleaned"].append(album_id)

            self.discard(album_id)

        try:
            self.staging_root.rmdir()
        except OSError:
            pass

        return results

    def undo(self, journal: Dict[str, Any]) -> None:
        """Reverse a journal's moves and remove the directories it created"""
        reverse_moves(journal.get("moves", []))
        remove_created_dirs(journal.get("created_dirs", []))

    def __repr__(self) -> str:
        return f"JournalStore(path={self.staging_root})"


def reverse_moves(moves: List[Dict[str, str]]) -> None:
    """
    Undo recorded moves, newest first.

    A move is undone only if its target exists and its source doesn't, so
    replaying a partially reversed journal is safe.
    """
    for move in reversed(moves):
        src, dst = Path(move["from"]), Path(move["to"])
        if dst.exists() and not src.exists():
            src.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(dst), str(src))


def remove_created_dirs(created_dirs: List[str]) -> None:
    """Remove directories created during commit if they are empty again (deepest first)"""
    for directory in sorted(created_dirs, key=lambda d: len(Path(d).parts), reverse=True):
        try:
            Path(directory).rmdir()
        except OSError:
            pass
