"""Tests for the command line entry point."""

import logging

import pytest

import cli
from cli import main


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    yield
    logging.getLogger("reorganizer").handlers.clear()


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "import" in capsys.readouterr().out


def test_recover_on_empty_library(tmp_path, capsys):
    code = main(["--library-root", str(tmp_path / "music"), "recover"])

    assert code == 0
    assert "Rolled back: 0" in capsys.readouterr().out


def test_invalid_configuration_exits_with_error(tmp_path, capsys):
    code = main(["--library-root", str(tmp_path / "music"), "--workers", "-1", "recover"])

    assert code == 1
    assert "Error:" in capsys.readouterr().err


def test_import_requires_a_path():
    with pytest.raises(SystemExit):
        main(["import"])


def test_fsync_walks_directories(tmp_path, capsys):
    album = tmp_path / "music" / "The Band" / "1975 - Demo"
    album.mkdir(parents=True)
    (album / "01 - One.mp3").write_bytes(b"one")
    (album / "cover.jpg").write_bytes(b"\xff\xd8\xff")

    code = main(["fsync", str(tmp_path / "music")])

    assert code == 0
    assert "Synced 2 of 2 files" in capsys.readouterr().out


def test_fsync_missing_path(tmp_path, capsys):
    code = main(["fsync", str(tmp_path / "nowhere")])

    assert code == 1
    assert "No such file or directory" in capsys.readouterr().err


def test_import_dry_run_is_passed_through(tmp_path, monkeypatch, capsys):
    calls = []

    class Summary:
        exit_code = 0

        def format_text(self):
            return "RUN SUMMARY"

    class Orchestrator:
        def run(self, paths, release_id=None, dry_run=False):
            calls.append((paths, release_id, dry_run))
            return Summary()

    monkeypatch.setattr(cli, "build_orchestrator", lambda args: Orchestrator())

    code = main(["import", "--dry-run", str(tmp_path / "in")])

    assert code == 0
    assert calls == [([str(tmp_path / "in")], None, True)]
    assert "RUN SUMMARY" in capsys.readouterr().out
