#!/usr/bin/env python3
"""
Music Library Reorganizer CLI

Identifies albums against a music catalog, rewrites their tags and moves
them into a consistently named library tree, one album transaction at a time.

Usage:
    music-reorg [options] <command> [command options]

Commands:
    import <path>...         Match, retag and move albums into the library
    add-covers [root]        Fetch missing cover art for library albums
    recover                  Roll back commits interrupted by a crash
    fsync <path>...          Flush files and directories to disk

Exit codes:
    0    all albums succeeded (or were already organized)
    2    some albums failed or were left unmatched
    1    fatal error (configuration, catalog down for every album)
    130  interrupted
"""

import argparse
import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from errors import ReorganizerError  # noqa: E402


def build_orchestrator(args):
    from orchestrator import ConfigManager, ReorganizationOrchestrator, setup_logging

    overrides = {}
    if args.library_root:
        overrides['library.root'] = args.library_root
    if args.workers:
        overrides['run.workers'] = args.workers

    config = ConfigManager(args.config, credentials_path=args.credentials, overrides=overrides)

    log_file = None
    if config.logs_path:
        log_file = str(Path(config.logs_path) / "reorganizer.log")
    setup_logging(args.log_level or config.log_level, log_file)

    return ReorganizationOrchestrator(config)


def print_summary(summary) -> int:
    print(summary.format_text())
    return summary.exit_code


def cmd_import(args):
    """Match, retag and move albums into the library."""
    orchestrator = build_orchestrator(args)
    summary = orchestrator.run(args.paths, release_id=args.release_id, dry_run=args.dry_run)
    return print_summary(summary)


def cmd_add_covers(args):
    """Fetch missing cover art for albums already in the library."""
    orchestrator = build_orchestrator(args)
    summary = orchestrator.add_covers(args.root)
    return print_summary(summary)


def cmd_recover(args):
    """Roll back interrupted commits and clean the staging area."""
    orchestrator = build_orchestrator(args)
    results = orchestrator.recover()

    print(f"\n=== Recovery Results ===")
    print(f"Rolled back: {len(results['rolled_back'])}")
    print(f"Cleaned: {len(results['cleaned'])}")
    print(f"Failed: {len(results['failed'])}")
    for album_id in results['failed']:
        print(f"  journal kept for {album_id}")
    return 2 if results['failed'] else 0


def cmd_fsync(args):
    """Flush files (and the directories holding them) to disk."""
    from agents import sync_files

    files = []
    for path in args.paths:
        if os.path.isdir(path):
            for dirpath, _, filenames in os.walk(path):
                files.extend(os.path.join(dirpath, name) for name in sorted(filenames))
        elif os.path.exists(path):
            files.append(path)
        else:
            raise ReorganizerError(f"No such file or directory: {path}", path=path)

    failures = sync_files(files)
    failed = {path for path, _ in failures}
    print(f"Synced {sum(1 for f in files if f not in failed)} of {len(files)} files")
    for path, error in failures:
        print(f"  fsync failed for {path}: {error}")
    return 2 if failures else 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='music-reorg',
        description='Music Library Reorganizer',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--config', default='music-config.yaml', help='Configuration file')
    parser.add_argument('--credentials', default='credentials.yaml', help='Credentials file')
    parser.add_argument('--library-root', help='Library root (overrides library.root)')
    parser.add_argument('--workers', type=int, help='Albums processed in parallel')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log level')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # import command
    import_parser = subparsers.add_parser('import', help='Match, retag and move albums')
    import_parser.add_argument('paths', nargs='+', help='Files or directories to import')
    import_parser.add_argument('--release-id', help='Force a catalog release (e.g. 123 or [r123])')
    import_parser.add_argument('--dry-run', action='store_true',
                               help='Show planned moves and tag writes without changing anything')
    import_parser.set_defaults(func=cmd_import)

    # add-covers command
    covers_parser = subparsers.add_parser('add-covers', help='Fetch missing cover art')
    covers_parser.add_argument('root', nargs='?', help='Library root to walk (default: library.root)')
    covers_parser.set_defaults(func=cmd_add_covers)

    # recover command
    recover_parser = subparsers.add_parser('recover', help='Roll back interrupted commits')
    recover_parser.set_defaults(func=cmd_recover)

    # fsync command
    fsync_parser = subparsers.add_parser('fsync', help='Flush files and directories to disk')
    fsync_parser.add_argument('paths', nargs='+', help='Files or directories (walked recursively)')
    fsync_parser.set_defaults(func=cmd_fsync)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nOperation cancelled.")
        return 130
    except ReorganizerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
