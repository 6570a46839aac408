# Pipeline Agents
# Scanning, matching, reconciling, and reorganizing albums

from .base import BaseAgent
from .models import AlbumGroup, LocalTrack, MatchCandidate, ResolvedTrack, TrackAlignment
from .scanner import ScannerAgent
from .matcher import MatcherAgent
from .reconciler import ReconcilerAgent
from .paths import PathTemplate, assign_destination, resolve, sanitize_component
from .reorganizer import (
    DestinationRegistry, DirectoryLocks, ReorganizerAgent,
    TransactionResult, TransactionState, sync_files
)

__all__ = [
    'BaseAgent',
    'AlbumGroup',
    'LocalTrack',
    'MatchCandidate',
    'ResolvedTrack',
    'TrackAlignment',
    'ScannerAgent',
    'MatcherAgent',
    'ReconcilerAgent',
    'PathTemplate',
    'assign_destination',
    'resolve',
    'sanitize_component',
    'DestinationRegistry',
    'DirectoryLocks',
    'ReorganizerAgent',
    'TransactionResult',
    'TransactionState',
    'sync_files'
]
