# Music Library Reorganization System
# Core orchestration engine

from .config import ConfigManager
from .state import JournalStore
from .report import AlbumReport, AlbumStatus, RunSummary
from .logging_config import setup_logging
from .orchestrator import ReorganizationOrchestrator, create_orchestrator, create_source

__all__ = [
    'ConfigManager',
    'JournalStore',
    'AlbumReport',
    'AlbumStatus',
    'RunSummary',
    'setup_logging',
    'ReorganizationOrchestrator',
    'create_orchestrator',
    'create_source'
]
