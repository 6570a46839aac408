#!/usr/bin/env python3
"""
Base class for pipeline agents.
All agents (Scanner, Matcher, Reconciler, Reorganizer) inherit from this.
"""

from abc import ABC, abstractmethod
import logging


class BaseAgent(ABC):
    """
    Abstract base class for pipeline agents.

    Each agent owns one step of an album's trip through the pipeline:
    - Scanner: Discover audio files and group them into albums
    - Matcher: Resolve an album to a catalog release
    - Reconciler: Merge the release into per-track tag sets
    - Reorganizer: Stage, tag, and move an album as one transaction
    """

    def __init__(self, config, state=None):
        """
        Args:
            config: ConfigManager instance
            state: JournalStore instance (only agents that touch disk need one)
        """
        self.config = config
        self.state = state
        self._logger = logging.getLogger(f"reorganizer.{self.name.lower()}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Agent name identifier"""
        pass

    def log(self, message: str) -> None:
        self._logger.info(message)

    def log_debug(self, message: str) -> None:
        self._logger.debug(message)

    def log_warning(self, message: str) -> None:
        self._logger.warning(message)

    def log_error(self, message: str) -> None:
        self._logger.error(message)
