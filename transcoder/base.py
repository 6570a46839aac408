#!/usr/bin/env python3
"""
Base class for transcoders.
A transcoder turns one source file into a derivative in the staging area.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from tags.base import ContainerKind


@dataclass(frozen=True)
class TranscodeOptions:
    """Encoder settings for one target kind"""
    codec: Optional[str] = None
    bitrate: Optional[str] = "256k"
    extra: Tuple[Tuple[str, str], ...] = ()
    timeout: float = 600

    @classmethod
    def from_config(cls, settings: Dict) -> "TranscodeOptions":
        settings = settings or {}
        extra = settings.get('extra') or {}
        return cls(
            codec=settings.get('codec'),
            bitrate=settings.get('bitrate', "256k"),
            extra=tuple((str(k), str(v)) for k, v in extra.items()),
            timeout=float(settings.get('timeout', 600))
        )


class Transcoder(ABC):
    """
    Abstract base class for transcoders.

    Output is always written inside staging_dir, never at the final destination.
    Failures raise TranscodeError.
    """

    @abstractmethod
    def transcode(
        self,
        source: str,
        target_kind: ContainerKind,
        options: TranscodeOptions,
        staging_dir: str,
        name: Optional[str] = None
    ) -> str:
        """
        Transcode source into staging_dir.

        Args:
            source: Path of the original file
            target_kind: Container to produce
            options: Encoder settings
            staging_dir: Directory that receives the output
            name: Output file stem (defaults to the source stem)

        Returns:
            Path of the staged derivative
        """
        pass

    def is_available(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
