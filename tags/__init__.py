# Tag Codec Adapters
# mutagen-backed readers/writers for ID3 (MP3), MP4 atoms (M4A), Vorbis comments (FLAC)

from typing import Dict, Iterable, Optional

from errors import TagCodecError

from .base import ContainerKind, TagCodec, TagFields
from .id3 import ID3Codec
from .mp4 import MP4Codec
from .flac import FLACCodec


class TagCodecRegistry:
    """Looks up the codec for a container kind"""

    def __init__(self, codecs: Iterable[TagCodec]):
        self._codecs: Dict[ContainerKind, TagCodec] = {c.kind: c for c in codecs}

    def for_kind(self, kind: ContainerKind) -> TagCodec:
        codec = self._codecs.get(kind)
        if codec is None:
            raise TagCodecError(f"No tag codec registered for {kind.value}")
        return codec

    def for_path(self, path) -> Optional[TagCodec]:
        """Codec for a file path, None if the extension is unsupported"""
        kind = ContainerKind.from_path(path)
        return self._codecs.get(kind) if kind else None

    @property
    def kinds(self):
        return list(self._codecs)


def default_registry() -> TagCodecRegistry:
    return TagCodecRegistry([ID3Codec(), MP4Codec(), FLACCodec()])


__all__ = [
    'ContainerKind',
    'TagCodec',
    'TagFields',
    'TagCodecRegistry',
    'ID3Codec',
    'MP4Codec',
    'FLACCodec',
    'default_registry'
]
