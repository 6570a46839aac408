#!/usr/bin/env python3
"""
Path scheme resolver.

Templates are '/'-separated path components built from literal text,
placeholders and optional [...] segments:

    {artist}/[{year} - ]{album}/[{disc}.][{track} - ]{title}.{ext}

An optional segment is dropped when any placeholder inside it renders empty.
Everything here is pure; nothing touches the filesystem.
"""

import re
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from errors import ConfigError
from tags.base import TagFields

from .models import ResolvedTrack


DEFAULT_TEMPLATE = "{artist}/[{year} - ]{album}/[{disc}.][{track} - ]{title}.{ext}"

PLACEHOLDERS = ('artist', 'album', 'year', 'disc', 'track', 'title', 'ext')

# Characters not allowed in Windows filenames, plus separators
INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')

RESERVED_NAMES = {'CON', 'PRN', 'AUX', 'NUL'} | \
    {f'COM{i}' for i in range(1, 10)} | {f'LPT{i}' for i in range(1, 10)}

MAX_COMPONENT = 200

# A token is ("text", value) or ("field", name); a segment is a token or
# ("optional", [tokens])
Token = Tuple[str, Union[str, list]]


def sanitize_component(name: str, limit: int = MAX_COMPONENT) -> str:
    """
    Make a string safe for use as one path component.

    Reserved characters become "-", whitespace is collapsed, leading dots and
    trailing dots/spaces are stripped, Windows device names get a "_" suffix
    and the result is cut to limit characters (keeping a short extension).
    """
    name = INVALID_CHARS.sub('-', name)
    name = ' '.join(name.split())
    name = name.lstrip('.').rstrip('. ')

    stem, dot, suffix = name.partition('.')
    if stem.upper() in RESERVED_NAMES:
        name = f"{stem}_{dot}{suffix}"

    if len(name) > limit:
        base, dot, ext = name.rpartition('.')
        if dot and 0 < len(ext) <= 5:
            name = base[:limit - len(ext) - 1].rstrip('. ') + '.' + ext
        else:
            name = name[:limit].rstrip('. ')

    return name or '_'


class PathTemplate:
    """A compiled naming template"""

    def __init__(self, template: str = DEFAULT_TEMPLATE):
        self.template = template
        self.components = self._compile(template)

    @classmethod
    def compile(cls, template: str) -> "PathTemplate":
        return cls(template)

    def _compile(self, template: str) -> List[List[Token]]:
        if not template or not template.strip('/'):
            raise ConfigError("Naming template is empty")

        components = []
        for raw in template.strip('/').split('/'):
            if not raw:
                raise ConfigError(f"Empty path component in template: {template}")
            components.append(self._parse_component(raw, template))

        if not any(self._has_field(c, 'title') for c in components[-1:]):
            raise ConfigError(f"Template file name must contain {{title}}: {template}")
        return components

    def _parse_component(self, raw: str, template: str) -> List[Token]:
        segments: List[Token] = []
        optional: Optional[List[Token]] = None
        target = segments
        pos = 0

        for match in re.finditer(r'\{([^{}]*)\}|\[|\]', raw):
            text = raw[pos:match.start()]
            if text:
                target.append(("text", text))
            pos = match.end()

            token = match.group(0)
            if token == '[':
                if optional is not None:
                    raise ConfigError(f"Nested optional segment in template: {template}")
                optional = []
                target = optional
            elif token == ']':
                if optional is None:
                    raise ConfigError(f"Unbalanced ']' in template: {template}")
                segments.append(("optional", optional))
                optional = None
                target = segments
            else:
                field = match.group(1)
                if field not in PLACEHOLDERS:
                    raise ConfigError(f"Unknown placeholder {{{field}}} in template: {template}")
                target.append(("field", field))

        if optional is not None:
            raise ConfigError(f"Unbalanced '[' in template: {template}")
        rest = raw[pos:]
        if '{' in rest or '}' in rest:
            raise ConfigError(f"Malformed placeholder in template: {template}")
        if rest:
            segments.append(("text", rest))
        return segments

    def _has_field(self, segments: List[Token], name: str) -> bool:
        for kind, value in segments:
            if kind == "field" and value == name:
                return True
            if kind == "optional" and self._has_field(value, name):
                return True
        return False

    def render(self, tags: TagFields, ext: str, fallback_title: str = "") -> str:
        """Relative destination path ('/'-separated) for a tag set"""
        values = template_values(tags, ext, fallback_title)
        parts = []
        for segments in self.components:
            rendered = "".join(self._render_segment(s, values) for s in segments)
            parts.append(sanitize_component(rendered))
        return "/".join(parts)

    def _render_segment(self, segment: Token, values: Dict[str, str]) -> str:
        kind, value = segment
        if kind == "text":
            return value
        if kind == "field":
            return values[value]

        rendered = []
        for inner_kind, inner in value:
            if inner_kind == "field":
                if not values[inner]:
                    return ""
                rendered.append(values[inner])
            else:
                rendered.append(inner)
        return "".join(rendered)

    def __repr__(self) -> str:
        return f"PathTemplate({self.template!r})"


def template_values(tags: TagFields, ext: str, fallback_title: str = "") -> Dict[str, str]:
    """Placeholder values; artist/album/title never render empty"""
    disc = tags.disc_number
    multi_disc = disc is not None and (tags.total_discs or disc) > 1

    return {
        'artist': (tags.album_artist or tags.artist or "").strip() or "Unknown Artist",
        'album': (tags.album or "").strip() or "Unknown Album",
        'year': str(tags.year) if tags.year else "",
        'disc': str(disc) if multi_disc else "",
        'track': f"{tags.track_number:02d}" if tags.track_number else "",
        'title': (tags.title or "").strip() or fallback_title or "Unknown Title",
        'ext': ext.lstrip('.').lower(),
    }


def resolve(tags: TagFields, template: PathTemplate, ext: str, fallback_title: str = "") -> str:
    """Relative destination path for a tag set"""
    return template.render(tags, ext, fallback_title)


def assign_destination(resolved: ResolvedTrack, template: PathTemplate, root: str) -> ResolvedTrack:
    """Copy of resolved with an absolute destination under root"""
    kind = resolved.target_kind
    relative = resolve(resolved.tags, template, kind.extension, resolved.local.display_title)
    destination = Path(root).joinpath(*relative.split('/'))
    return replace(resolved, destination=str(destination))
