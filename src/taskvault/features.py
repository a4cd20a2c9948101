from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from .config import Settings

logger = logging.getLogger(__name__)

FRONTMATTER_FENCE = "---"
VIBE_LINE_RE = re.compile(r"^\s*[*_]*vibe[*_]*\s*:\s*[*_]*\s*(?P<tag>.*?)\s*$", re.IGNORECASE)


class FeatureCatalog:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.base = settings.root / settings.layout.features_dir

    def resolve(self, feature_path: str) -> Optional[Path]:
        prefix = self.settings.feature_prefix
        if not feature_path.startswith(prefix):
            return None
        relative = feature_path[len(prefix) :].strip("/")
        if not relative:
            return None
        candidate = (self.base / relative).resolve()
        base = self.base.resolve()
        if candidate != base and base not in candidate.parents:
            return None
        return candidate

    def exists(self, feature_path: str) -> bool:
        path = self.resolve(feature_path)
        return path is not None and path.is_dir()

    def default_vibe(self, feature_path: str) -> str:
        path = self.resolve(feature_path)
        if path is None:
            return ""
        description = path / self.settings.layout.feature_description_file
        if not description.is_file():
            return ""
        try:
            text = description.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("cannot read %s: %s", description, exc)
            return ""
        return parse_vibe(text)


def parse_vibe(text: str) -> str:
    lines = text.splitlines()
    if lines and lines[0].strip() == FRONTMATTER_FENCE:
        for line in lines[1:]:
            if line.strip() == FRONTMATTER_FENCE:
                break
            match = VIBE_LINE_RE.match(line)
            if match:
                return _unquote(match.group("tag"))
    for line in lines:
        match = VIBE_LINE_RE.match(line)
        if match:
            return _unquote(match.group("tag"))
    return ""


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1].strip()
    return value
