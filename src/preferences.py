"""Persisted AI model selection, kept between planning sessions."""

import logging
from pathlib import Path

import yaml

from src.codec import selection_from_dict, selection_to_dict
from src.models import UserAISelection

logger = logging.getLogger(__name__)


class PreferenceStore:
    """A single YAML file holding the user's last ``UserAISelection``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> UserAISelection | None:
        """Stored selection, or None when nothing (or nothing readable) is stored."""
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            logger.warning("Ignoring unreadable preferences file %s: %s", self.path, exc)
            return None
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed preferences file %s", self.path)
            return None
        try:
            return selection_from_dict(raw)
        except (KeyError, TypeError) as exc:
            logger.warning("Ignoring malformed preferences file %s: %s", self.path, exc)
            return None

    def save(self, selection: UserAISelection) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(selection_to_dict(selection), f, sort_keys=False, allow_unicode=True)
        logger.debug("Saved AI selection (%s tier) to %s", selection.selected_tier, self.path)
