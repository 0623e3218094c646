"""Translation bundles for user-facing text."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

from utils.config import ConfigurationError


FALLBACK_LOCALE = "en"


class TranslationError(ConfigurationError):
    """Raised when translation bundles cannot be loaded."""


def _flatten(tree: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Collapse nested mappings into dotted keys (``commands.start``)."""
    flat: Dict[str, str] = {}
    for key, value in tree.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = str(value)
    return flat


@dataclass
class Translations:
    """Locale code to flattened key/text mapping."""

    bundles: Dict[str, Dict[str, str]]

    def translate(self, key: str, locale: str) -> str:
        """Look up ``key`` for ``locale``.

        Falls back to the English bundle, then to the key itself so a
        missing string is visible rather than fatal at runtime.
        """
        for code in (locale, FALLBACK_LOCALE):
            text = self.bundles.get(code, {}).get(key)
            if text is not None:
                return text
        return key


def load_translations(directory: Path) -> Translations:
    """Load every ``<locale>.yaml`` bundle in ``directory``.

    Raises:
        TranslationError: If the directory is missing, holds no bundles,
            or a bundle cannot be parsed
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise TranslationError(f"Translation directory not found: {directory}")

    bundles: Dict[str, Dict[str, str]] = {}
    for bundle in sorted(directory.glob("*.yaml")):
        try:
            tree = yaml.safe_load(bundle.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise TranslationError(f"Could not parse {bundle}: {exc}") from exc
        if not isinstance(tree, dict):
            raise TranslationError(f"{bundle} must contain a mapping")
        bundles[bundle.stem] = _flatten(tree)

    if not bundles:
        raise TranslationError(f"No translation bundles found in {directory}")
    return Translations(bundles=bundles)
