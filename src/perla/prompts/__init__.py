"""Loader for the versioned prompt resource (``perla.yaml``)."""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from perla.errors import PromptError

PROMPT_FILE = Path(__file__).parent / "perla.yaml"

_REQUIRED_KEYS = (
    "version",
    "system",
    "selection",
    "selection_details",
    "selection_missing",
    "insights",
)


@dataclass(frozen=True)
class PromptSet:
    """System prompt and templates used by the gateway."""

    version: int
    system: str
    selection: str
    selection_details: str
    selection_missing: str
    insights: str


def load_prompts(path: Path | None = None) -> PromptSet:
    """Read and check a prompt YAML file.

    Raises:
        PromptError: If the file is missing, unparsable or lacks a key.
    """
    path = path or PROMPT_FILE
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PromptError(f"Cannot read prompt file {path}: {exc}") from exc

    try:
        data: Any = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise PromptError(f"{path.name}: invalid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise PromptError(f"{path.name}: top level must be a mapping")

    missing = [key for key in _REQUIRED_KEYS if key not in data]
    if missing:
        raise PromptError(f"{path.name}: missing keys {', '.join(missing)}")

    try:
        version = int(data["version"])
    except (TypeError, ValueError) as exc:
        raise PromptError(f"{path.name}: version must be an integer") from exc

    return PromptSet(
        version=version,
        system=str(data["system"]).strip(),
        selection=str(data["selection"]),
        selection_details=str(data["selection_details"]),
        selection_missing=str(data["selection_missing"]),
        insights=str(data["insights"]),
    )


@lru_cache
def default_prompts() -> PromptSet:
    """Cached prompts bundled with the package."""
    return load_prompts()


__all__ = ["PromptSet", "load_prompts", "default_prompts", "PROMPT_FILE"]
