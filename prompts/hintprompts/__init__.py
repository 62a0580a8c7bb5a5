"""Utilities for loading the hint generator's prompt variants."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class HintPrompt:
    """System prompt plus the user-turn template sent to the hint generator."""

    id: str
    variant: str
    prompt_version: str
    label: str
    system_template: str
    acknowledgement: str
    user_template: str

    @property
    def normalized_variant(self) -> str:
        return self.variant.lower()


def _load_prompt(path: Path) -> HintPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {
        "id",
        "variant",
        "prompt_version",
        "label",
        "system_template",
        "acknowledgement",
        "user_template",
    }
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")

    def _text(value: object) -> str:
        # Long templates are stored as a list of lines for readability.
        if isinstance(value, list):
            return "\n".join(str(line) for line in value)
        return str(value)

    return HintPrompt(
        id=str(payload["id"]),
        variant=str(payload["variant"]),
        prompt_version=str(payload["prompt_version"]),
        label=str(payload["label"]),
        system_template=_text(payload["system_template"]),
        acknowledgement=_text(payload["acknowledgement"]),
        user_template=_text(payload["user_template"]),
    )


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


@lru_cache(maxsize=1)
def load_prompts(directory: Path | None = None) -> Mapping[str, HintPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, HintPrompt] = {}
    for file_path in _iter_prompt_files(base_dir):
        prompt = _load_prompt(file_path)
        key = prompt.normalized_variant
        if key in prompts:
            raise ValueError(f"Duplicate hint prompt variant detected: {prompt.variant}")
        prompts[key] = prompt
    if not prompts:
        raise RuntimeError(f"No hint prompt definitions found in {base_dir}")
    return prompts


def get_prompt(variant: str | None) -> HintPrompt:
    prompts = load_prompts()
    if not variant:
        return next(iter(prompts.values()))
    key = str(variant).lower()
    if key not in prompts:
        raise KeyError(f"Unknown hint prompt variant '{variant}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


__all__ = ["HintPrompt", "load_prompts", "get_prompt"]
