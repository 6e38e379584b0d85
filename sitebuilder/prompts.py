from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parent / "prompts.yaml"


@dataclass(frozen=True)
class PromptBook:
    system_policy: str
    update_context: str
    style_context: str
    malformed_correction: str
    create_tool_in_update: str
    wrong_tool_in_update: str
    image_context: str
    chat_system: str
    project_not_found: str
    chat_unavailable: str
    translation: str
    enhance_system: str
    enhance_user: str
    deployment_readme: str

    def render(self, key: str, **values: Any) -> str:
        template: str = getattr(self, key)
        return template.format(**values).strip()


def load_prompts(path: Optional[str] = None) -> PromptBook:
    """
    Load the prompt book from YAML. Falls back to the file shipped next to
    this module when no path is given.
    """
    prompt_file = Path(path) if path else DEFAULT_PROMPTS_PATH
    if not prompt_file.exists():
        raise ConfigurationError(f"prompt file not found: {prompt_file}")
    data: Dict[str, Any] = yaml.safe_load(prompt_file.read_text(encoding="utf-8")) or {}

    missing = [f.name for f in fields(PromptBook) if not isinstance(data.get(f.name), str)]
    if missing:
        raise ConfigurationError(f"prompt file {prompt_file} is missing: {', '.join(missing)}")
    return PromptBook(**{f.name: data[f.name] for f in fields(PromptBook)})
