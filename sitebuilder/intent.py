from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence, Tuple


class Action(str, Enum):
    CREATE_PROJECT = "create_project"
    SHOW_PROJECTS = "show_projects"
    UPDATE_PROJECT = "update_project"
    DEPLOY_PROJECT = "deploy_project"
    GENERAL_RESPONSE = "general_response"


@dataclass(frozen=True)
class Intent:
    action: Action
    project_name: Optional[str] = None


class IntentClassifier(Protocol):
    def classify(self, message: str, project_names: Iterable[str]) -> Intent: ...


PROJECT_NAME_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(rf"{verb}\s+([a-zA-Z0-9_-]+)", re.IGNORECASE)
    for verb in ("update", "modify", "change", "edit", "improve", "fix")
)

# Checked top to bottom; the first group with a matching phrase wins.
ACTION_KEYWORDS: Tuple[Tuple[Action, Tuple[str, ...]], ...] = (
    (
        Action.CREATE_PROJECT,
        (
            "build website",
            "create website",
            "new website",
            "start a website",
            "make a website",
            "build a site",
            "create a site",
        ),
    ),
    (
        Action.SHOW_PROJECTS,
        ("show", "my projects", "list projects", "see my websites", "what projects", "display projects"),
    ),
    (Action.UPDATE_PROJECT, ("update", "modify", "change", "edit", "improve", "fix")),
    (
        Action.DEPLOY_PROJECT,
        ("deploy", "publish", "go live", "put online", "vercel", "host", "upload", "make live"),
    ),
    (
        Action.GENERAL_RESPONSE,
        (
            "hi",
            "hello",
            "hey",
            "good morning",
            "good afternoon",
            "good evening",
            "thanks",
            "thank you",
            "bye",
            "goodbye",
            "see you",
            "appreciate",
        ),
    ),
)


def extract_project_name(message: str, project_names: Iterable[str]) -> Optional[str]:
    lowered = (message or "").lower()
    for name in project_names:
        if name and name.lower() in lowered:
            return name
    for pattern in PROJECT_NAME_PATTERNS:
        match = pattern.search(message or "")
        if match:
            return match.group(1)
    return None


def classify_action(message: str) -> Action:
    lowered = (message or "").lower()
    for action, phrases in ACTION_KEYWORDS:
        if any(phrase in lowered for phrase in phrases):
            return action
    return Action.GENERAL_RESPONSE


class KeywordIntentRouter:
    """Deterministic keyword classifier for chat messages."""

    def classify(self, message: str, project_names: Iterable[str]) -> Intent:
        names: Sequence[str] = list(project_names or [])
        return Intent(action=classify_action(message), project_name=extract_project_name(message, names))
