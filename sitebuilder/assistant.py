from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .collaborators import FileStore
from .errors import ProviderError, ToolExecutionError
from .gateway import ModelGateway
from .intent import Action, IntentClassifier, KeywordIntentRouter
from .models import MODEL, USER
from .prompts import PromptBook
from .store import ChatSession, ConversationStore

logger = logging.getLogger(__name__)

CHAT_TEMPERATURE = 0.9
CHAT_MAX_TOKENS = 1500
ENHANCE_TEMPERATURE = 0.9
ENHANCE_MAX_TOKENS = 600

_SUGGESTED_NAME_PATTERNS = (
    re.compile(r"project[:\s]+([a-zA-Z0-9_-]+)", re.IGNORECASE),
    re.compile(r"suggest[:\s]+([a-zA-Z0-9_-]+)", re.IGNORECASE),
    re.compile(r"name[:\s]+([a-zA-Z0-9_-]+)", re.IGNORECASE),
)


@dataclass(frozen=True)
class ChatReply:
    text: str
    action: Action
    project_name: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.text,
            "action": self.action.value,
            "projectName": self.project_name,
            "description": self.description,
        }


def suggest_project_name(reply_text: str) -> Optional[str]:
    for pattern in _SUGGESTED_NAME_PATTERNS:
        match = pattern.search(reply_text or "")
        if match:
            return match.group(1)
    return None


def format_chat_history(session: ChatSession) -> List[Dict[str, str]]:
    return [
        {"role": "assistant" if entry.role == MODEL else "user", "content": entry.text}
        for entry in session
    ]


class ChatAssistant:
    """Conversational front door: answers questions and routes intents."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        gateway: ModelGateway,
        files: FileStore,
        prompts: PromptBook,
        router: Optional[IntentClassifier] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.files = files
        self.prompts = prompts
        self.router = router or KeywordIntentRouter()

    async def _available_projects(self, owner_id: Optional[str]) -> List[str]:
        try:
            return await self.files.list_projects(owner_id)
        except (ToolExecutionError, OSError) as e:
            logger.warning("[chat] could not list projects: %s", e)
            return []

    async def reply(
        self,
        session_id: str,
        message: str,
        current_project: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> ChatReply:
        session = self.store.chat_session(session_id)
        session.append(USER, message)

        projects = await self._available_projects(owner_id)
        intent = self.router.classify(message, projects)
        mentioned = intent.project_name

        if mentioned and mentioned not in projects and intent.action is Action.UPDATE_PROJECT:
            text = self.prompts.render(
                "project_not_found",
                project=mentioned,
                projects=", ".join(projects) if projects else "none yet",
            )
            session.append(MODEL, text)
            return ChatReply(text=text, action=Action.SHOW_PROJECTS)

        focus = mentioned if mentioned in projects else current_project
        system = self.prompts.render(
            "chat_system",
            current_project=focus or "None",
            projects=", ".join(projects) if projects else "No projects yet",
        )
        messages = [{"role": "system", "content": system}, *format_chat_history(session)]

        try:
            text = await self.gateway.complete(
                messages, temperature=CHAT_TEMPERATURE, max_tokens=CHAT_MAX_TOKENS
            )
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("[chat] model reply failed: %s", e)
            text = self.prompts.render("chat_unavailable")
            session.append(MODEL, text)
            return ChatReply(text=text, action=Action.GENERAL_RESPONSE)

        project_name: Optional[str] = None
        if intent.action is Action.CREATE_PROJECT:
            project_name = suggest_project_name(text)
        elif intent.action in (Action.UPDATE_PROJECT, Action.DEPLOY_PROJECT):
            project_name = focus

        session.append(MODEL, text)
        return ChatReply(text=text, action=intent.action, project_name=project_name)


class PromptEnhancer:
    """Rewrites a short site request as a first-person description."""

    def __init__(self, gateway: ModelGateway, prompts: PromptBook) -> None:
        self.gateway = gateway
        self.prompts = prompts

    async def enhance(self, prompt: str, kind: str = "build") -> str:
        messages = [
            {"role": "system", "content": self.prompts.render("enhance_system")},
            {"role": "user", "content": self.prompts.render("enhance_user", kind=kind, prompt=prompt)},
        ]
        try:
            text = await self.gateway.complete(
                messages, temperature=ENHANCE_TEMPERATURE, max_tokens=ENHANCE_MAX_TOKENS
            )
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("[enhance] falling back to original prompt: %s", e)
            return prompt
        if not text.strip():
            logger.warning("[enhance] empty enhancement; using original prompt")
            return prompt
        return text.strip()
