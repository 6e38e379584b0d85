from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Union

from .collaborators import EXPECTED_FILES, FileStore
from .errors import CorrectionExhaustedError, MalformedRequestError, ToolExecutionError
from .gateway import GenerationParams, ModelGateway, Outcome, TextAnswer
from .models import OperationMode, ToolCall, ToolContext, Turn
from .prompts import PromptBook
from .retry import RetryExecutor
from .store import ConversationStore
from .tools import LIST_PROJECTS, READ_PROJECT_FILES, UPDATE_PROJECT_FILES, WRITE_FILE, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_CORRECTIONS = 5


@dataclass(frozen=True)
class ToolPolicy:
    """Which tools each operation mode may execute."""

    create_tool: str = WRITE_FILE
    update_tool: str = UPDATE_PROJECT_FILES
    update_allowed: FrozenSet[str] = field(
        default_factory=lambda: frozenset({UPDATE_PROJECT_FILES, READ_PROJECT_FILES, LIST_PROJECTS})
    )

    def primary_tool(self, mode: OperationMode) -> str:
        return self.update_tool if mode is OperationMode.UPDATE else self.create_tool


class AgentLoop:
    """Drives the model through tool calls until it answers in plain text.

    One run: seed the conversation, then generate -> dispatch -> generate
    until a text answer arrives. Malformed tool calls and tools the current
    mode forbids are answered with a corrective user turn instead of being
    executed; after `max_corrections` of those the run fails.
    """

    def __init__(
        self,
        *,
        store: ConversationStore,
        gateway: ModelGateway,
        registry: ToolRegistry,
        retry: RetryExecutor,
        files: FileStore,
        prompts: PromptBook,
        policy: Optional[ToolPolicy] = None,
        max_corrections: int = DEFAULT_MAX_CORRECTIONS,
        params: Optional[GenerationParams] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.registry = registry
        self.retry = retry
        self.files = files
        self.prompts = prompts
        self.policy = policy or ToolPolicy()
        self.max_corrections = max_corrections
        self.params = params

    async def run(
        self,
        problem: str,
        project_id: Optional[str] = None,
        mode: Union[OperationMode, str] = OperationMode.CREATE,
        acting_user_id: Optional[str] = None,
    ) -> str:
        mode = OperationMode(mode)
        async with self.store.project_guard(project_id, acting_user_id):
            return await self._run_locked(problem, project_id, mode, acting_user_id)

    async def _run_locked(
        self,
        problem: str,
        project_id: Optional[str],
        mode: OperationMode,
        acting_user_id: Optional[str],
    ) -> str:
        history: List[Turn] = list(self.store.project_history(project_id, acting_user_id))
        if mode is OperationMode.UPDATE and project_id:
            await self._seed_update_context(history, project_id, acting_user_id)
        history.append(Turn.user_text(problem))

        context = ToolContext(project_id=project_id, acting_user_id=acting_user_id)
        catalog = self.registry.catalog()
        corrections = 0
        step = 0

        logger.info("[agent] run project=%s mode=%s history=%d", project_id, mode.value, len(history))
        while True:
            step += 1
            try:
                outcome: Outcome = await self.retry.run(
                    lambda: self.gateway.generate(history, self.prompts.system_policy, catalog, self.params)
                )
            except MalformedRequestError as e:
                logger.warning("[agent] step %d: malformed tool call (%s); injecting correction", step, e)
                corrections = self._inject_correction(
                    history,
                    corrections,
                    self.prompts.render("malformed_correction", shape=self._call_shape(mode)),
                )
                continue

            if isinstance(outcome, TextAnswer):
                history.append(Turn.model_text(outcome.text))
                self.store.set_project_history(project_id, history, acting_user_id)
                logger.info("[agent] run project=%s done after %d step(s)", project_id, step)
                return outcome.text

            call = outcome.call
            rejection = self._policy_rejection(call, mode, project_id)
            if rejection is not None:
                logger.warning("[agent] step %d: %s not allowed in %s mode", step, call.name, mode.value)
                corrections = self._inject_correction(history, corrections, rejection)
                continue

            logger.info("[agent] step %d: dispatching %s", step, call.name)
            result = await self.registry.invoke(call, context)
            history.append(Turn.model_tool_call(call))
            history.append(Turn.user_tool_result(call, result))

    async def _seed_update_context(
        self, history: List[Turn], project_id: str, acting_user_id: Optional[str]
    ) -> None:
        try:
            existing = await self.files.read_all_files(project_id, acting_user_id)
        except (ToolExecutionError, OSError) as e:
            logger.warning("[agent] could not read %s for update context: %s", project_id, e)
            return
        if not existing:
            return

        html, css, js = (("Present" if existing.get(name) else "Missing") for name in EXPECTED_FILES)
        history.append(
            Turn.user_text(
                self.prompts.render("update_context", project=project_id, html=html, css=css, js=js)
            )
        )
        if existing.get("style.css"):
            history.append(Turn.user_text(self.prompts.render("style_context", css=existing["style.css"])))

    def _policy_rejection(
        self, call: ToolCall, mode: OperationMode, project_id: Optional[str]
    ) -> Optional[str]:
        if mode is not OperationMode.UPDATE:
            return None
        policy = self.policy
        if call.name == policy.create_tool:
            return self.prompts.render(
                "create_tool_in_update",
                create_tool=policy.create_tool,
                update_tool=policy.update_tool,
                project=project_id or "",
            )
        if call.name not in policy.update_allowed:
            return self.prompts.render(
                "wrong_tool_in_update",
                tool=call.name,
                update_tool=policy.update_tool,
                allowed=", ".join(sorted(policy.update_allowed)),
            )
        return None

    def _inject_correction(self, history: List[Turn], corrections: int, text: str) -> int:
        corrections += 1
        if corrections > self.max_corrections:
            raise CorrectionExhaustedError(self.max_corrections)
        history.append(Turn.user_text(text))
        return corrections

    def _call_shape(self, mode: OperationMode) -> str:
        name = self.policy.primary_tool(mode)
        if name not in self.registry:
            return name
        declaration = self.registry.resolve(name).declaration
        params = ", ".join(
            f"{p}{'' if p in declaration.required else '?'}" for p in declaration.parameter_names
        )
        return f"{name}({params})"
