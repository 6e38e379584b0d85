from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError, field_validator
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from agentkit import AgentApp

from .agent import AgentLoop
from .assistant import ChatAssistant, PromptEnhancer
from .collaborators import (
    Deployer,
    FileStore,
    LocalFileStore,
    ModelTranslator,
    ShellRunner,
    SubprocessShellRunner,
    Translator,
    VercelDeployer,
)
from .config import Settings, configure_logging
from .errors import (
    ConfigurationError,
    CorrectionExhaustedError,
    InvalidRequestError,
    ProviderError,
    QuotaExceededError,
    StorageError,
    TransientUnavailableError,
)
from .gateway import ModelGateway
from .handlers import build_registry
from .models import OperationMode, ToolCall, ToolContext
from .prompts import PromptBook, load_prompts
from .retry import RetryExecutor
from .store import ConversationStore
from .tools import DEPLOY_PROJECT, ToolRegistry

logger = logging.getLogger(__name__)

AGENT_NAME = "site-builder"

M = TypeVar("M", bound=BaseModel)


# ------------------------------
# Request models
# ------------------------------


def _required_text(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    return value.strip()


class ImageRef(BaseModel):
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    alt: str = ""


class BuildRequest(BaseModel):
    description: str
    projectName: str
    images: Optional[Dict[str, ImageRef]] = None

    @field_validator("description", "projectName")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


class UpdateRequest(BaseModel):
    description: str
    projectName: str

    @field_validator("description", "projectName")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


class DeployRequest(BaseModel):
    projectName: str
    siteName: Optional[str] = None

    @field_validator("projectName")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


class ChatRequest(BaseModel):
    message: str
    currentProject: Optional[str] = None
    sessionId: Optional[str] = None

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


class EnhanceRequest(BaseModel):
    prompt: str
    type: str = "build"

    @field_validator("prompt")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


# ------------------------------
# Service wiring
# ------------------------------


@dataclass
class Services:
    settings: Settings
    prompts: PromptBook
    store: ConversationStore
    gateway: ModelGateway
    files: FileStore
    deployer: Deployer
    translator: Translator
    shell: ShellRunner
    registry: ToolRegistry
    retry: RetryExecutor
    agent: AgentLoop
    assistant: ChatAssistant
    enhancer: PromptEnhancer


def build_services(
    settings: Settings,
    *,
    gateway: Optional[ModelGateway] = None,
    files: Optional[FileStore] = None,
    deployer: Optional[Deployer] = None,
    translator: Optional[Translator] = None,
    shell: Optional[ShellRunner] = None,
    retry: Optional[RetryExecutor] = None,
) -> Services:
    prompts = load_prompts(settings.prompts_path)
    store = ConversationStore(chat_limit=settings.chat_history_limit)
    gateway = gateway or ModelGateway(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        model=settings.openrouter_model,
        fallback_model=settings.openrouter_fallback_model,
        temperature=settings.openrouter_temperature,
        max_tokens=settings.openrouter_max_tokens,
        site_url=settings.openrouter_site_url,
        app_name=settings.openrouter_app_name,
        timeout=settings.openrouter_timeout,
    )
    files = files or LocalFileStore(settings.workspace_root)
    deployer = deployer or VercelDeployer(settings.vercel_token, api_url=settings.vercel_api_url)
    translator = translator or ModelTranslator(gateway, prompts)
    shell = shell or SubprocessShellRunner(
        settings.workspace_root,
        enabled=settings.shell_enabled,
        allowed_executables=settings.shell_allowed_executables,
        timeout=settings.shell_timeout,
    )
    registry = build_registry(
        files=files, deployer=deployer, translator=translator, shell=shell, prompts=prompts
    )
    retry = retry or RetryExecutor(settings.retry_attempts, settings.retry_base_delay_ms)
    agent = AgentLoop(
        store=store,
        gateway=gateway,
        registry=registry,
        retry=retry,
        files=files,
        prompts=prompts,
        max_corrections=settings.max_corrections,
    )
    return Services(
        settings=settings,
        prompts=prompts,
        store=store,
        gateway=gateway,
        files=files,
        deployer=deployer,
        translator=translator,
        shell=shell,
        registry=registry,
        retry=retry,
        agent=agent,
        assistant=ChatAssistant(store=store, gateway=gateway, files=files, prompts=prompts),
        enhancer=PromptEnhancer(gateway, prompts),
    )


# ------------------------------
# Error mapping
# ------------------------------

OVERLOADED_MESSAGE = "The AI model is currently overloaded. Please try again in a few moments."
QUOTA_MESSAGE = "API quota exceeded. Please try again later."
INVALID_MESSAGE = "Invalid request. Please rephrase your description and try again."
GAVE_UP_MESSAGE = "The AI model could not complete this request. Please rephrase it and try again."
CONFIG_MESSAGE = "The builder is not configured correctly. Please contact the administrator."
PROVIDER_MESSAGE = "The AI service returned an error. Please try again later."
UNREACHABLE_MESSAGE = "The AI service could not be reached. Please try again later."


def error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, TransientUnavailableError):
        status, message = 503, OVERLOADED_MESSAGE
    elif isinstance(exc, QuotaExceededError):
        status, message = 429, QUOTA_MESSAGE
    elif isinstance(exc, InvalidRequestError):
        status, message = 400, INVALID_MESSAGE
    elif isinstance(exc, CorrectionExhaustedError):
        status, message = 502, GAVE_UP_MESSAGE
    elif isinstance(exc, ConfigurationError):
        status, message = 500, CONFIG_MESSAGE
    elif isinstance(exc, ProviderError):
        status, message = 502, PROVIDER_MESSAGE
    else:
        status, message = 502, UNREACHABLE_MESSAGE
    if status >= 500 and not isinstance(exc, (ProviderError, httpx.HTTPError)):
        logger.error("[server] %s: %s", type(exc).__name__, exc)
    else:
        logger.warning("[server] %s: %s", type(exc).__name__, exc)
    return JSONResponse({"success": False, "error": message}, status_code=status)


_HANDLED = (ProviderError, ConfigurationError, CorrectionExhaustedError, httpx.HTTPError)


async def _parse(request: Request, model: Type[M]) -> Union[M, JSONResponse]:
    try:
        raw = await request.json()
    except ValueError:
        return JSONResponse({"success": False, "error": "invalid_json"}, status_code=400)
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        return JSONResponse(
            {
                "success": False,
                "error": "validation_error",
                "details": e.errors(include_url=False, include_context=False, include_input=False),
            },
            status_code=422,
        )


def _acting_user(request: Request) -> Optional[str]:
    user = request.headers.get("x-user-id", "").strip()
    return user or None


def describe_images(prompts: PromptBook, images: Dict[str, ImageRef]) -> str:
    lines = []
    for section, image in images.items():
        size = f" ({image.width}x{image.height})" if image.width and image.height else ""
        lines.append(f'- {section} section: Use image from {image.url}{size} with alt text "{image.alt}"')
    return prompts.render("image_context", images="\n".join(lines))


# ------------------------------
# Routes
# ------------------------------


class BuilderRoutes:
    def __init__(self, services: Services) -> None:
        self.services = services

    async def build(self, request: Request) -> Response:
        body = await _parse(request, BuildRequest)
        if isinstance(body, JSONResponse):
            return body
        description = body.description
        if body.images:
            description = f"{description}\n\n{describe_images(self.services.prompts, body.images)}"
        try:
            result = await self.services.agent.run(
                description, body.projectName, OperationMode.CREATE, _acting_user(request)
            )
        except _HANDLED as e:
            return error_response(e)
        return JSONResponse({"success": True, "result": result})

    async def update(self, request: Request) -> Response:
        body = await _parse(request, UpdateRequest)
        if isinstance(body, JSONResponse):
            return body
        try:
            result = await self.services.agent.run(
                body.description, body.projectName, OperationMode.UPDATE, _acting_user(request)
            )
        except _HANDLED as e:
            return error_response(e)
        return JSONResponse({"success": True, "result": result})

    async def deploy(self, request: Request) -> Response:
        body = await _parse(request, DeployRequest)
        if isinstance(body, JSONResponse):
            return body
        arguments: Dict[str, Any] = {"projectName": body.projectName}
        if body.siteName:
            arguments["siteName"] = body.siteName
        context = ToolContext(project_id=body.projectName, acting_user_id=_acting_user(request))
        try:
            result = await self.services.registry.invoke(ToolCall(DEPLOY_PROJECT, arguments), context)
        except _HANDLED as e:
            return error_response(e)
        if not result.ok:
            status = 404 if result.kind == "not_found" else 502
            return JSONResponse({"success": False, "error": result.message}, status_code=status)
        return JSONResponse({"success": True, "result": result.value})

    async def chat(self, request: Request) -> Response:
        body = await _parse(request, ChatRequest)
        if isinstance(body, JSONResponse):
            return body
        user = _acting_user(request)
        session_id = (
            body.sessionId
            or request.headers.get("x-session-id")
            or user
            or (request.client.host if request.client else None)
            or "default"
        )
        try:
            reply = await self.services.assistant.reply(session_id, body.message, body.currentProject, user)
        except _HANDLED as e:
            return error_response(e)
        return JSONResponse({"success": True, **reply.to_dict()})

    async def enhance_prompt(self, request: Request) -> Response:
        body = await _parse(request, EnhanceRequest)
        if isinstance(body, JSONResponse):
            return body
        try:
            enhanced = await self.services.enhancer.enhance(body.prompt, body.type)
        except _HANDLED as e:
            return error_response(e)
        return JSONResponse({"success": True, "originalPrompt": body.prompt, "enhancedPrompt": enhanced})

    async def list_projects(self, request: Request) -> Response:
        try:
            projects = await self.services.files.list_projects(_acting_user(request))
        except StorageError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)
        return JSONResponse({"success": True, "projects": projects})

    async def delete_project(self, request: Request) -> Response:
        project = request.path_params["projectName"]
        user = _acting_user(request)
        store = self.services.store
        async with store.project_guard(project, user):
            try:
                await self.services.files.delete_project(project, user)
            except StorageError as e:
                status = 404 if e.kind == "not_found" else 400 if e.kind == "invalid_path" else 500
                return JSONResponse({"success": False, "error": str(e)}, status_code=status)
            store.delete_project_history(project, user)
        logger.info("[server] deleted project %s", project)
        return JSONResponse({"success": True, "message": f'Project "{project}" deleted successfully'})

    async def project_files(self, request: Request) -> Response:
        project = request.path_params["projectName"]
        try:
            files = await self.services.files.read_all_files(project, _acting_user(request))
        except StorageError as e:
            status = 400 if e.kind == "invalid_path" else 500
            return JSONResponse({"success": False, "error": str(e)}, status_code=status)
        if not files:
            return JSONResponse(
                {"success": False, "error": f"Project {project} not found or has no files"},
                status_code=404,
            )
        return JSONResponse({"success": True, "files": files})

    def routes(self):
        return [
            Route("/api/build", self.build, methods=["POST"]),
            Route("/api/update", self.update, methods=["POST"]),
            Route("/api/deploy", self.deploy, methods=["POST"]),
            Route("/api/chat", self.chat, methods=["POST"]),
            Route("/api/enhance-prompt", self.enhance_prompt, methods=["POST"]),
            Route("/api/projects", self.list_projects, methods=["GET"]),
            Route("/api/projects/{projectName}", self.delete_project, methods=["DELETE"]),
            Route("/api/files/{projectName}", self.project_files, methods=["GET"]),
        ]


def _make_registration_payload(agent_address: str) -> Dict[str, Any]:
    task_schema = {
        "type": "object",
        "properties": {
            "description": {"type": "string"},
            "projectName": {"type": "string"},
        },
        "required": ["description", "projectName"],
        "additionalProperties": False,
    }
    return {
        "agent_name": AGENT_NAME,
        "agent_address": agent_address,
        "capabilities": {
            "role": "site_builder",
            "endpoints": ["/api/build", "/api/update", "/api/deploy", "/api/chat"],
            "version": "0.1.0",
            "mcp_tools": [
                {
                    "name": "build_website",
                    "description": "Generate a new three-file website project from a description.",
                    "inputSchema": task_schema,
                    "_meta": {"http": {"endpoint": "/api/build", "method": "POST", "returnType": "json"}},
                },
                {
                    "name": "update_website",
                    "description": "Apply a described change to an existing website project.",
                    "inputSchema": task_schema,
                    "_meta": {"http": {"endpoint": "/api/update", "method": "POST", "returnType": "json"}},
                },
            ],
        },
    }


def create_app(settings: Optional[Settings] = None, *, services: Optional[Services] = None) -> Starlette:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)
    agent_app = AgentApp(
        agent_name=AGENT_NAME,
        host=settings.host,
        port=settings.port,
        registry_url=settings.registry_url,
        heartbeat_interval=settings.heartbeat_interval,
        extra_routes=BuilderRoutes(services).routes(),
        make_registration_payload=_make_registration_payload,
        on_shutdown=[services.gateway.aclose],
    )
    agent_app.app.state.services = services
    return agent_app.app


def main() -> None:
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
