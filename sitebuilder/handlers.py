from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple

from .collaborators import Deployer, FileStore, ShellRunner, Translator, resolve_language
from .errors import StorageError
from .models import ToolContext, ToolErr, ToolOk, ToolResult
from .prompts import PromptBook
from .tools import (
    DEPLOY_PROJECT,
    EXECUTE_COMMAND,
    LIST_PROJECTS,
    READ_PROJECT_FILES,
    TRANSLATE_CONTENT,
    UPDATE_PROJECT_FILES,
    WRITE_FILE,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


def _string(description: str) -> Dict[str, Any]:
    return {"type": "string", "description": description}


EXECUTE_COMMAND_SCHEMA = {
    "type": "object",
    "properties": {"command": _string("Terminal command to execute")},
    "required": ["command"],
}

WRITE_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "filePath": _string("Path of the file, in the form projects/<projectName>/<fileName>"),
        "content": _string("Content to write in the file"),
    },
    "required": ["filePath", "content"],
}

LIST_PROJECTS_SCHEMA = {"type": "object", "properties": {}, "required": []}

READ_PROJECT_FILES_SCHEMA = {
    "type": "object",
    "properties": {"projectName": _string("Name of the project to read")},
    "required": ["projectName"],
}

UPDATE_PROJECT_FILES_SCHEMA = {
    "type": "object",
    "properties": {
        "projectName": _string("Name of the project to update"),
        "updates": {
            "type": "object",
            "description": (
                'Object with file names as keys and new content as values '
                '(e.g., {"index.html": "new content", "style.css": "new styles"})'
            ),
            "additionalProperties": {"type": "string"},
        },
    },
    "required": ["projectName", "updates"],
}

DEPLOY_PROJECT_SCHEMA = {
    "type": "object",
    "properties": {
        "projectName": _string("Name of the project to deploy"),
        "siteName": _string("Optional custom site name (a unique name is generated if omitted)"),
    },
    "required": ["projectName"],
}

TRANSLATE_CONTENT_SCHEMA = {
    "type": "object",
    "properties": {
        "text": _string("The text content to translate (HTML, headings, paragraphs or any text)"),
        "targetLanguage": _string(
            "Target language: hindi, bengali, telugu, marathi, tamil, gujarati, or kannada"
        ),
        "context": _string(
            'Context for translation (e.g. "website", "heading", "button", "paragraph")'
        ),
    },
    "required": ["text", "targetLanguage"],
}


def split_project_path(file_path: str) -> Tuple[str, str]:
    """Split `projects/<project>/<file>` into its project and file names."""
    parts = [p for p in re.split(r"[\\/]", file_path or "") if p]
    try:
        idx = parts.index("projects")
    except ValueError:
        idx = -1
    if idx == -1 or idx >= len(parts) - 2:
        raise StorageError(
            "Invalid file path. Expected format: projects/projectName/fileName",
            kind="invalid_path",
        )
    return parts[idx + 1], parts[idx + 2]


class BuilderTools:
    """Tool handlers backed by the external collaborators."""

    def __init__(
        self,
        *,
        files: FileStore,
        deployer: Deployer,
        translator: Translator,
        shell: ShellRunner,
        prompts: PromptBook,
    ) -> None:
        self.files = files
        self.deployer = deployer
        self.translator = translator
        self.shell = shell
        self.prompts = prompts

    async def execute_command(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        output = await self.shell.run(str(args["command"]))
        if output.returncode != 0:
            return ToolErr("command_failed", output.stderr.strip() or f"exit status {output.returncode}")
        return ToolOk(output.stdout.strip() or "Task executed completely")

    async def write_file(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        content = args["content"]
        if not isinstance(content, str):
            return ToolErr("invalid_arguments", "content must be a string")
        project, file_name = split_project_path(str(args["filePath"]))
        await self.files.save_file(project, file_name, content, ctx.acting_user_id)
        return ToolOk(f"Content written to {file_name} in project {project}")

    async def list_projects(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        return ToolOk(await self.files.list_projects(ctx.acting_user_id))

    async def read_project_files(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        project = str(args["projectName"])
        files = await self.files.read_all_files(project, ctx.acting_user_id)
        if not files:
            return ToolErr("not_found", f"Project {project} not found or has no files")
        return ToolOk(files)

    async def update_project_files(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        project = str(args["projectName"])
        updates = args["updates"]
        if not isinstance(updates, dict) or not updates:
            return ToolErr("invalid_arguments", "updates must be a non-empty object of file name to content")
        if not await self.files.exists(project, ctx.acting_user_id):
            return ToolErr("not_found", f"Project {project} not found")

        results: Dict[str, str] = {}
        for file_name, content in updates.items():
            if not isinstance(content, str):
                results[file_name] = "Failed: content must be a string"
                continue
            try:
                await self.files.save_file(project, str(file_name), content, ctx.acting_user_id)
                results[file_name] = "Updated successfully"
            except StorageError as e:
                results[file_name] = f"Failed: {e}"
        logger.info("[tools] updated %s: %s", project, results)
        return ToolOk(results)

    async def deploy_project(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        project = str(args["projectName"])
        site_name: Optional[str] = args.get("siteName") or None
        owner = ctx.acting_user_id
        if not await self.files.exists(project, owner):
            return ToolErr("not_found", f"Project {project} not found")

        files = await self.files.read_all_files(project, owner)
        files.pop("README.md", None)
        deployment = await self.deployer.deploy(project, files, owner, site_name=site_name)

        readme = self.prompts.render(
            "deployment_readme",
            project=project,
            url=deployment.url,
            deployment_id=deployment.deployment_id,
        )
        await self.files.save_file(project, "README.md", readme + "\n", owner)
        return ToolOk(
            {
                "url": deployment.url,
                "deploymentId": deployment.deployment_id,
                "message": f'Project "{project}" deployed. Live URL: {deployment.url}',
            }
        )

    async def translate_content(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        language = resolve_language(str(args["targetLanguage"]))
        translated = await self.translator.translate(
            str(args["text"]), str(args["targetLanguage"]), str(args.get("context") or "website")
        )
        return ToolOk(
            {
                "originalLanguage": "English",
                "targetLanguage": language,
                "translatedText": translated,
                "message": f"Successfully translated to {language}",
            }
        )

    def register(self, registry: ToolRegistry) -> ToolRegistry:
        registry.declare(
            EXECUTE_COMMAND,
            "Execute a single terminal command inside the project workspace",
            EXECUTE_COMMAND_SCHEMA,
            self.execute_command,
        )
        registry.declare(WRITE_FILE, "Write content into a file", WRITE_FILE_SCHEMA, self.write_file)
        registry.declare(LIST_PROJECTS, "List all available projects", LIST_PROJECTS_SCHEMA, self.list_projects)
        registry.declare(
            READ_PROJECT_FILES,
            "Read files from a specific project",
            READ_PROJECT_FILES_SCHEMA,
            self.read_project_files,
        )
        registry.declare(
            UPDATE_PROJECT_FILES,
            "Update existing project files with new content",
            UPDATE_PROJECT_FILES_SCHEMA,
            self.update_project_files,
        )
        registry.declare(
            DEPLOY_PROJECT,
            "Deploy a project to Vercel with automatic configuration",
            DEPLOY_PROJECT_SCHEMA,
            self.deploy_project,
        )
        registry.declare(
            TRANSLATE_CONTENT,
            "Translate website content to Indian languages (Hindi, Bengali, Telugu, Marathi, Tamil, "
            "Gujarati, Kannada). Use this when the user requests a website in a specific Indian language.",
            TRANSLATE_CONTENT_SCHEMA,
            self.translate_content,
        )
        return registry


def build_registry(
    *,
    files: FileStore,
    deployer: Deployer,
    translator: Translator,
    shell: ShellRunner,
    prompts: PromptBook,
) -> ToolRegistry:
    tools = BuilderTools(files=files, deployer=deployer, translator=translator, shell=shell, prompts=prompts)
    return tools.register(ToolRegistry())
