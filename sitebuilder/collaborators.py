from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shlex
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import httpx

from .errors import (
    CommandError,
    ConfigurationError,
    DeploymentError,
    ProviderError,
    StorageError,
    TranslationError,
)

logger = logging.getLogger(__name__)

EXPECTED_FILES = ("index.html", "style.css", "script.js")
SHARED_OWNER = "shared"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]*$")


# ------------------------------
# File storage
# ------------------------------


@runtime_checkable
class FileStore(Protocol):
    async def save_file(self, project: str, file: str, content: str, owner_id: Optional[str] = None) -> None: ...

    async def read_all_files(self, project: str, owner_id: Optional[str] = None) -> Dict[str, str]: ...

    async def exists(self, project: str, owner_id: Optional[str] = None) -> bool: ...

    async def delete_project(self, project: str, owner_id: Optional[str] = None) -> None: ...

    async def list_projects(self, owner_id: Optional[str] = None) -> List[str]: ...


def _validate_name(value: str, what: str) -> str:
    if not isinstance(value, str) or not _NAME_RE.match(value) or ".." in value:
        raise StorageError(f"invalid {what}: {value!r}", kind="invalid_path")
    return value


class LocalFileStore:
    """Projects stored as plain files under a workspace root.

    Layout: `<root>/<owner or "shared">/<project>/<file>`. Disk work runs in a
    worker thread.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()

    def _owner_dir(self, owner_id: Optional[str]) -> Path:
        owner = _validate_name(owner_id, "owner id") if owner_id else SHARED_OWNER
        return self.root / owner

    def _project_dir(self, project: str, owner_id: Optional[str]) -> Path:
        path = (self._owner_dir(owner_id) / _validate_name(project, "project name")).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise StorageError("path_outside_workspace", kind="invalid_path") from None
        return path

    def _write(self, target: Path, content: str) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"failed to write {target.parent.name}/{target.name}: {e}") from e

    def _read_dir(self, project_dir: Path) -> Dict[str, str]:
        if not project_dir.is_dir():
            return {}
        files: Dict[str, str] = {}
        for entry in sorted(project_dir.iterdir(), key=lambda p: p.name):
            if not entry.is_file():
                continue
            try:
                files[entry.name] = entry.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.debug("[files] skipping binary file %s/%s", project_dir.name, entry.name)
            except OSError as e:
                raise StorageError(f"failed to read {project_dir.name}/{entry.name}: {e}") from e
        return files

    @staticmethod
    def _has_files(project_dir: Path) -> bool:
        return project_dir.is_dir() and any(p.is_file() for p in project_dir.iterdir())

    @staticmethod
    def _remove(project_dir: Path) -> None:
        if not project_dir.is_dir():
            raise StorageError(f"Project {project_dir.name} not found", kind="not_found")
        try:
            shutil.rmtree(project_dir)
        except OSError as e:
            raise StorageError(f"failed to delete {project_dir.name}: {e}") from e

    @staticmethod
    def _subdirs(owner_dir: Path) -> List[str]:
        if not owner_dir.is_dir():
            return []
        return sorted(p.name for p in owner_dir.iterdir() if p.is_dir())

    async def save_file(self, project: str, file: str, content: str, owner_id: Optional[str] = None) -> None:
        target = self._project_dir(project, owner_id) / _validate_name(file, "file name")
        await asyncio.to_thread(self._write, target, content)
        logger.info("[files] wrote %s/%s (%d chars)", project, file, len(content))

    async def read_all_files(self, project: str, owner_id: Optional[str] = None) -> Dict[str, str]:
        return await asyncio.to_thread(self._read_dir, self._project_dir(project, owner_id))

    async def exists(self, project: str, owner_id: Optional[str] = None) -> bool:
        return await asyncio.to_thread(self._has_files, self._project_dir(project, owner_id))

    async def delete_project(self, project: str, owner_id: Optional[str] = None) -> None:
        await asyncio.to_thread(self._remove, self._project_dir(project, owner_id))
        logger.info("[files] deleted project %s", project)

    async def list_projects(self, owner_id: Optional[str] = None) -> List[str]:
        return await asyncio.to_thread(self._subdirs, self._owner_dir(owner_id))


# ------------------------------
# Deployment
# ------------------------------


@dataclass(frozen=True)
class Deployment:
    url: str
    deployment_id: str


@runtime_checkable
class Deployer(Protocol):
    async def deploy(
        self,
        project: str,
        files: Dict[str, str],
        owner_id: Optional[str] = None,
        site_name: Optional[str] = None,
    ) -> Deployment: ...


class VercelDeployer:
    def __init__(
        self,
        token: Optional[str],
        *,
        api_url: str = "https://api.vercel.com",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.token = (token or "").strip()
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _payload(self, project: str, files: Dict[str, str], site_name: Optional[str]) -> Dict[str, Any]:
        name = site_name or f"{project}-{int(time.time() * 1000)}"
        return {
            "name": name.lower(),
            "files": [{"file": file, "data": data} for file, data in files.items()],
            "projectSettings": {
                "framework": None,
                "devCommand": None,
                "buildCommand": None,
                "outputDirectory": None,
            },
        }

    async def _post(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await client.post(
            f"{self.api_url}/v13/deployments",
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
            err = data.get("error") if isinstance(data, dict) else None
            message = err.get("message") if isinstance(err, dict) else None
            raise DeploymentError(message or f"deployment failed with status {resp.status_code}")
        return data

    async def deploy(
        self,
        project: str,
        files: Dict[str, str],
        owner_id: Optional[str] = None,
        site_name: Optional[str] = None,
    ) -> Deployment:
        if not self.token:
            raise ConfigurationError("VERCEL_TOKEN is required for deployment")
        if not files:
            raise DeploymentError(f"No files found in project {project}", kind="not_found")

        payload = self._payload(project, files, site_name)
        if self._client is not None:
            data = await self._post(self._client, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                data = await self._post(client, payload)

        url = str(data.get("url") or "")
        if url and not url.startswith("http"):
            url = f"https://{url}"
        logger.info("[deploy] %s deployed to %s", project, url)
        return Deployment(url=url, deployment_id=str(data.get("id") or ""))


# ------------------------------
# Translation
# ------------------------------

SUPPORTED_LANGUAGES: Dict[str, str] = {
    "hindi": "Hindi (हिन्दी)",
    "bengali": "Bengali (বাংলা)",
    "telugu": "Telugu (తెలుగు)",
    "marathi": "Marathi (मराठी)",
    "tamil": "Tamil (தமிழ்)",
    "gujarati": "Gujarati (ગુજરાતી)",
    "kannada": "Kannada (ಕನ್ನಡ)",
    "english": "English",
}


@runtime_checkable
class Translator(Protocol):
    async def translate(self, text: str, target_language: str, context: str = "website") -> str: ...


def resolve_language(target_language: str) -> str:
    key = (target_language or "").strip().lower()
    if key not in SUPPORTED_LANGUAGES:
        raise TranslationError(
            f"Language '{target_language}' is not supported. "
            f"Supported languages: {', '.join(SUPPORTED_LANGUAGES)}",
            kind="unsupported_language",
        )
    return SUPPORTED_LANGUAGES[key]


class ModelTranslator:
    """Translation through the same model backend the agent uses."""

    def __init__(self, gateway: Any, prompts: Any, *, temperature: float = 0.3) -> None:
        self._gateway = gateway
        self._prompts = prompts
        self.temperature = temperature

    async def translate(self, text: str, target_language: str, context: str = "website") -> str:
        language = resolve_language(target_language)
        prompt = self._prompts.render("translation", context=context or "website", language=language, text=text)
        try:
            translated = await self._gateway.complete(
                [{"role": "user", "content": prompt}], temperature=self.temperature
            )
        except (ProviderError, httpx.HTTPError) as e:
            raise TranslationError(f"{language} translation failed: {e}") from e
        if not translated.strip():
            raise TranslationError(f"model returned an empty {language} translation")
        return translated.strip()


# ------------------------------
# Shell commands
# ------------------------------


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    returncode: int


@runtime_checkable
class ShellRunner(Protocol):
    async def run(self, command: str) -> CommandOutput: ...


class SubprocessShellRunner:
    """Runs a single allowlisted executable inside the workspace.

    Commands are split with shlex and never passed through a shell.
    """

    def __init__(
        self,
        cwd: str,
        *,
        enabled: bool = False,
        allowed_executables: Iterable[str] = ("ls", "cat", "echo", "pwd", "mkdir", "touch"),
        timeout: int = 30,
    ) -> None:
        self.cwd = Path(cwd).resolve()
        self.enabled = enabled
        self.allowed_executables = frozenset(allowed_executables)
        self.timeout = timeout

    async def run(self, command: str) -> CommandOutput:
        if not self.enabled:
            raise CommandError("command execution is disabled on this server", kind="disabled")
        try:
            args = shlex.split(command or "")
        except ValueError as e:
            raise CommandError(f"could not parse command: {e}", kind="invalid_command") from e
        if not args:
            raise CommandError("command is empty", kind="invalid_command")
        if os.path.basename(args[0]) not in self.allowed_executables:
            raise CommandError(f"executable not allowed: {args[0]}", kind="executable_not_allowed")

        self.cwd.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env.setdefault("CI", "1")
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(self.cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise CommandError("process_timeout", kind="timeout") from None

        return CommandOutput(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            returncode=proc.returncode if proc.returncode is not None else -1,
        )
