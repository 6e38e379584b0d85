"""Start the site builder as a subprocess and exercise its HTTP surface.

Without OPENROUTER_API_KEY only the model-free routes are checked. With a
key (and E2E_BUILD=1) a small site is built and its files are read back.
"""

import os
import sys
import time
import json
import tempfile
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.request import urlopen, Request
from urllib.error import HTTPError, URLError


REPO_ROOT = Path(__file__).resolve().parents[1]
BUILDER_HOST = os.getenv("BUILDER_HOST", "127.0.0.1")
BUILDER_PORT = int(os.getenv("BUILDER_PORT", "8010"))
BASE_URL = f"http://{BUILDER_HOST}:{BUILDER_PORT}"


def _http(method: str, url: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 5.0) -> Tuple[int, str]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = Request(
        url,
        data=data,
        method=method,
        headers={"User-Agent": "e2e-smoke-test", "Content-Type": "application/json"},
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.getcode(), resp.read().decode("utf-8", errors="ignore")
    except HTTPError as e:
        return e.code, e.read().decode("utf-8", errors="ignore")


def wait_for_health(timeout_seconds: int = 30) -> None:
    deadline = time.time() + timeout_seconds
    last_err: Optional[str] = None
    while time.time() < deadline:
        try:
            code, body = _http("GET", f"{BASE_URL}/health", timeout=2.0)
            if code == 200 and body.strip() == "ok":
                return
        except URLError as e:
            last_err = str(e)
        time.sleep(0.3)
    raise RuntimeError(f"Timeout waiting for {BASE_URL}/health. Last error: {last_err}")


def terminate_process(proc: subprocess.Popen, timeout_seconds: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        proc.kill()


def expect(code: int, body: str, status: int, what: str) -> Dict[str, Any]:
    if code != status:
        raise RuntimeError(f"{what}: expected {status}, got {code}: {body}")
    return json.loads(body) if body else {}


def main() -> int:
    workspace = tempfile.mkdtemp(prefix="sitebuilder_e2e_")
    env = os.environ.copy()
    env["WORKSPACE_ROOT"] = workspace
    env["BUILDER_HOST"] = BUILDER_HOST
    env["BUILDER_PORT"] = str(BUILDER_PORT)
    env.pop("REGISTRY_URL", None)

    proc = subprocess.Popen(
        [sys.executable, "-u", "-m", "sitebuilder.server"],
        cwd=str(REPO_ROOT),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    try:
        wait_for_health()

        data = expect(*_http("GET", f"{BASE_URL}/api/projects"), 200, "list projects")
        print(f"Projects in fresh workspace: {data['projects']}")

        expect(*_http("GET", f"{BASE_URL}/api/files/missing-site"), 404, "files of unknown project")
        expect(*_http("POST", f"{BASE_URL}/api/build", {"projectName": "x"}), 422, "build without description")
        expect(*_http("POST", f"{BASE_URL}/api/deploy", {"projectName": "missing-site"}), 404, "deploy unknown project")

        if env.get("OPENROUTER_API_KEY") and env.get("E2E_BUILD") == "1":
            project = "e2e-landing"
            description = os.getenv("E2E_GOAL", "A one-page landing site for a neighbourhood bakery")
            data = expect(
                *_http("POST", f"{BASE_URL}/api/build", {"description": description, "projectName": project}, timeout=600),
                200,
                "build",
            )
            print("\n=== Build answer ===")
            print(data["result"])

            files = expect(*_http("GET", f"{BASE_URL}/api/files/{project}"), 200, "read built files")["files"]
            print(f"Files written: {sorted(files)}")
            if "index.html" not in files:
                raise RuntimeError("build finished without an index.html")

            expect(*_http("DELETE", f"{BASE_URL}/api/projects/{project}"), 200, "delete project")
        else:
            print("Skipping model-backed build (set OPENROUTER_API_KEY and E2E_BUILD=1)")
    finally:
        terminate_process(proc)
        if proc.stdout is not None:
            print("\n=== Server output ===")
            print(proc.stdout.read())

    print("\nE2E smoke test completed successfully.")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        raise SystemExit(130)
