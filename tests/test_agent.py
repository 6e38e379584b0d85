import asyncio
import random

import pytest

from sitebuilder.agent import AgentLoop, ToolPolicy
from sitebuilder.collaborators import ModelTranslator
from sitebuilder.errors import (
    CorrectionExhaustedError,
    MalformedRequestError,
    QuotaExceededError,
    TransientUnavailableError,
    UnknownToolError,
)
from sitebuilder.gateway import TextAnswer
from sitebuilder.handlers import build_registry
from sitebuilder.models import OperationMode, ToolErr, ToolOk
from sitebuilder.retry import RetryExecutor

from .fakes import ScriptedGateway, assert_turns_paired, tool_request


def write(project, name, content="<p>x</p>"):
    return tool_request("writeToFile", call_id=f"w-{name}", filePath=f"projects/{project}/{name}", content=content)


@pytest.mark.asyncio
async def test_create_run_writes_three_files_and_answers(loop, gateway, store, files):
    gateway.push(
        write("site", "index.html"),
        write("site", "style.css", "body{}"),
        write("site", "script.js", "console.log(1)"),
        TextAnswer("Done"),
    )

    answer = await loop.run("Build a portfolio", project_id="site")

    assert answer == "Done"
    history = store.project_history("site")
    assert len(history) == 8
    assert history[0].text == "Build a portfolio"
    assert history[-1].text == "Done"
    assert all(isinstance(t.tool_result, ToolOk) for t in history if t.is_tool_result)
    assert set(files.projects[(None, "site")]) == {"index.html", "style.css", "script.js"}
    assert_turns_paired(history)
    assert gateway.system_policies[0].startswith("You are an elite")


@pytest.mark.asyncio
async def test_malformed_call_gets_one_correction_then_succeeds(loop, gateway, store):
    gateway.push(MalformedRequestError("MALFORMED_FUNCTION_CALL"), TextAnswer("ok"))

    assert await loop.run("Build it", project_id="site") == "ok"

    history = store.project_history("site")
    assert len(history) == 3
    assert history[0].text == "Build it"
    assert history[2].text == "ok"
    assert "writeToFile(filePath, content)" in history[1].text
    assert len(gateway.generate_calls) == 2


@pytest.mark.asyncio
async def test_update_mode_rejects_the_create_tool(loop, gateway, store, files):
    files.seed("site", {"index.html": "<h1>old</h1>", "style.css": "body{color:red}", "script.js": ""})
    gateway.push(write("site", "index.html"), TextAnswer("fixed"))

    assert await loop.run("Make it blue", project_id="site", mode=OperationMode.UPDATE) == "fixed"

    assert files.saves == []
    history = store.project_history("site")
    assert not any(t.is_tool_call for t in history)
    assert "You cannot use writeToFile for updates" in history[-2].text


@pytest.mark.asyncio
async def test_update_mode_rejects_tools_outside_the_allowed_set(loop, gateway, store, deployer):
    gateway.push(tool_request("deployProject", projectName="site"), TextAnswer("ok"))

    await loop.run("Tweak it", project_id="site", mode="update")

    assert deployer.calls == []
    correction = store.project_history("site")[-2].text
    assert "You used deployProject" in correction
    assert "updateProjectFiles" in correction


@pytest.mark.asyncio
async def test_update_mode_allows_the_update_tool(loop, gateway, store, files):
    files.seed("site", {"index.html": "<h1>old</h1>"})
    gateway.push(
        tool_request("updateProjectFiles", projectName="site", updates={"index.html": "<h1>new</h1>"}),
        TextAnswer("updated"),
    )

    await loop.run("New heading", project_id="site", mode=OperationMode.UPDATE)

    assert files.projects[(None, "site")]["index.html"] == "<h1>new</h1>"
    result = [t for t in store.project_history("site") if t.is_tool_result][0].tool_result
    assert result == ToolOk({"index.html": "Updated successfully"})


@pytest.mark.asyncio
async def test_update_mode_seeds_file_summary_and_stylesheet(loop, gateway, store, files):
    files.seed("site", {"index.html": "<h1>hi</h1>", "style.css": "h1{color:red}"})

    await loop.run("Make the heading green", project_id="site", mode=OperationMode.UPDATE)

    sent = gateway.generate_calls[0]
    assert len(sent) == 3
    assert "HTML: Present" in sent[0].text
    assert "CSS: Present" in sent[0].text
    assert "JavaScript: Missing" in sent[0].text
    assert "h1{color:red}" in sent[1].text
    assert sent[2].text == "Make the heading green"


@pytest.mark.asyncio
async def test_update_seeding_skips_missing_stylesheet_and_read_failures(loop, gateway, files):
    files.seed("site", {"index.html": "<h1>hi</h1>"})
    await loop.run("change", project_id="site", mode=OperationMode.UPDATE)
    assert len(gateway.generate_calls[0]) == 2

    files.fail_reads = True
    await loop.run("change again", project_id="other", mode=OperationMode.UPDATE)
    assert [t.text for t in gateway.generate_calls[1]] == ["change again"]


@pytest.mark.asyncio
async def test_corrections_are_capped(loop, gateway, store):
    gateway.push(*[MalformedRequestError("bad") for _ in range(4)])

    with pytest.raises(CorrectionExhaustedError) as info:
        await loop.run("Build it", project_id="site")

    assert info.value.corrections == 3
    assert store.project_history("site") == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_without_touching_history(loop, gateway, store, sleep):
    gateway.push(TransientUnavailableError("overloaded", status_code=503), TextAnswer("ok"))

    assert await loop.run("Build it", project_id="site") == "ok"

    assert sleep.delays == [1.0]
    assert len(gateway.generate_calls[0]) == len(gateway.generate_calls[1]) == 1
    assert len(store.project_history("site")) == 2


@pytest.mark.asyncio
async def test_exhausted_retries_surface_and_leave_history_untouched(loop, gateway, store):
    store.set_project_history("site", [])
    gateway.push(*[TransientUnavailableError("overloaded", status_code=503) for _ in range(3)])

    with pytest.raises(TransientUnavailableError):
        await loop.run("Build it", project_id="site")

    assert store.project_history("site") == []


@pytest.mark.asyncio
async def test_non_transient_provider_errors_propagate(loop, gateway):
    gateway.push(QuotaExceededError("quota", status_code=429))
    with pytest.raises(QuotaExceededError):
        await loop.run("Build it")
    assert len(gateway.generate_calls) == 1


@pytest.mark.asyncio
async def test_tool_failures_are_fed_back_as_observations(loop, gateway, store):
    gateway.push(
        tool_request("writeToFile", filePath="index.html", content="x"),
        TextAnswer("I could not save that"),
    )

    await loop.run("Build it", project_id="site")

    history = store.project_history("site")
    assert history[2].tool_result == ToolErr(
        "invalid_path", "Invalid file path. Expected format: projects/projectName/fileName"
    )
    assert gateway.generate_calls[1][-1].rendered_result().startswith("Error: Invalid file path")


@pytest.mark.asyncio
async def test_unknown_tool_is_a_configuration_error(loop, gateway):
    gateway.push(tool_request("searchImages", query="cats"))
    with pytest.raises(UnknownToolError):
        await loop.run("Build it")


@pytest.mark.asyncio
async def test_history_carries_over_between_runs(loop, gateway, store):
    await loop.run("first", project_id="site")
    await loop.run("second", project_id="site")

    assert [t.text for t in store.project_history("site")] == ["first", "done", "second", "done"]
    assert len(gateway.generate_calls[1]) == 3


@pytest.mark.asyncio
async def test_acting_user_scopes_tool_calls(loop, gateway, files):
    gateway.push(write("site", "index.html"), TextAnswer("ok"))
    await loop.run("Build it", project_id="site", acting_user_id="user-7")
    assert files.saves == [("site", "index.html", "user-7")]


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(5))
async def test_every_tool_call_is_paired_with_its_result(store, registry, files, prompts, sleep, seed):
    rng = random.Random(seed)
    script = []
    for i in range(12):
        pick = rng.choice(["write", "bad_path", "malformed", "list", "deploy"])
        if pick == "write":
            script.append(write("site", f"page{i}.html"))
        elif pick == "bad_path":
            script.append(tool_request("writeToFile", call_id=f"b{i}", filePath="nowhere", content="x"))
        elif pick == "malformed":
            script.append(MalformedRequestError("bad call"))
        elif pick == "list":
            script.append(tool_request("listProjects", call_id=f"l{i}"))
        else:
            script.append(tool_request("deployProject", call_id=f"d{i}", projectName="site"))
    script.append(TextAnswer("finished"))
    mode = OperationMode.UPDATE if seed % 2 else OperationMode.CREATE

    gateway = ScriptedGateway(script)
    loop = AgentLoop(
        store=store,
        gateway=gateway,
        registry=registry,
        retry=RetryExecutor(1, 0, sleep=sleep),
        files=files,
        prompts=prompts,
        max_corrections=50,
    )
    await loop.run("go", project_id="site", mode=mode)

    for sent in gateway.generate_calls:
        assert_turns_paired(sent)
    assert_turns_paired(store.project_history("site"))


class GatedGateway(ScriptedGateway):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def generate(self, history, system_policy, catalog, params=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.release.wait()
            return TextAnswer(f"answer {len(self.generate_calls)}")
        finally:
            self.generate_calls.append(list(history))
            self.active -= 1


@pytest.mark.asyncio
async def test_runs_on_the_same_project_are_serialized(store, registry, files, prompts, sleep):
    gateway = GatedGateway()
    loop = AgentLoop(
        store=store, gateway=gateway, registry=registry, retry=RetryExecutor(sleep=sleep), files=files, prompts=prompts
    )

    first = asyncio.create_task(loop.run("one", project_id="site"))
    second = asyncio.create_task(loop.run("two", project_id="site"))
    other = asyncio.create_task(loop.run("three", project_id="elsewhere"))
    await asyncio.sleep(0.01)
    assert gateway.max_active == 2
    gateway.release.set()
    await asyncio.gather(first, second, other)

    assert gateway.max_active == 2
    texts = [t.text for t in store.project_history("site")]
    assert texts[0] == "one" and texts[2] == "two"
    assert len(texts) == 4


def test_policy_primary_tool():
    policy = ToolPolicy()
    assert policy.primary_tool(OperationMode.CREATE) == "writeToFile"
    assert policy.primary_tool(OperationMode.UPDATE) == "updateProjectFiles"


@pytest.mark.asyncio
async def test_same_project_name_for_different_users_keeps_separate_histories(loop, gateway, store):
    gateway.push(TextAnswer("alice answer"), TextAnswer("bob answer"))

    await loop.run("alice secret brief", project_id="portfolio", acting_user_id="alice")
    await loop.run("bob brief", project_id="portfolio", acting_user_id="bob")

    assert [t.text for t in gateway.generate_calls[1]] == ["bob brief"]
    assert [t.text for t in store.project_history("portfolio", "alice")] == ["alice secret brief", "alice answer"]
    assert [t.text for t in store.project_history("portfolio", "bob")] == ["bob brief", "bob answer"]
    assert store.lock_count == 0


@pytest.mark.asyncio
async def test_translation_backend_failure_is_fed_back_to_model(store, files, deployer, shell, prompts, sleep):
    backend = ScriptedGateway()
    backend.push_completion(QuotaExceededError("quota", status_code=429))
    registry = build_registry(
        files=files,
        deployer=deployer,
        translator=ModelTranslator(backend, prompts),
        shell=shell,
        prompts=prompts,
    )
    gateway = ScriptedGateway(
        [tool_request("translateContent", text="Welcome", targetLanguage="hindi"), TextAnswer("kept English")]
    )
    loop = AgentLoop(
        store=store, gateway=gateway, registry=registry, retry=RetryExecutor(sleep=sleep), files=files, prompts=prompts
    )

    assert await loop.run("Build it in Hindi", project_id="site") == "kept English"

    result = store.project_history("site")[2].tool_result
    assert isinstance(result, ToolErr)
    assert result.kind == "translation_failed"
    assert "quota" in result.message
