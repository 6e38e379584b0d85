"""Shared fixtures for the site builder tests."""

from __future__ import annotations

import pytest

from sitebuilder.agent import AgentLoop
from sitebuilder.handlers import build_registry
from sitebuilder.prompts import load_prompts
from sitebuilder.retry import RetryExecutor
from sitebuilder.store import ConversationStore

from .fakes import EchoTranslator, FakeShell, MemoryFileStore, RecordingDeployer, RecordingSleep, ScriptedGateway


@pytest.fixture
def prompts():
    return load_prompts()


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def files():
    return MemoryFileStore()


@pytest.fixture
def deployer():
    return RecordingDeployer()


@pytest.fixture
def translator():
    return EchoTranslator()


@pytest.fixture
def shell():
    return FakeShell()


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def registry(files, deployer, translator, shell, prompts):
    return build_registry(files=files, deployer=deployer, translator=translator, shell=shell, prompts=prompts)


@pytest.fixture
def loop(store, gateway, registry, files, prompts, sleep):
    return AgentLoop(
        store=store,
        gateway=gateway,
        registry=registry,
        retry=RetryExecutor(3, 1000, sleep=sleep),
        files=files,
        prompts=prompts,
        max_corrections=3,
    )
