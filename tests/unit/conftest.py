"""Shared test fixtures for unit tests."""

import pytest

from agent_workbench.core.config import AgentDefinition, clear_config_cache
from agent_workbench.core.events import EventBroadcaster
from agent_workbench.core.registry import Registry
from agent_workbench.permissions import GrantStore
from agent_workbench.storage import JsonFileStore
from tests.unit.fakes import init_git_repo


@pytest.fixture(autouse=True)
def _reset_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def agents():
    return [
        AgentDefinition(id="engineer", name="Engineer", prompt="You write code."),
        AgentDefinition(id="researcher", name="Researcher", prompt="You investigate."),
    ]


@pytest.fixture
def registry(agents, tmp_path):
    return Registry(agents=agents, current_directory=tmp_path)


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "state" / "state.json")


@pytest.fixture
def grant_store(store):
    return GrantStore(store)


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def events(broadcaster):
    """Every event published on the broadcaster, in order."""
    received = []

    async def collect(event):
        received.append(event)

    broadcaster.add_sink(collect)
    return received


@pytest.fixture
def git_repo(tmp_path):
    return init_git_repo(tmp_path / "repo")
