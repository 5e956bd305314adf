from __future__ import annotations

from pathlib import Path

import allure
import pytest

from droid_scheduler.orchestrator.catalogs import StoreAgentCatalog, StoreProjectCatalog
from droid_scheduler.orchestrator.models import AgentRole, AgentSource, AutoLevel
from droid_scheduler.orchestrator.store import StateStore

pytestmark = [
    allure.epic("Task Scheduler"),
    allure.feature("Project & Agent Catalogs"),
]


def test_project_lifecycle(store: StateStore, tmp_path: Path) -> None:
    catalog = StoreProjectCatalog(store)

    project = catalog.add_project(name="demo", path=tmp_path, default_model="claude-opus")

    assert project is not None
    assert project.path == str(tmp_path.resolve())
    assert catalog.get_project(project.project_id) == project
    updated = catalog.update_project(project.project_id, description="main repo")
    assert updated is not None and updated.description == "main repo"
    with pytest.raises(ValueError, match="Unknown project fields"):
        catalog.update_project(project.project_id, colour="red")
    assert catalog.update_project("missing", name="x") is None
    assert catalog.remove_project(project.project_id) is True
    assert catalog.remove_project(project.project_id) is False
    assert catalog.list_projects() == []


def test_create_and_update_agent(store: StateStore) -> None:
    catalog = StoreAgentCatalog(store)

    agent = catalog.create_agent(
        name="writer",
        project_id="p-1",
        system_prompt="Write docs.",
        auto_level=AutoLevel.LOW,
        enabled_tools=["Read"],
    )

    assert agent is not None
    assert agent.source == AgentSource.CREATED
    assert agent.role == AgentRole.SUB
    assert catalog.get_agent(agent.agent_id) == agent
    renamed = catalog.update_agent(agent.agent_id, name="docs-writer")
    assert renamed is not None and renamed.name == "docs-writer"
    assert catalog.list_agents("p-1") == [renamed]
    assert catalog.list_agents("other") == []
    assert catalog.remove_agent(agent.agent_id) is True


def test_import_agent_file_is_idempotent(store: StateStore, tmp_path: Path) -> None:
    catalog = StoreAgentCatalog(store)
    agent_file = tmp_path / "main.md"

    first = catalog.import_agent_file(project_id="p-1", path=agent_file)
    second = catalog.import_agent_file(project_id="p-1", path=agent_file)

    assert first is not None
    assert first.agent_id == "imported:p-1:main.md"
    assert first.name == "main"
    assert first.role == AgentRole.MAIN
    assert first.source == AgentSource.IMPORTED
    assert first.source_path == str(agent_file.resolve())
    assert second == first
    assert len(catalog.list_agents()) == 1
