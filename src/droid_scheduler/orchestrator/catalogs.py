"""Project and agent catalogs consulted by the scheduler."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from droid_scheduler.orchestrator.models import (
    AgentDefinition,
    AgentRole,
    AgentSource,
    AutoLevel,
    Project,
)
from droid_scheduler.orchestrator.store import StateStore
from droid_scheduler.storage.common import utc_now

logger = logging.getLogger(__name__)

_PROJECT_FIELDS = frozenset({"name", "path", "description", "main_agent_id", "default_model"})
_AGENT_FIELDS = frozenset(
    {
        "name",
        "description",
        "role",
        "system_prompt",
        "model",
        "auto_level",
        "enabled_tools",
        "disabled_tools",
        "sub_agent_ids",
    },
)


class ProjectCatalog(Protocol):
    def get_project(self, project_id: str) -> Project | None:
        """Resolve a project id to its record, or None if unknown."""


class AgentCatalog(Protocol):
    def get_agent(self, agent_id: str) -> AgentDefinition | None:
        """Resolve an agent id to its definition, or None if unknown."""


class StoreProjectCatalog:
    """Projects persisted in the scheduler store."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def list_projects(self) -> list[Project]:
        return self.store.get_projects()

    def get_project(self, project_id: str) -> Project | None:
        return next(
            (project for project in self.store.get_projects() if project.project_id == project_id),
            None,
        )

    def add_project(
        self,
        *,
        name: str,
        path: str | Path,
        description: str | None = None,
        default_model: str | None = None,
    ) -> Project | None:
        now = utc_now()
        project = Project(
            project_id=str(uuid4()),
            name=name,
            path=str(Path(path).expanduser().resolve()),
            description=description,
            default_model=default_model,
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction():
            projects = self.store.get_projects()
            projects.append(project)
            if not self.store.save_projects(projects):
                return None
        return project

    def update_project(self, project_id: str, **updates: Any) -> Project | None:
        unknown = set(updates) - _PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        with self.store.transaction():
            projects = self.store.get_projects()
            for index, project in enumerate(projects):
                if project.project_id != project_id:
                    continue
                projects[index] = replace(project, **updates, updated_at=utc_now())
                if not self.store.save_projects(projects):
                    return None
                return projects[index]
        return None

    def remove_project(self, project_id: str) -> bool:
        with self.store.transaction():
            projects = self.store.get_projects()
            remaining = [project for project in projects if project.project_id != project_id]
            if len(remaining) == len(projects):
                return False
            return self.store.save_projects(remaining)


class StoreAgentCatalog:
    """Agent definitions persisted in the scheduler store.

    Agents are either created here (carrying their own system prompt) or
    imported from an agent markdown file, in which case only the file path is
    recorded and the executable selects the agent by file name.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def list_agents(self, project_id: str | None = None) -> list[AgentDefinition]:
        agents = self.store.get_agent_definitions()
        if project_id is None:
            return agents
        return [agent for agent in agents if agent.project_id == project_id]

    def get_agent(self, agent_id: str) -> AgentDefinition | None:
        return next(
            (agent for agent in self.store.get_agent_definitions() if agent.agent_id == agent_id),
            None,
        )

    def create_agent(  # noqa: PLR0913
        self,
        *,
        name: str,
        project_id: str,
        system_prompt: str,
        role: AgentRole = AgentRole.SUB,
        description: str | None = None,
        model: str | None = None,
        auto_level: AutoLevel | None = None,
        enabled_tools: list[str] | None = None,
        disabled_tools: list[str] | None = None,
        sub_agent_ids: list[str] | None = None,
    ) -> AgentDefinition | None:
        now = utc_now()
        agent = AgentDefinition(
            agent_id=str(uuid4()),
            name=name,
            project_id=project_id,
            role=role,
            source=AgentSource.CREATED,
            system_prompt=system_prompt,
            description=description,
            model=model,
            auto_level=auto_level,
            enabled_tools=list(enabled_tools or []),
            disabled_tools=list(disabled_tools or []),
            sub_agent_ids=list(sub_agent_ids or []),
            created_at=now,
            updated_at=now,
        )
        return agent if self._append(agent) else None

    def import_agent_file(self, *, project_id: str, path: str | Path) -> AgentDefinition | None:
        """Register an agent defined by a markdown file; re-importing is a no-op."""

        source_path = Path(path).expanduser().resolve()
        agent_id = f"imported:{project_id}:{source_path.name}"
        with self.store.transaction():
            existing = self.get_agent(agent_id)
            if existing is not None:
                return existing
            now = utc_now()
            agent = AgentDefinition(
                agent_id=agent_id,
                name=source_path.stem,
                project_id=project_id,
                role=AgentRole.MAIN if source_path.name == "main.md" else AgentRole.SUB,
                source=AgentSource.IMPORTED,
                source_path=str(source_path),
                created_at=now,
                updated_at=now,
            )
            return agent if self._append(agent) else None

    def update_agent(self, agent_id: str, **updates: Any) -> AgentDefinition | None:
        unknown = set(updates) - _AGENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown agent fields: {', '.join(sorted(unknown))}")
        with self.store.transaction():
            agents = self.store.get_agent_definitions()
            for index, agent in enumerate(agents):
                if agent.agent_id != agent_id:
                    continue
                agents[index] = replace(agent, **updates, updated_at=utc_now())
                if not self.store.save_agent_definitions(agents):
                    return None
                return agents[index]
        return None

    def remove_agent(self, agent_id: str) -> bool:
        with self.store.transaction():
            agents = self.store.get_agent_definitions()
            remaining = [agent for agent in agents if agent.agent_id != agent_id]
            if len(remaining) == len(agents):
                return False
            return self.store.save_agent_definitions(remaining)

    def _append(self, agent: AgentDefinition) -> bool:
        with self.store.transaction():
            agents = self.store.get_agent_definitions()
            agents.append(agent)
            if not self.store.save_agent_definitions(agents):
                logger.error("Failed to persist agent %s", agent.agent_id)
                return False
        return True
