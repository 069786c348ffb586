"""Tool system — ToolRegistry and factory that creates all agent tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from langchain_core.tools import BaseTool

from taskbot.agent.tools.comment_tools import make_comment_tools
from taskbot.agent.tools.context import ToolContext
from taskbot.agent.tools.email_tools import make_email_link_tools, make_email_tools
from taskbot.agent.tools.memory_tools import make_memory_tools
from taskbot.agent.tools.project_tools import make_project_tools
from taskbot.agent.tools.research import make_research_tools
from taskbot.agent.tools.run_tools import make_run_tools
from taskbot.agent.tools.scheduling import make_scheduling_tools
from taskbot.agent.tools.task_tools import make_task_tools


@dataclass
class ToolInfo:
    """Metadata for a registered tool."""

    tool: BaseTool
    group: str
    requires: list[str] = field(default_factory=list)
    available: bool = True


class ToolRegistry:
    """Named tools grouped by concern.

    Each factory (make_*_tools) registers its tools under a group name.
    Groups whose dependencies are missing from the ToolContext are listed
    as unavailable so callers can see what is missing.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolInfo] = {}
        self._groups: dict[str, list[str]] = {}
        self._unavailable: dict[str, list[str]] = {}

    def register_group(
        self,
        group: str,
        tools: list,
        requires: list[str] | None = None,
    ) -> None:
        """Register a list of tools under a group name, replacing placeholders."""
        self._groups[group] = []
        for t in tools:
            self._tools[t.name] = ToolInfo(tool=t, group=group, requires=requires or [])
            self._groups[group].append(t.name)

    def register_unavailable(self, group: str, tool_names: list[str], requires: list[str]) -> None:
        """Register tools that exist but cannot run (missing deps)."""
        self._groups[group] = list(tool_names)
        for name in tool_names:
            self._unavailable[name] = requires

    def get(self, name: str) -> BaseTool | None:
        info = self._tools.get(name)
        return info.tool if info else None

    def get_all_tools(self) -> list:
        """Return all available tool objects."""
        return [info.tool for info in self._tools.values() if info.available]

    def get_group_tool_names(self, group: str) -> list[str]:
        """Return tool names in a group (including unavailable)."""
        return list(self._groups.get(group, []))

    def get_tools_for_groups(self, groups: list[str]) -> set[str]:
        """Resolve groups to a flat set of available tool names."""
        names: set[str] = set()
        for g in groups:
            for name in self._groups.get(g, []):
                if name in self._tools and self._tools[name].available:
                    names.add(name)
        return names

    def get_catalog(self) -> list[dict[str, Any]]:
        """Full catalog, unavailable tools included."""
        result = []
        for group, names in self._groups.items():
            for name in names:
                info = self._tools.get(name)
                result.append({
                    "name": name,
                    "group": group,
                    "description": (info.tool.description or "").split("\n")[0] if info else "",
                    "available": info is not None,
                    "requires": info.requires if info else self._unavailable.get(name, []),
                })
        return sorted(result, key=lambda r: r["name"])

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


# ── Group table: name → (factory, requirements, tool names) ──────

_GROUPS: dict[str, tuple[Callable[[ToolContext], list], list[str], list[str]]] = {
    "memory": (make_memory_tools, [], ["search_memory", "save_to_memory", "get_recent_conversations"]),
    "tasks": (make_task_tools, [], [
        "create_task", "list_tasks", "get_task", "update_task",
        "complete_task", "delete_task", "create_subtask",
    ]),
    "projects": (make_project_tools, [], [
        "create_project", "list_projects", "get_project", "update_project", "delete_project",
    ]),
    "comments": (make_comment_tools, [], ["add_comment", "list_comments"]),
    "scheduling": (make_scheduling_tools, ["jobs"], [
        "schedule_reminder", "schedule_agent_task", "schedule_task_follow_up",
        "list_scheduled_jobs", "cancel_scheduled_job", "update_scheduled_job",
    ]),
    "email": (make_email_tools, ["mailer"], [
        "check_email", "get_email_details", "send_email", "reply_to_email", "mark_email_as_read",
    ]),
    "email_links": (make_email_link_tools, ["email_id"], [
        "link_email_to_project", "link_email_to_task",
        "create_task_from_email", "update_task_from_email",
    ]),
    "research": (make_research_tools, ["research.model"], ["research"]),
    "run": (make_run_tools, ["runstate", "task_id"], [
        "log_progress", "mark_task_complete", "request_human_input",
        "schedule_follow_up", "search_context",
    ]),
}

DEFAULT_GROUPS = ["memory", "tasks", "projects", "comments", "scheduling", "email", "research"]


def make_tools(ctx: ToolContext, groups: list[str] | None = None) -> ToolRegistry:
    """Create agent tools for ``ctx`` and return a ToolRegistry.

    Parameters
    ----------
    ctx : ToolContext
        Agent, store and optional collaborators the tools close over.
    groups : list[str], optional
        Groups to build. None builds every group.

    Returns
    -------
    ToolRegistry
        Registry with all tools registered under their groups.
    """
    registry = ToolRegistry()
    for group in groups or list(_GROUPS):
        if group not in _GROUPS:
            raise KeyError(f"Unknown tool group: {group}")
        factory, requires, names = _GROUPS[group]
        tools = factory(ctx)
        if tools:
            registry.register_group(group, tools, requires=requires)
        else:
            registry.register_unavailable(group, names, requires=requires)
    return registry


__all__ = ["ToolRegistry", "ToolInfo", "ToolContext", "make_tools", "DEFAULT_GROUPS"]
