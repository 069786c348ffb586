"""AgentLoop — bounded tool-calling loop for background and chat runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph import END, START, StateGraph
from loguru import logger

from taskbot.agent.state import AgentState
from taskbot.core.activity import ActivityRecorder
from taskbot.core.config.schema import Config
from taskbot.core.errors import ToolExecutionError
from taskbot.core.providers import litellm as llm_provider


@dataclass
class AgentResult:
    text: str
    steps: int
    stopped: bool = False
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    token_count: int = 0

    @property
    def called_tools(self) -> set[str]:
        return {c["name"] for c in self.tool_calls}


class AgentLoop:
    """Drive the model through at most ``max_steps`` invocations.

    Graph: reason → execute_tools → (reason | respond). The run ends when
    the model answers without tool calls, a tool result carries
    ``stopped: true``, or ``max_steps`` model calls have been made. Tool
    calls emitted on the last step still execute so their side effects
    and activity records are not lost.

    Parameters
    ----------
    config : Config
        Application config.
    system_prompt : str
        System prompt for this run.
    tools : list, optional
        LangChain tools available to the model.
    max_steps : int
        Model invocation bound.
    recorder : ActivityRecorder, optional
        Receives every tool call (activity log + bug reports).
    agent_id, conversation_id, task_id : str, optional
        Attached to recorded tool calls.
    model : str, optional
        Model override. Defaults to config.assistant.model.
    """

    def __init__(
        self,
        config: Config,
        system_prompt: str,
        tools: list | None = None,
        max_steps: int = 5,
        recorder: ActivityRecorder | None = None,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        task_id: str | None = None,
        model: str | None = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.config = config
        self.system_prompt = system_prompt
        self.tools = tools or []
        self.max_steps = max_steps
        self.recorder = recorder
        self.agent_id = agent_id
        self.conversation_id = conversation_id
        self.task_id = task_id
        self.model = model or config.assistant.model
        self._graph = self._compile()

    async def run(self, messages: str | list[Any]) -> AgentResult:
        """Run the loop over ``messages`` (text, LangChain messages or role dicts)."""
        state = await self._graph.ainvoke(
            {
                "messages": _to_messages(messages),
                "system_prompt": self.system_prompt,
                "iteration": 0,
                "token_count": 0,
                "stopped": False,
                "tool_calls": [],
            },
            config={"recursion_limit": self.max_steps * 2 + 10},
        )
        result = AgentResult(
            text=self._extract(state),
            steps=state.get("iteration", 0),
            stopped=state.get("stopped", False),
            tool_calls=state.get("tool_calls", []),
            token_count=state.get("token_count", 0),
        )
        logger.debug(
            f"AgentLoop done: {result.steps} step(s), {len(result.tool_calls)} tool call(s), "
            f"{result.token_count} tokens, stopped={result.stopped}"
        )
        return result

    def _compile(self):
        tool_defs = _build_tool_definitions(self.tools) if self.tools else None
        tool_map = {t.name: t for t in self.tools}
        config = self.config
        model = self.model
        max_steps = self.max_steps

        async def reason(state: AgentState) -> dict[str, Any]:
            """Call LLM with system prompt + messages."""
            messages = [{"role": "system", "content": state["system_prompt"]}]
            for msg in state["messages"]:
                messages.append(_langchain_to_dict(msg))

            ai_message = await llm_provider.achat(
                messages=messages,
                model=model,
                tools=tool_defs,
                temperature=config.assistant.temperature,
                max_tokens=config.assistant.max_tokens,
                api_base=config.get_api_base(model),
            )
            if ai_message.tool_calls:
                logger.debug(f"LLM tool calls: {[tc['name'] for tc in ai_message.tool_calls]}")
            usage = getattr(ai_message, "response_metadata", {}).get("usage", {})
            return {
                "messages": [ai_message],
                "iteration": state["iteration"] + 1,
                "token_count": state["token_count"] + (usage.get("total_tokens") or 0),
            }

        async def execute_tools(state: AgentState) -> dict[str, Any]:
            """Execute tool calls from the last AI message, in order."""
            last_msg = state["messages"][-1]
            messages: list[ToolMessage] = []
            records: list[dict[str, Any]] = []
            stopped = False

            for call in last_msg.tool_calls:
                name, args = call["name"], call.get("args") or {}
                tool = tool_map.get(name)
                if tool is None:
                    result: Any = {"success": False, "error": f"Tool '{name}' not found"}
                    logger.warning(f"Tool not found: {name}")
                else:
                    try:
                        result = await tool.ainvoke(args)
                    except ToolExecutionError as e:
                        result = {"success": False, "error": str(e)}
                        logger.error(f"Tool error: {e}")
                    except Exception as e:
                        result = {"success": False, "error": f"{type(e).__name__}: {e}"}
                        logger.error(f"Tool error: {name} → {e}")

                if self.recorder and self.agent_id:
                    self.recorder.tool_call(
                        self.agent_id, name, args, result,
                        conversation_id=self.conversation_id, task_id=self.task_id,
                    )
                if isinstance(result, dict) and result.get("stopped"):
                    stopped = True
                content = (
                    json.dumps(result, default=str)
                    if isinstance(result, (dict, list))
                    else str(result)
                )
                messages.append(ToolMessage(content=content, tool_call_id=call["id"], name=name))
                records.append({"name": name, "args": args, "result": result})

            return {"messages": messages, "tool_calls": records, "stopped": stopped}

        async def respond(state: AgentState) -> dict[str, Any]:
            if state["iteration"] >= max_steps and not state.get("stopped"):
                logger.warning(f"Step bound reached ({max_steps}), ending run")
            return {}

        def after_reason(state: AgentState) -> str:
            last_msg = state["messages"][-1]
            if isinstance(last_msg, AIMessage) and last_msg.tool_calls:
                return "execute_tools"
            return "respond"

        def after_tools(state: AgentState) -> str:
            if state.get("stopped") or state["iteration"] >= max_steps:
                return "respond"
            return "reason"

        graph = StateGraph(AgentState)
        graph.add_node("reason", reason)
        graph.add_node("execute_tools", execute_tools)
        graph.add_node("respond", respond)

        graph.add_edge(START, "reason")
        graph.add_conditional_edges("reason", after_reason)
        graph.add_conditional_edges("execute_tools", after_tools)
        graph.add_edge("respond", END)
        return graph.compile()

    @staticmethod
    def _extract(state: dict) -> str:
        """Last non-empty assistant text."""
        for msg in reversed(state["messages"]):
            if isinstance(msg, AIMessage) and msg.content:
                return msg.content if isinstance(msg.content, str) else str(msg.content)
        return ""


def _to_messages(messages: str | list[Any]) -> list[BaseMessage]:
    if isinstance(messages, str):
        return [HumanMessage(content=messages)]
    out: list[BaseMessage] = []
    for msg in messages:
        if isinstance(msg, BaseMessage):
            out.append(msg)
        elif msg.get("role") == "assistant":
            out.append(AIMessage(content=msg.get("content") or ""))
        else:
            out.append(HumanMessage(content=msg.get("content") or ""))
    return out


def _langchain_to_dict(msg: Any) -> dict[str, Any]:
    """Convert LangChain message to dict for litellm."""
    if isinstance(msg, HumanMessage):
        return {"role": "user", "content": msg.content}
    elif isinstance(msg, AIMessage):
        d: dict[str, Any] = {"role": "assistant", "content": msg.content}
        if msg.tool_calls:
            d["tool_calls"] = [
                {
                    "id": tc["id"],
                    "type": "function",
                    "function": {"name": tc["name"], "arguments": json.dumps(tc["args"])},
                }
                for tc in msg.tool_calls
            ]
        return d
    elif isinstance(msg, ToolMessage):
        return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
    elif isinstance(msg, SystemMessage):
        return {"role": "system", "content": msg.content}
    return {"role": "user", "content": str(msg.content)}


def _build_tool_definitions(tools: list) -> list[dict[str, Any]]:
    """Convert LangChain tools to OpenAI function format."""
    defs = []
    for tool in tools:
        schema = tool.args_schema.model_json_schema() if tool.args_schema else {}
        defs.append(
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": schema,
                },
            }
        )
    return defs
