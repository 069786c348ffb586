"""AgentState — LangGraph state definition."""

from __future__ import annotations

import operator
from typing import Annotated, Any

from langgraph.graph import MessagesState


class AgentState(MessagesState):
    """
    Extends MessagesState (messages: Annotated[list[BaseMessage], add_messages]).

    ``iteration`` counts model invocations; ``stopped`` is set when a tool
    result asks the run to end (task completed, waiting on the user).
    """

    system_prompt: str = ""
    iteration: int = 0
    token_count: int = 0
    stopped: bool = False
    tool_calls: Annotated[list[dict[str, Any]], operator.add]
