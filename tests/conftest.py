from typing import Any, Optional, Sequence

import pytest
import pytest_asyncio

from threadloom.config.agents import AgentDefinition, ModelSpec
from threadloom.llms.llm import ToolCall, TurnResult, TurnUsage
from threadloom.threads.store import SQLiteThreadStore


class ScriptedProvider:
    """Provider answering each turn from a list of TurnResult or exceptions."""

    name = "scripted"

    def __init__(self, turns: Optional[Sequence[Any]] = None, summary: Any = "<summary>Earlier talk</summary>"):
        self.turns = list(turns or [])
        self.summary = summary
        self.calls: list[list[Any]] = []
        self.prompts: list[str] = []

    async def complete_turn(self, *, model, agent, messages, tools) -> TurnResult:
        self.calls.append(list(messages))
        if not self.turns:
            return TurnResult(text="done")
        item = self.turns.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def complete(self, prompt: str, *, model, max_tokens: Optional[int] = None) -> str:
        self.prompts.append(prompt)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


class StaticConfig:
    def __init__(self, agents=None, model: Optional[ModelSpec] = None):
        self.agents = agents or [
            AgentDefinition(name="helper", instructions="Be helpful", tools=("lookup",)),
            AgentDefinition(name="critic", instructions="Be critical"),
        ]
        self.model = model or ModelSpec(provider="openai", name="fake-model", context_window=100_000)

    def get_agents(self, project_id, username=None):
        return list(self.agents)

    def get_model(self, project_id, name_or_alias):
        return self.model

    def find_agent(self, project_id, name):
        return next((agent for agent in self.agents if agent.name.lower() == name.lower()), None)

    def get_default_agent(self, project_id):
        return self.agents[0]


def tool_turn(*calls: tuple[str, str, str], text: str = "", price: float = 0.0) -> TurnResult:
    return TurnResult(
        text=text,
        tool_calls=[ToolCall(id=call_id, name=name, args=args) for call_id, name, args in calls],
        usage=TurnUsage(input=10, output=5, price=price),
    )


@pytest.fixture
def make_provider():
    return ScriptedProvider


@pytest.fixture
def static_config():
    return StaticConfig()


@pytest.fixture
def make_tool_turn():
    return tool_turn


@pytest_asyncio.fixture
async def thread_store(tmp_path):
    store = SQLiteThreadStore(tmp_path / "threads.db")
    await store.init()
    yield store
    await store.close()
