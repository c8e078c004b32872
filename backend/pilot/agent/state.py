from __future__ import annotations

import enum
import json
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


# ── Plan: output of planning / awareness phases ────────────────


@dataclass
class PlanStep:
    id: str  # step_001, step_002, ...
    title: str

    def to_dict(self) -> dict:
        return asdict(self)


def parse_plan(raw: Any) -> list[PlanStep]:
    """Best-effort conversion of a model-provided plan into PlanSteps.

    Entries without a title are dropped; missing ids are generated in the
    step_XXX format.
    """
    if not isinstance(raw, list):
        return []
    steps = []
    for index, item in enumerate(raw, start=1):
        if not isinstance(item, dict) or not item.get("title"):
            continue
        steps.append(
            PlanStep(
                id=str(item.get("id") or f"step_{index:03d}"),
                title=str(item["title"]),
            )
        )
    return steps


# ── RunContext: per-run mutable state ──────────────────────────


@dataclass
class RunContext:
    agent_id: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    plan: list[PlanStep] = field(default_factory=list)
    current_step: int = 1
    # scratch values carried between phases of one run
    memory: dict = field(default_factory=dict)

    @property
    def current_task(self) -> PlanStep | None:
        if 1 <= self.current_step <= len(self.plan):
            return self.plan[self.current_step - 1]
        return None

    @property
    def plan_exhausted(self) -> bool:
        return self.current_step > len(self.plan)

    def set_step(self, step: int) -> int:
        """Clamp and store the step so that 1 <= step <= len(plan) + 1."""
        self.current_step = max(1, min(int(step), len(self.plan) + 1))
        return self.current_step

    def replace_plan(self, plan: list[PlanStep]) -> None:
        self.plan = plan
        self.set_step(self.current_step)

    def plan_as_dicts(self) -> list[dict]:
        return [p.to_dict() for p in self.plan]

    def describe_plan(self) -> str:
        return "\n".join(f"  - [{p.id}] {p.title}" for p in self.plan)


# ── Tool calls and results ──────────────────────────────────────


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"  # raw JSON text, as produced by the model

    def parse_arguments(self) -> dict:
        """Decode the raw arguments. Raises ValueError on malformed input."""
        if not self.arguments or not self.arguments.strip():
            return {}
        data = json.loads(self.arguments)
        if not isinstance(data, dict):
            raise ValueError("tool arguments must be a JSON object")
        return data

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolResult:
    tool_call_id: str
    name: str
    content: list[str] = field(default_factory=list)
    is_error: bool = False
    terminal: bool = False  # handler asks the loop to stop (idle, finished)

    @property
    def text(self) -> str:
        return "\n".join(self.content)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ToolDescriptor:
    """A callable tool as advertised to the model."""

    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    server: str | None = None  # owning MCP server, None for in-process tools

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# ── Run status ──────────────────────────────────────────────────


class RunStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


class SessionPhase(str, enum.Enum):
    INIT = "init"
    GREETING = "greeting"
    PLANNING = "planning"
    ACTING = "acting"
    AWARENESS = "awareness"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"
