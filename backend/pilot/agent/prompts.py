from __future__ import annotations

from pilot.agent.constants import (
    AWARE_ANALYSIS_TOOL,
    CHAT_MESSAGE_TOOL,
    IDLE_TOOL,
)
from pilot.agent.state import RunContext, ToolDescriptor

GREETING_PROMPT = """\
You are a friendly assistant greeting the user before work begins.
- Show that you understood what they want.
- Be warm, brief and encouraging; a little emoji is fine.
- Tell them you are getting started.
Do not ask the user any questions.
"""

AWARE_PROMPT = """\
You are an AI agent that analyzes the current environment, decides the
status of the task and tells the user what happens next.

<task_description>
You must call the aware_analysis tool.

Reflect on the environment using all the context you were given, then decide
the next task status. When there is no current task, or the current step is
done, increase the step number and update the status.

Arguments of the tool call:
- reflection: your reflection about the current environment (write it first)
- step: the next step number
- status: one complete sentence telling the user what happens next
- plan: steps array, each with "id" and "title"

Return the plan field ONLY when the environment has no plan yet. Step ids use
the format "step_XXX" where XXX is a sequential number starting at 001.

Do not write any response text, only the tool call.
</task_description>
"""

AWARE_REQUEST = "Please call the aware_analysis tool to give me the next decision."

ACTION_PROMPT = """\
You are a tool use expert. Pick the tools to call based on the aware status
and the environment information. Respond only with tool calls.

<overall_principle>
- Always respond with a tool call; plain text replies are not allowed.
- Never mention tool names to the user.
- Only use tools that are actually available; never invent one.
- Follow the instructions in the aware status without repeating them back.
- Do not ask the user questions. When something is unclear, explain the
  approach you are taking instead.
- Send a chat message only after finishing some tools, as a summary.
- Never reveal file paths or absolute paths from this machine.
</overall_principle>
"""

AWARE_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "step": {"type": "number", "description": "Next step number"},
        "status": {
            "type": "string",
            "description": "Next task description, one complete sentence telling the user what happens next",
        },
        "reflection": {
            "type": "string",
            "description": "Your reflection about the current environment",
        },
        "plan": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "title"],
                "properties": {
                    "id": {"type": "string", "description": "Sequential step id, e.g. step_001"},
                    "title": {
                        "type": "string",
                        "minLength": 1,
                        "description": "Clear and concise description of the step",
                    },
                },
            },
        },
    },
    "required": ["step", "status", "reflection"],
}

AWARE_TOOL = ToolDescriptor(
    name=AWARE_ANALYSIS_TOOL,
    description="Analyze the current environment with the user input and decide the next task status",
    parameters=AWARE_SCHEMA,
)

IDLE_TOOL_DESCRIPTOR = ToolDescriptor(
    name=IDLE_TOOL,
    description=(
        "Call this when the current task is done and it is the last task, "
        "to signal that you are finished."
    ),
    parameters={"type": "object", "properties": {}},
)

CHAT_MESSAGE_TOOL_DESCRIPTOR = ToolDescriptor(
    name=CHAT_MESSAGE_TOOL,
    description="Send a message to the user. Use it to report a summary of the current step.",
    parameters={
        "type": "object",
        "properties": {
            "text": {
                "type": "string",
                "description": "Summary of the current step for the user, at most 150 words.",
            },
            "attachments": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "Path of a file created in an earlier step",
                        }
                    },
                },
            },
        },
        "required": ["text"],
    },
)

CONTROL_TOOLS = [IDLE_TOOL_DESCRIPTOR, CHAT_MESSAGE_TOOL_DESCRIPTOR]


def build_environment_info(context: RunContext) -> str:
    task = context.current_task
    return (
        f"Plan:\n{context.describe_plan()}\n\n"
        f"Current step: {context.current_step}\n\n"
        f"Current task: {task.title if task else 'None'}"
    )


def build_aware_status_message(status: str) -> str:
    return f"Aware status: {status}"
