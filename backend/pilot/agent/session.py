"""AgentSession: one user conversation driven by the orchestration loop.

A run moves through greeting, planning, then alternating action and
awareness phases until the model goes idle, the plan is exhausted, the run
is stopped, or something fatal happens. Whatever the outcome, the event
stream of a finished run ends with exactly one complete, error or
terminate event.

Cancellation is cooperative. stop() ends the run; interrupt() only
restarts the phase in flight so the model can see the new user message.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from pilot.agent.cancellation import CancellationToken
from pilot.agent.constants import (
    AWARE_ANALYSIS_TOOL,
    COMPLETE_MESSAGE,
    DEFAULT_AWARE_STATUS,
    GREETING_FALLBACK_TEXT,
    HISTORY_BATCHES_IN_ACTION_PROMPT,
    STOP_UNWIND_SECONDS,
    TERMINATE_MESSAGE,
    THINKING_STATUS,
)
from pilot.agent.dispatcher import ToolDispatcher
from pilot.agent.errors import (
    ActionPhaseFailed,
    AwarenessFailed,
    Cancelled,
    OperatorActionFailed,
    PlanningFailed,
    SessionBusy,
)
from pilot.agent.events import ActionStatus, Event, EventStream, EventType
from pilot.agent.prompts import (
    ACTION_PROMPT,
    AWARE_PROMPT,
    AWARE_REQUEST,
    AWARE_TOOL,
    CONTROL_TOOLS,
    GREETING_PROMPT,
    build_aware_status_message,
    build_environment_info,
)
from pilot.agent.runtime import Notification, Observer, Runtime
from pilot.agent.state import (
    RunContext,
    RunStatus,
    SessionPhase,
    ToolCall,
    ToolResult,
    parse_plan,
)
from pilot.agent.tool_engine import ParsedModelResponse

logger = logging.getLogger(__name__)

TERMINAL_NOTIFICATIONS = ("complete", "error", "terminate")


def _as_int(value: Any, default: int | None) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def read_decision(response: ParsedModelResponse) -> dict | None:
    """Arguments of the aware_analysis call, or None if there is no usable one."""
    calls = [tc for tc in response.tool_calls if tc.name == AWARE_ANALYSIS_TOOL]
    call = calls[0] if calls else (response.tool_calls[0] if response.tool_calls else None)
    if call is None:
        return None
    try:
        return call.parse_arguments()
    except ValueError:
        logger.warning("Unparsable aware_analysis arguments: %.200s", call.arguments)
        return None


class AgentSession:
    def __init__(
        self,
        runtime: Runtime,
        session_id: str | None = None,
        stream: EventStream | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.runtime = runtime
        self.stream = stream or EventStream(
            session_id=self.id,
            prompt_char_limit=runtime.settings.PROMPT_EVENT_CHAR_LIMIT,
        )
        self.context = RunContext(agent_id=self.id)
        self.token = CancellationToken()
        self.status = RunStatus.IDLE
        self.phase = SessionPhase.INIT
        self.dispatcher = ToolDispatcher(self.stream, runtime.tools, runtime.hub)
        self._observers: list[Observer] = []
        self._task: asyncio.Task | None = None
        self._interrupt_pending = False
        self._iterations = 0
        self._batch = 0
        self._generation = 0

    @property
    def running(self) -> bool:
        return self.status == RunStatus.RUNNING

    def add_observer(self, observer: Observer):
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    def snapshot(self) -> dict:
        return {
            "agent_id": self.id,
            "status": self.status.value,
            "phase": self.phase.value,
            "request_id": self.context.request_id,
            "plan": self.context.plan_as_dicts(),
            "current_step": self.context.current_step,
            "memory": dict(self.context.memory),
            "event_count": len(self.stream),
        }

    # ── Control ─────────────────────────────────────────────────

    def start(self, text: str) -> str:
        """Record the instruction and schedule a run. Returns the session id."""
        if self.running:
            raise SessionBusy(self.id)
        if self.token.cancelled:
            self.token = CancellationToken()
        self.context = RunContext(agent_id=self.id)
        self._interrupt_pending = False
        self._iterations = 0
        self._generation += 1
        self.status = RunStatus.RUNNING
        self.phase = SessionPhase.INIT
        self.stream.append(EventType.USER_MESSAGE, {"text": text})
        logger.info("[%s] run %s started", self.id, self.context.request_id)
        self._task = asyncio.create_task(
            self._run(text, self._generation), name=f"agent-{self.id}"
        )
        return self.id

    async def stop(self) -> bool:
        """End the active run. Returns False if there was nothing to stop."""
        if not self.running:
            return False
        self.token.cancel("stopped by user")
        self.status = RunStatus.ABORTED
        self.phase = SessionPhase.ABORTED
        self.stream.append(EventType.TERMINATE, {"message": TERMINATE_MESSAGE})
        logger.info("[%s] run stopped", self.id)
        await self._notify("terminate", message=TERMINATE_MESSAGE)
        await self._unwind()
        return True

    def interrupt(self, text: str) -> None:
        """Inject a user message and restart whatever phase is in flight."""
        self.stream.append(EventType.USER_INTERRUPTION, {"text": text})
        previous, self.token = self.token, CancellationToken()
        if self.running:
            self._interrupt_pending = True
        previous.cancel("interrupted")

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _unwind(self) -> None:
        """Let a stopped run's task finish before the session is reused."""
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=STOP_UNWIND_SECONDS)
        if not done:
            logger.warning("[%s] stopped run still busy, cancelling its task", self.id)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _owns(self, generation: int) -> bool:
        return generation == self._generation and self.running

    # ── Loop ────────────────────────────────────────────────────

    async def _run(self, text: str, generation: int) -> None:
        max_iterations = self.runtime.settings.MAX_LOOP_ITERATIONS
        try:
            await self._greet(text)
            await self._in_phase(self._plan, text)
            while self._owns(generation):
                if self._iterations >= max_iterations:
                    raise ActionPhaseFailed(
                        f"Stopped after reaching the limit of {max_iterations} iterations"
                    )
                self._iterations += 1
                self.stream.append(EventType.LOADING_STATUS, {"title": THINKING_STATUS})
                await self._notify("status", message=THINKING_STATUS)

                results = await self._in_phase(self._act)
                if results and results[-1].terminal:
                    await self._complete()
                    break
                try:
                    await self._in_phase(self._aware)
                except AwarenessFailed as exc:
                    # the current plan stays in force for the next action phase
                    logger.warning("[%s] awareness skipped: %s", self.id, exc)
        except Cancelled as exc:
            if self._owns(generation):
                await self._abort(str(exc))
            else:
                logger.info("[%s] run cancelled", self.id)
        except asyncio.CancelledError:
            if self._owns(generation):
                self.token.cancel("task cancelled")
                self.status = RunStatus.ABORTED
                self.phase = SessionPhase.ABORTED
                self.stream.append(EventType.TERMINATE, {"message": TERMINATE_MESSAGE})
            raise
        except (PlanningFailed, ActionPhaseFailed, OperatorActionFailed) as exc:
            logger.error("[%s] run failed: %s", self.id, exc)
            if self._owns(generation):
                await self._fail(str(exc))
        except Exception as exc:
            logger.exception("[%s] unexpected error in agent loop", self.id)
            if self._owns(generation):
                await self._fail(f"Unexpected error: {exc}")

    async def _in_phase(self, phase, *args):
        """Run *phase*, restarting it when an interrupt cancelled it."""
        while True:
            self.token.raise_if_cancelled()
            try:
                return await phase(*args)
            except Cancelled:
                if self.running and self._interrupt_pending:
                    self._interrupt_pending = False
                    logger.info("[%s] interrupted, restarting %s", self.id, self.phase.value)
                    continue
                raise

    # ── Phases ──────────────────────────────────────────────────

    async def _greet(self, text: str) -> None:
        self.phase = SessionPhase.GREETING
        messages = [
            {"role": "system", "content": GREETING_PROMPT},
            {"role": "user", "content": text},
        ]
        try:
            greeting = await self.token.guard(
                asyncio.wait_for(
                    self.runtime.model.ask_text(messages, self.context.request_id),
                    timeout=self.runtime.settings.GREETING_TIMEOUT_SECONDS,
                )
            )
        except asyncio.TimeoutError:
            greeting = GREETING_FALLBACK_TEXT
        except Cancelled:
            if self.running and self._interrupt_pending:
                self._interrupt_pending = False
                return
            raise
        except Exception as exc:
            logger.warning("[%s] greeting failed: %s", self.id, exc)
            return

        self.stream.append(
            EventType.CHAT_TEXT,
            {"text": greeting or GREETING_FALLBACK_TEXT, "attachments": []},
        )
        await self._notify("update")

    async def _plan(self, text: str) -> None:
        self.phase = SessionPhase.PLANNING
        model = self.runtime.model
        messages = [
            {"role": "system", "content": model.engine.prepare_prompt(AWARE_PROMPT, [AWARE_TOOL])},
            {"role": "user", "content": text},
            {"role": "user", "content": AWARE_REQUEST},
        ]
        try:
            response = await self.token.guard(
                model.ask_with_tools(
                    messages,
                    [AWARE_TOOL],
                    self.context.request_id,
                    tool_choice=AWARE_ANALYSIS_TOOL,
                )
            )
        except Cancelled:
            raise
        except Exception as exc:
            raise PlanningFailed(f"Planning failed: {exc}") from exc

        decision = read_decision(response)
        if decision is None:
            raise PlanningFailed("Planning failed: no aware_analysis call returned")

        self.context.replace_plan(parse_plan(decision.get("plan")))
        self.context.set_step(_as_int(decision.get("step"), 1))
        self.stream.append(
            EventType.PLAN_UPDATE,
            {"plan": self.context.plan_as_dicts(), "step": self.context.current_step},
        )
        if decision.get("status"):
            self.stream.append(EventType.AGENT_STATUS, {"status": str(decision["status"])})
        await self._notify(
            "update",
            plan=self.context.plan_as_dicts(),
            current_step=self.context.current_step,
        )

    async def _act(self) -> list[ToolResult]:
        self.phase = SessionPhase.ACTING
        model = self.runtime.model

        mcp_tools = []
        if self.runtime.hub is not None:
            try:
                mcp_tools = await self.token.guard(self.runtime.hub.list_tools())
            except Cancelled:
                raise
            except Exception as exc:
                logger.warning("[%s] MCP tools unavailable: %s", self.id, exc)
        self.dispatcher.set_mcp_catalog(mcp_tools)
        tools = [*CONTROL_TOOLS, *mcp_tools, *self.runtime.tools.descriptors()]
        logger.info("[%s] action phase tools: %s", self.id, [t.name for t in tools])

        latest = self.stream.latest(EventType.AGENT_STATUS)
        aware_status = latest.payload.get("status") if latest else DEFAULT_AWARE_STATUS
        messages = [
            {"role": "system", "content": model.engine.prepare_prompt(ACTION_PROMPT, tools)},
            {"role": "user", "content": build_environment_info(self.context)},
            *self._history_messages(),
            *(
                {"role": "user", "content": f"User interruption: {text}"}
                for text in self._pending_interruptions()
            ),
            {"role": "user", "content": build_aware_status_message(aware_status)},
        ]

        try:
            response = await self.token.guard(
                model.ask_with_tools(messages, tools, self.context.request_id)
            )
        except Cancelled:
            raise
        except Exception as exc:
            raise ActionPhaseFailed(f"Action phase failed: {exc}") from exc
        if not response.tool_calls:
            raise ActionPhaseFailed("Action phase failed: no tool calls returned")

        self._batch += 1
        results = await self.dispatcher.execute_batch(
            response.tool_calls, self.token, self._batch
        )
        await self._notify("update")
        return results

    async def _aware(self) -> None:
        self.phase = SessionPhase.AWARENESS
        model = self.runtime.model
        environment = (
            f"Event stream result history: {self.stream.normalize_for_prompt()}\n\n"
            f"{build_environment_info(self.context)}"
        )
        messages = [
            {"role": "system", "content": model.engine.prepare_prompt(AWARE_PROMPT, [AWARE_TOOL])},
            {"role": "user", "content": environment},
            {"role": "user", "content": AWARE_REQUEST},
        ]
        try:
            response = await self.token.guard(
                model.ask_with_tools(
                    messages,
                    [AWARE_TOOL],
                    self.context.request_id,
                    tool_choice=AWARE_ANALYSIS_TOOL,
                )
            )
        except Cancelled:
            raise
        except Exception as exc:
            raise AwarenessFailed(f"Awareness failed: {exc}") from exc

        decision = read_decision(response)
        if decision is None:
            raise AwarenessFailed("Awareness failed: no aware_analysis call returned")

        plan = parse_plan(decision.get("plan"))
        if plan:
            self.context.replace_plan(plan)
            self.stream.append(
                EventType.PLAN_UPDATE,
                {"plan": self.context.plan_as_dicts(), "step": self.context.current_step},
            )

        finished = False
        step = _as_int(decision.get("step"), None)
        if step is not None and step > self.context.current_step:
            previous = self.context.current_step
            if self.context.set_step(step) > previous:
                self.stream.append(EventType.NEW_PLAN_STEP, {"step": self.context.current_step})
            finished = self.context.plan_exhausted

        if decision.get("status"):
            self.stream.append(EventType.AGENT_STATUS, {"status": str(decision["status"])})

        await self._notify(
            "update",
            plan=self.context.plan_as_dicts(),
            current_step=self.context.current_step,
        )
        if finished:
            await self._complete()

    # ── Prompt history ──────────────────────────────────────────

    def _history_messages(self) -> list[dict]:
        """Rebuild the most recent tool exchanges from tool-used events."""
        engine = self.runtime.model.engine
        batches: dict[Any, list[Event]] = {}
        for event in self.stream.get_all():
            if event.type != EventType.TOOL_USED:
                continue
            if event.payload.get("status") == ActionStatus.LOADING.value:
                continue
            batches.setdefault(event.payload.get("batch"), []).append(event)

        messages = []
        for key in list(batches)[-HISTORY_BATCHES_IN_ACTION_PROMPT:]:
            calls = []
            results = []
            for event in batches[key]:
                payload = event.payload
                status = payload.get("status")
                calls.append(
                    ToolCall(id=payload["id"], name=payload["name"], arguments=payload.get("args") or "{}")
                )
                content = payload.get("result") or (
                    ["Cancelled"] if status == ActionStatus.CANCELLED.value else []
                )
                results.append(
                    ToolResult(
                        tool_call_id=payload["id"],
                        name=payload["name"],
                        content=list(content),
                        is_error=status == ActionStatus.ERROR.value,
                    )
                )
            messages.append(
                engine.build_historical_assistant_message(ParsedModelResponse(tool_calls=calls))
            )
            messages.extend(engine.build_historical_tool_call_result_messages(results))
        return messages

    def _pending_interruptions(self) -> list[str]:
        """User interruptions the awareness phase has not digested yet."""
        texts = []
        for event in reversed(self.stream.get_all()):
            if event.type == EventType.AGENT_STATUS:
                break
            if event.type == EventType.USER_INTERRUPTION:
                texts.append(event.payload.get("text", ""))
        return list(reversed(texts))

    # ── Endings ─────────────────────────────────────────────────

    async def _complete(self) -> None:
        if not self.running or self.token.cancelled:
            return
        self.status = RunStatus.COMPLETED
        self.phase = SessionPhase.DONE
        self.stream.append(EventType.COMPLETE, {"message": COMPLETE_MESSAGE})
        logger.info("[%s] run completed", self.id)
        await self._notify(
            "complete",
            plan=self.context.plan_as_dicts(),
            current_step=self.context.current_step,
            message=COMPLETE_MESSAGE,
        )

    async def _fail(self, message: str) -> None:
        if not self.running:
            return
        self.token.cancel("errored")
        self.status = RunStatus.ERRORED
        self.phase = SessionPhase.ERRORED
        self.stream.append(EventType.ERROR, {"message": f"Error: {message}"})
        await self._notify("error", message=message)

    async def _abort(self, reason: str) -> None:
        self.status = RunStatus.ABORTED
        self.phase = SessionPhase.ABORTED
        self.stream.append(EventType.TERMINATE, {"message": TERMINATE_MESSAGE})
        logger.info("[%s] run aborted: %s", self.id, reason)
        await self._notify("terminate", message=TERMINATE_MESSAGE)

    # ── Notifications ───────────────────────────────────────────

    async def _notify(self, kind: str, **fields) -> None:
        notification = Notification(
            kind=kind,
            session_id=self.id,
            events=self.stream.to_list(),
            **fields,
        )
        for observer in [*self.runtime.observers, *self._observers]:
            try:
                await observer(notification)
            except Exception:
                logger.exception("[%s] observer failed on %s", self.id, kind)

        if kind in TERMINAL_NOTIFICATIONS and self.runtime.store is not None:
            try:
                await self.runtime.store.save(self.id, notification.events, self.status.value)
            except Exception:
                logger.exception("[%s] failed to persist events", self.id)
