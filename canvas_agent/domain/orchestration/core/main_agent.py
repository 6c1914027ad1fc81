import asyncio
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional, Tuple, TypedDict, Union

import structlog
from langchain_core.messages import HumanMessage
from langgraph.graph import END, StateGraph

from ...context.context_budget import CategorySpec, ContextBudgetManager, ContextCategory
from ...context.context_manager import ContextManager
from ...context.echo_prevention import CorrectionKind, EchoPoisoningPrevention
from ...context.state.awareness_cache import AwarenessCache, AwarenessSnapshot, DomainChange, detect_domain_change
from ...context.state.checkpoint_store import CheckpointStore
from ...context.state.serialization import (
    RunSnapshot,
    capture_snapshot,
    generate_session_id,
    restore_awareness,
    restore_budget_manager,
    restore_echo_prevention,
    restore_lifecycle,
)
from ...context.tool_lifecycle import ToolResultLifecycle
from ...errors import CheckpointError, OperationCancelled, ProviderError, RunInProgressError
from ...llm.base_provider import GenerateRequest, GenerateResult, LLMProvider
from ...models.agent_state import (
    Decision,
    DecisionType,
    FailureKind,
    Run,
    Task,
    ToolCallResult,
)
from ...models.events import (
    BaseEvent,
    CancelledEvent,
    CheckpointEvent,
    CompleteEvent,
    ContextEvent,
    CorrectionEvent,
    ErrorEvent,
    FailedEvent,
    ReasoningEvent,
    ThinkingEvent,
    TimeoutEvent,
    ToolCallEvent,
    ToolResultEvent,
    is_terminal,
)
from ...tool.action_adapter import (
    ActionAdapter,
    ActionDefinition,
    ActionResult,
    AwarenessContext,
    AwarenessOptions,
)
from ...tool.tool_executor import ToolExecutor
from ...tool.tool_hooks import HookManager
from ...tool.tool_registry import ToolRegistry
from ....infrastructure.config.settings import AgentSettings
from ....infrastructure.observability.logging import (
    AgentLogger,
    MetricsCollector,
    bind_run_context,
    clear_run_context,
)
from .cancellation import CancellationToken, run_with_deadline
from .decide import decide

logger = structlog.get_logger(__name__)
agent_logger = AgentLogger(__name__)

PLAN_TOOL_NAME = "agent_plan"

PLAN_TOOL = ActionDefinition(
    name=PLAN_TOOL_NAME,
    description="Replace the working plan with an ordered list of steps and their status",
    category="planning",
    input_schema={
        "type": "object",
        "properties": {
            "tasks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "content": {"type": "string", "minLength": 1},
                        "status": {
                            "type": "string",
                            "enum": ["pending", "in_progress", "blocked", "completed", "failed", "skipped"],
                        },
                    },
                    "required": ["content"],
                },
            },
        },
        "required": ["tasks"],
    },
)

# Failures that never reached the adapter cannot have changed the domain
_UNDISPATCHED = {FailureKind.VALIDATION, FailureKind.UNKNOWN_ACTION, FailureKind.BLOCKED}

AdapterFactory = Callable[[], ActionAdapter]


def _stale_state_message(change: DomainChange, snapshot: AwarenessSnapshot) -> str:
    parts = []
    if change.added:
        parts.append(f"{len(change.added)} added")
    if change.removed:
        parts.append(f"{len(change.removed)} removed ({', '.join(change.removed[:5])})")
    detail = f" Items {' and '.join(parts)}." if parts else ""
    summary = snapshot.summary.rstrip(".")
    return (
        f"The domain changed while this run was paused. It now shows: {summary}.{detail} "
        "Do not rely on observations made before the restart."
    )


class RunComponents:
    """Per-run instances of every stateful collaborator"""

    def __init__(
        self,
        adapter: ActionAdapter,
        budget_manager: ContextBudgetManager,
        lifecycle: ToolResultLifecycle,
        echo_prevention: EchoPoisoningPrevention,
        awareness: AwarenessCache,
        registry: ToolRegistry,
        executor: ToolExecutor,
        context_manager: ContextManager,
        resumed_awareness: Optional[AwarenessSnapshot] = None,
    ):
        self.adapter = adapter
        self.budget_manager = budget_manager
        self.lifecycle = lifecycle
        self.echo_prevention = echo_prevention
        self.awareness = awareness
        self.registry = registry
        self.executor = executor
        self.context_manager = context_manager
        # Awareness saved in the checkpoint, compared once against the first fresh fetch
        self.resumed_awareness = resumed_awareness

    def snapshot(self, run: Run) -> RunSnapshot:
        return capture_snapshot(run, self.budget_manager, self.lifecycle, self.echo_prevention, self.awareness)


class WorkflowState(TypedDict):
    """State for the loop graph"""
    run: Run
    components: RunComponents
    cancel_token: CancellationToken
    request: Optional[GenerateRequest]
    generation: Optional[GenerateResult]
    results: List[ToolCallResult]
    decision: Optional[Decision]
    events: List[BaseEvent]


class AgentLoop:
    """THINK -> ACT -> OBSERVE -> DECIDE loop built on LangGraph.

    Collaborators are injected and every call to ``run`` builds fresh
    run-scoped components. ``adapter`` is either an ActionAdapter or a
    factory returning one. With a factory each run connects its own adapter,
    so runs may overlap. A single adapter instance serves one run at a time
    and an overlapping run raises RunInProgressError.
    """

    def __init__(
        self,
        adapter: Union[ActionAdapter, AdapterFactory],
        provider: LLMProvider,
        settings: Optional[AgentSettings] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        skills: Optional[str] = None,
        budget_categories: Optional[Dict[str, CategorySpec]] = None,
        metrics: Optional[MetricsCollector] = None,
        hooks: Optional[HookManager] = None,
    ):
        if isinstance(adapter, ActionAdapter):
            self.adapter: Optional[ActionAdapter] = adapter
            self.adapter_factory: Optional[AdapterFactory] = None
        else:
            self.adapter = None
            self.adapter_factory = adapter
        self._adapter_in_use = False
        self.hooks = hooks or HookManager()
        self.provider = provider
        self.settings = settings or AgentSettings()
        self.checkpoint_store = checkpoint_store
        self.skills = skills
        self.budget_categories = budget_categories
        self.metrics = metrics or MetricsCollector()
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the loop graph"""

        workflow = StateGraph(WorkflowState)

        workflow.add_node("guard", self.guard_node)
        workflow.add_node("think", self.think_node)
        workflow.add_node("generate", self.generate_node)
        workflow.add_node("act", self.act_node)
        workflow.add_node("observe", self.observe_node)
        workflow.add_node("decide", self.decide_node)

        workflow.set_entry_point("guard")

        workflow.add_conditional_edges(
            "guard",
            self.route_after_guard,
            {"think": "think", "end": END},
        )
        # THINK events reach the caller before the provider call starts
        workflow.add_edge("think", "generate")
        workflow.add_conditional_edges(
            "generate",
            self.route_after_generate,
            {"act": "act", "decide": "decide"},
        )
        workflow.add_edge("act", "observe")
        workflow.add_edge("observe", "decide")
        workflow.add_conditional_edges(
            "decide",
            self.route_after_decide,
            {"continue": "guard", "end": END},
        )

        return workflow.compile()

    async def run(
        self,
        task: str,
        session_id: Optional[str] = None,
        *,
        resolved_task: Optional[str] = None,
        tasks: Optional[List[Task]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[BaseEvent]:
        """Run a task, yielding events until exactly one terminal event"""

        run = Run(
            session_id=session_id or generate_session_id(),
            task=task,
            resolved_task=resolved_task,
            tasks=list(tasks or []),
            max_history_entries=self.settings.max_history_entries,
        )
        async for event in self._execute(run, None, cancel_token or CancellationToken()):
            yield event

    async def resume(
        self,
        session_id: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[BaseEvent]:
        """Continue a checkpointed run from its last saved iteration"""

        if self.checkpoint_store is None:
            raise CheckpointError("No checkpoint store configured")

        snapshot = await self.checkpoint_store.load(session_id)
        if snapshot is None:
            raise CheckpointError(f"No checkpoint found for session '{session_id}'")
        if snapshot.run.status.is_terminal:
            raise CheckpointError(f"Session '{session_id}' already finished as {snapshot.run.status.value}")

        logger.info("Resuming run", session_id=session_id, iteration=snapshot.iteration)
        async for event in self._execute(snapshot.run, snapshot, cancel_token or CancellationToken()):
            yield event

    async def _execute(
        self,
        run: Run,
        snapshot: Optional[RunSnapshot],
        cancel_token: CancellationToken,
    ) -> AsyncIterator[BaseEvent]:
        adapter = self._acquire_adapter()
        bind_run_context(run.session_id)
        logger.info("Run started", session_id=run.session_id, task=run.effective_task[:100])

        components: Optional[RunComponents] = None
        terminal_emitted = False
        started = time.monotonic()

        try:
            if not await self._connect(run, adapter):
                message = "Could not connect to the action adapter"
                run.log_error("ADAPTER_CONNECTION_FAILED", message, recoverable=False)
                yield ErrorEvent(
                    session_id=run.session_id,
                    iteration=run.iteration,
                    code="ADAPTER_CONNECTION_FAILED",
                    message=message,
                    recoverable=False,
                )
                terminal_emitted = True
                yield self._finish(run, Decision(type=DecisionType.FAILED, reason=message))
                return

            components = self._create_components(run, snapshot, adapter)

            initial_state: WorkflowState = {
                "run": run,
                "components": components,
                "cancel_token": cancel_token,
                "request": None,
                "generation": None,
                "results": [],
                "decision": None,
                "events": [],
            }
            config = {"recursion_limit": self.settings.max_iterations * 6 + 10}

            async for chunk in self.workflow.astream(initial_state, config=config, stream_mode="updates"):
                for node_update in chunk.values():
                    for event in (node_update or {}).get("events", []):
                        if is_terminal(event):
                            terminal_emitted = True
                        yield event

            if not terminal_emitted:
                terminal_emitted = True
                yield self._finish(run, Decision(type=DecisionType.FAILED, reason="Loop ended without a decision"))

        except Exception as e:
            logger.exception("Run aborted by internal error", session_id=run.session_id, error=str(e))
            if not terminal_emitted:
                run.log_error("INTERNAL_ERROR", str(e), recoverable=False)
                await self.hooks.trigger_error(
                    "INTERNAL_ERROR", str(e), session_id=run.session_id, iteration=run.iteration,
                )
                terminal_emitted = True
                yield self._finish(run, Decision(type=DecisionType.FAILED, reason=f"Internal error: {e}"))

        finally:
            await self._cleanup(run, adapter, components)
            self._release_adapter()
            self.metrics.record_latency("run", (time.monotonic() - started) * 1000, {"status": run.status.value})
            clear_run_context()

    def _acquire_adapter(self) -> ActionAdapter:
        """Adapter for a new run: a fresh one from the factory, or the shared instance when idle"""

        if self.adapter_factory is not None:
            return self.adapter_factory()
        if self._adapter_in_use:
            raise RunInProgressError(
                "The shared adapter is serving another run; construct the loop with an adapter factory "
                "to run tasks concurrently"
            )
        self._adapter_in_use = True
        return self.adapter

    def _release_adapter(self):
        if self.adapter_factory is None:
            self._adapter_in_use = False

    def _create_components(
        self,
        run: Run,
        snapshot: Optional[RunSnapshot],
        adapter: ActionAdapter,
    ) -> RunComponents:
        settings = self.settings
        resumed_awareness = None

        if snapshot is not None:
            budget_manager = restore_budget_manager(snapshot)
            lifecycle = restore_lifecycle(snapshot)
            echo_prevention = restore_echo_prevention(snapshot)
            awareness = restore_awareness(snapshot, settings.awareness_ttl)
            # The domain may have moved on while the run was paused
            awareness.mark_stale()
            resumed_awareness = snapshot.awareness
        else:
            budget_manager = ContextBudgetManager(settings.token_budget, self.budget_categories)
            lifecycle = ToolResultLifecycle(settings.recent_threshold, settings.archive_threshold)
            echo_prevention = EchoPoisoningPrevention(settings.loop_threshold)
            awareness = AwarenessCache(ttl_seconds=settings.awareness_ttl)

        registry = ToolRegistry(adapter.available_actions())
        registry.register_local_tool(PLAN_TOOL)

        executor = ToolExecutor(
            adapter,
            registry,
            timeout=settings.tool_timeout,
            parallel=settings.parallel_tool_calls,
            metrics=self.metrics,
            hooks=self.hooks,
        )

        async def update_plan(args: Dict[str, Any]) -> ActionResult:
            run.tasks = [Task(content=item["content"], status=item.get("status", "pending")) for item in args["tasks"]]
            return ActionResult(success=True, data={"tasks": len(run.tasks), "open": len(run.open_tasks())})

        executor.register_local_handler(PLAN_TOOL_NAME, update_plan)

        return RunComponents(
            adapter=adapter,
            budget_manager=budget_manager,
            lifecycle=lifecycle,
            echo_prevention=echo_prevention,
            awareness=awareness,
            registry=registry,
            executor=executor,
            context_manager=ContextManager(budget_manager, skills=self.skills),
            resumed_awareness=resumed_awareness,
        )

    # Nodes

    async def guard_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Check cancellation and open the next iteration"""

        run = state["run"]
        token = state["cancel_token"]

        if token.cancelled:
            decision = Decision(type=DecisionType.CANCELLED, reason=token.reason or "Cancelled by caller")
            return {"decision": decision, "events": [self._finish(run, decision)]}

        if run.iteration >= self.settings.max_iterations:
            decision = Decision(
                type=DecisionType.TIMEOUT,
                reason=f"Reached maximum iterations ({self.settings.max_iterations})",
            )
            return {"decision": decision, "events": [self._finish(run, decision)]}

        run.start_iteration()
        bind_run_context(run.session_id, run.iteration)

        return {"run": run, "request": None, "generation": None, "results": [], "decision": None, "events": []}

    async def think_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Refresh awareness, surface corrections and assemble the prompt"""

        run = state["run"]
        components = state["components"]
        token = state["cancel_token"]
        record = run.current_record
        agent_logger.log_iteration(run.session_id, run.iteration, "think")

        events: List[BaseEvent] = [
            ThinkingEvent(
                session_id=run.session_id,
                iteration=run.iteration,
                message=f"Iteration {run.iteration}/{self.settings.max_iterations}",
            )
        ]

        components.echo_prevention.set_iteration(run.iteration)
        report = components.lifecycle.age_results(run.iteration)
        awareness, refreshed = await self._get_awareness(run, components, token)

        # Pending corrections are surfaced once
        pending = components.echo_prevention.pending_corrections()
        corrections = components.echo_prevention.format_corrections_for_context()
        if corrections:
            record.corrections = corrections
            events.append(CorrectionEvent(
                session_id=run.session_id,
                iteration=run.iteration,
                corrections=[item.message for item in pending],
            ))

        prompt = components.context_manager.build_context(
            run,
            system_prompt=self.settings.system_prompt,
            tool_catalog=components.registry.describe(),
            awareness=awareness,
            lifecycle=components.lifecycle,
            corrections=corrections,
        )

        events.append(ContextEvent(
            session_id=run.session_id,
            iteration=run.iteration,
            summary=awareness.summary if awareness else "",
            tokens_used=prompt.tokens_used,
            token_budget=components.budget_manager.budget.total,
            awareness_refreshed=refreshed,
            domain_version=components.awareness.version,
            compression_applied=prompt.built.compression_applied,
            tokens_reclaimed=report.tokens_reclaimed,
            tokens_archived=report.tokens_archived,
            warnings=prompt.warnings,
        ))
        agent_logger.log_context_update(
            run.session_id,
            tokens_used=prompt.tokens_used,
            token_budget=components.budget_manager.budget.total,
            details={"warnings": prompt.warnings, "refreshed": refreshed},
        )

        request = GenerateRequest(
            model=self.settings.model,
            system_prompt=prompt.system_prompt,
            message_history=[HumanMessage(content=prompt.message)],
            tool_catalog=components.registry.get_available_tools(),
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )

        return {"run": run, "request": request, "generation": None, "events": events}

    async def generate_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Ask the provider for the next step and announce the calls it requested"""

        run = state["run"]
        components = state["components"]
        token = state["cancel_token"]
        record = run.current_record
        events: List[BaseEvent] = []

        generation = None
        started = time.monotonic()
        try:
            raw = await run_with_deadline(
                self.provider.generate(state["request"]),
                self.settings.generation_timeout,
                token,
            )
            generation = raw if isinstance(raw, GenerateResult) else GenerateResult.model_validate(raw)
        except OperationCancelled:
            logger.info("Generation abandoned on cancellation", session_id=run.session_id)
        except asyncio.TimeoutError:
            events.append(await self._generation_error(
                run, components, "GENERATION_TIMEOUT",
                f"Generation timed out after {self.settings.generation_timeout}s", True,
            ))
        except ProviderError as e:
            events.append(await self._generation_error(run, components, e.code, str(e), e.recoverable))
        except Exception as e:
            events.append(await self._generation_error(run, components, "GENERATION_ERROR", str(e), True))

        self.metrics.record_latency("generation", (time.monotonic() - started) * 1000)

        if generation is not None:
            record.text = generation.text
            record.tool_calls = list(generation.tool_calls)
            if generation.tool_calls and generation.text:
                events.append(ReasoningEvent(session_id=run.session_id, iteration=run.iteration, content=generation.text))
            self.metrics.increment_counter("tokens.prompt", generation.usage.prompt_tokens)
            self.metrics.increment_counter("tokens.completion", generation.usage.completion_tokens)

        if self._will_act(generation, token):
            for call in generation.tool_calls:
                events.append(ToolCallEvent(
                    session_id=run.session_id,
                    iteration=run.iteration,
                    call_id=call.id,
                    tool=call.name,
                    input=call.args,
                    mutating=components.registry.is_mutating(call.name),
                ))

        return {"run": run, "generation": generation, "events": events}

    async def act_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Execute requested tool calls"""

        run = state["run"]
        components = state["components"]
        calls = state["generation"].tool_calls
        agent_logger.log_iteration(run.session_id, run.iteration, "act", {"calls": len(calls)})

        results = await components.executor.execute_all(
            calls,
            state["cancel_token"],
            hook_context={"session_id": run.session_id, "iteration": run.iteration},
        )

        events: List[BaseEvent] = []
        for call, result in zip(calls, results):
            events.append(ToolResultEvent(
                session_id=run.session_id,
                iteration=run.iteration,
                call_id=call.id,
                tool=call.name,
                success=result.success,
                data=result.data,
                error=result.error,
                failure_kind=result.failure_kind,
                duration_ms=result.duration_ms,
            ))

        return {"results": results, "events": events}

    async def observe_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Fold results into lifecycle, echo tracking and awareness"""

        run = state["run"]
        components = state["components"]
        results = state["results"]
        record = run.current_record
        agent_logger.log_iteration(run.session_id, run.iteration, "observe")

        snapshot = components.awareness.snapshot
        known_ids = snapshot.known_ids() if snapshot is not None and not components.awareness.is_stale else None

        mutated = False
        for result in results:
            error_message = result.error.message if result.error else None

            components.lifecycle.add_result(
                result.call.name,
                result.call.args,
                result.data,
                run.iteration,
                result.success,
                error=error_message,
            )
            components.echo_prevention.record_tool_result(
                result.call.name,
                result.call.args,
                result.success,
                error_message,
            )

            if result.success:
                components.echo_prevention.track_created_ids(result.call.name, result.data)
            else:
                run.log_error(result.error.code, f"{result.call.name}: {error_message}", result.error.recoverable)
                self._check_references(components, result, known_ids)

            if result.mutating and result.failure_kind not in _UNDISPATCHED:
                mutated = True

            agent_logger.log_tool_execution(
                result.call.name,
                run.session_id,
                result.call.args,
                duration_ms=result.duration_ms,
                success=result.success,
                error=error_message,
            )

        record.results = list(results)

        if mutated:
            components.awareness.invalidate()
        else:
            components.awareness.bump_version()

        return {"run": run, "events": []}

    async def decide_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Count errors, checkpoint when due, and pick the next step"""

        run = state["run"]
        components = state["components"]
        token = state["cancel_token"]
        record = run.current_record

        if record is not None:
            run.consecutive_errors = run.consecutive_errors + 1 if record.errored else 0

        decision = decide(
            run,
            record,
            max_iterations=self.settings.max_iterations,
            max_errors=self.settings.max_errors,
            cancelled=token.cancelled,
            cancel_reason=token.reason,
            generation=state["generation"],
        )
        agent_logger.log_decision(
            run.session_id,
            run.iteration,
            decision.type.value,
            reason=decision.reason,
            state_summary=run.get_state_summary(),
        )

        events: List[BaseEvent] = []
        interval = self.settings.checkpoint_interval
        if interval > 0 and run.iteration % interval == 0:
            checkpoint = await self._checkpoint(run, components)
            if checkpoint is not None:
                events.append(checkpoint)

        if decision.is_terminal:
            events.append(self._finish(run, decision))

        self.metrics.set_gauge("iterations", run.iteration)
        return {"run": run, "decision": decision, "events": events}

    # Routers

    def route_after_guard(self, state: WorkflowState) -> Literal["think", "end"]:
        decision = state.get("decision")
        return "end" if decision is not None and decision.is_terminal else "think"

    def route_after_generate(self, state: WorkflowState) -> Literal["act", "decide"]:
        return "act" if self._will_act(state.get("generation"), state["cancel_token"]) else "decide"

    def route_after_decide(self, state: WorkflowState) -> Literal["continue", "end"]:
        decision = state.get("decision")
        return "end" if decision is not None and decision.is_terminal else "continue"

    # Helpers

    @staticmethod
    def _will_act(generation: Optional[GenerateResult], token: CancellationToken) -> bool:
        return generation is not None and bool(generation.tool_calls) and not token.cancelled

    async def _connect(self, run: Run, adapter: ActionAdapter) -> bool:
        try:
            return bool(await adapter.connect())
        except Exception as e:
            logger.error("Adapter connection failed", session_id=run.session_id, error=str(e))
            return False

    async def _get_awareness(
        self,
        run: Run,
        components: RunComponents,
        token: CancellationToken,
    ) -> Tuple[Optional[AwarenessSnapshot], bool]:
        """Cached awareness, refreshed from the adapter only when stale"""

        cache = components.awareness
        if not cache.needs_refresh():
            return cache.snapshot, False

        options = AwarenessOptions(
            context_hint=run.effective_task,
            max_tokens=components.budget_manager.allocated(ContextCategory.DOMAIN_STATE),
        )
        try:
            raw = await run_with_deadline(components.adapter.get_awareness(options), self.settings.tool_timeout, token)
            context = raw if isinstance(raw, AwarenessContext) else AwarenessContext.model_validate(raw)
        except OperationCancelled:
            return cache.snapshot, False
        except Exception as e:
            logger.warning("Awareness refresh failed", session_id=run.session_id, error=str(e))
            return cache.snapshot, False

        snapshot = cache.capture(context.summary, context.skeleton, context.relevant, context.tokens_used)

        known_ids = snapshot.known_ids()
        if known_ids is not None:
            components.echo_prevention.verify_created_ids(known_ids)

        if components.resumed_awareness is not None:
            change = detect_domain_change(components.resumed_awareness, snapshot)
            components.resumed_awareness = None
            if change.has_changed:
                logger.info(
                    "Domain changed since checkpoint",
                    session_id=run.session_id,
                    added=len(change.added),
                    removed=len(change.removed),
                )
                components.echo_prevention.add_correction(
                    CorrectionKind.STALE_STATE, f"resume:{run.iteration}", _stale_state_message(change, snapshot),
                )

        return snapshot, True

    def _check_references(self, components: RunComponents, result: ToolCallResult, known_ids):
        """Queue a correction for each ID a failed call named that the domain does not know"""

        definition = components.registry.get_tool(result.call.name)
        if known_ids is None or definition is None or not definition.reference_fields:
            return

        check = components.echo_prevention.validate_tool_input(
            result.call.name, result.call.args, definition.reference_fields, known_ids,
        )
        for issue in check.issues:
            components.echo_prevention.add_invalid_reference_correction(issue.claimed)

    async def _generation_error(
        self,
        run: Run,
        components: RunComponents,
        code: str,
        message: str,
        recoverable: bool,
    ) -> ErrorEvent:
        logger.warning("Generation failed", session_id=run.session_id, code=code, error=message)

        error = run.log_error(code, message, recoverable)
        run.current_record.generation_error = error
        components.echo_prevention.record_generation_error(message)
        self.metrics.increment_counter("generation_errors")
        await self.hooks.trigger_error(code, message, session_id=run.session_id, iteration=run.iteration)

        return ErrorEvent(
            session_id=run.session_id,
            iteration=run.iteration,
            code=code,
            message=message,
            recoverable=recoverable,
        )

    async def _checkpoint(self, run: Run, components: RunComponents) -> Optional[CheckpointEvent]:
        """Save a checkpoint; failures are logged and never end the run"""

        if self.checkpoint_store is None:
            return None

        try:
            await self.checkpoint_store.save(components.snapshot(run), run.session_id)
        except Exception as e:
            logger.warning("Checkpoint failed", session_id=run.session_id, error=str(e))
            return None

        return CheckpointEvent(
            session_id=run.session_id,
            iteration=run.iteration,
            domain_version=components.awareness.version,
        )

    def _finish(self, run: Run, decision: Decision) -> BaseEvent:
        """Record the outcome and build the terminal event"""

        run.finish(decision)
        logger.info(
            "Run finished",
            session_id=run.session_id,
            status=run.status.value,
            iterations=run.iteration,
            reason=decision.reason,
        )
        common = {"session_id": run.session_id, "iteration": run.iteration}

        if decision.type == DecisionType.COMPLETE:
            elapsed = (time.time() - run.started_at.timestamp()) * 1000
            return CompleteEvent(summary=decision.summary or "", duration_ms=elapsed, **common)
        if decision.type == DecisionType.TIMEOUT:
            return TimeoutEvent(iterations=run.iteration, max_iterations=self.settings.max_iterations, **common)
        if decision.type == DecisionType.CANCELLED:
            return CancelledEvent(reason=decision.reason or "Cancelled by caller", **common)
        return FailedEvent(reason=decision.reason or "Run failed", errors=list(run.errors), **common)

    async def _cleanup(self, run: Run, adapter: ActionAdapter, components: Optional[RunComponents]):
        try:
            await adapter.disconnect()
        except Exception as e:
            logger.warning("Adapter disconnect failed", session_id=run.session_id, error=str(e))

        if components is not None and self.settings.checkpoint_interval > 0:
            await self._checkpoint(run, components)
