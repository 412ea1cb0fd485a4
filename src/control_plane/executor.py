"""Execution plan runner.

Routes each step of an intent's execution plan to the registered tool
handler, enforcing per-step timeouts. Tool implementations themselves
(AI generation, storage, Google APIs) are external and plugged in as
handlers.
"""

import asyncio
import functools
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import ExecutionStep, RequestContext, ResolvedIntent
from control_plane.intent import plan_levels
from control_plane.metrics import Metrics, get_metrics
from control_plane.responses import ErrorCode

logger = get_logger(__name__)


class ToolContext(BaseModel):
    """What a tool handler knows about the request it serves."""
    correlation_id: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    resource: str
    action: str
    sub_action: Optional[str] = None
    params: dict[str, str] = Field(default_factory=dict)
    previous_result: Any = None


ToolHandler = Callable[[Any, ToolContext], Union[Any, Awaitable[Any]]]


class StepError(BaseModel):
    code: str
    message: str


class StepResult(BaseModel):
    order: int
    tool_id: str
    success: bool
    data: Any = None
    error: Optional[StepError] = None
    duration_ms: float = 0


class PlanResult(BaseModel):
    """Outcome of running a whole plan."""
    success: bool
    steps: list[StepResult] = Field(default_factory=list)

    @property
    def data(self) -> Any:
        """Result of the last completed step."""
        return self.steps[-1].data if self.steps else None

    @property
    def error(self) -> Optional[StepError]:
        for step in self.steps:
            if not step.success:
                return step.error
        return None


class ToolRouter:
    """
    Routes execution steps to tool handlers.

    Responsibilities:
    - Register handlers per tool ID (async or sync)
    - Enable and disable registered tools at runtime
    - Run plans level by level, parallel steps together
    - Enforce step timeouts; no retries at this layer
    """

    def __init__(self, metrics: Optional[Metrics] = None) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._disabled: set[str] = set()
        self._metrics = metrics

    def register_handler(self, tool_id: str, handler: ToolHandler) -> None:
        """
        Register a tool handler.

        Args:
            tool_id: Tool identifier (e.g. claude, db-newsletter)
            handler: Callable taking (payload, ToolContext); may be async
        """
        self._handlers[tool_id] = handler
        logger.info("Tool handler registered", tool=tool_id)

    def unregister_handler(self, tool_id: str) -> bool:
        if tool_id in self._handlers:
            del self._handlers[tool_id]
            self._disabled.discard(tool_id)
            logger.info("Tool handler unregistered", tool=tool_id)
            return True
        return False

    def has_handler(self, tool_id: str) -> bool:
        return tool_id in self._handlers

    def list_tools(self) -> list[str]:
        return sorted(self._handlers)

    def enable_tool(self, tool_id: str) -> bool:
        """Re-enable a registered tool. Returns False for unknown tools."""
        if tool_id not in self._handlers:
            return False
        self._disabled.discard(tool_id)
        logger.info("Tool enabled", tool=tool_id)
        return True

    def disable_tool(self, tool_id: str) -> bool:
        """
        Keep a tool registered but refuse to run it.

        Steps for a disabled tool fail with TOOL_DISABLED. Returns False
        for unknown tools.
        """
        if tool_id not in self._handlers:
            return False
        self._disabled.add(tool_id)
        logger.info("Tool disabled", tool=tool_id)
        return True

    def is_enabled(self, tool_id: str) -> bool:
        return tool_id in self._handlers and tool_id not in self._disabled

    def list_disabled(self) -> list[str]:
        return sorted(self._disabled)

    async def _call_handler(self, handler: ToolHandler, payload: Any, context: ToolContext) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(payload, context)

        # Run sync handler in thread pool
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(handler, payload, context))
        if asyncio.iscoroutine(result):
            return await result
        return result

    async def execute_step(
        self,
        step: ExecutionStep,
        payload: Any,
        context: ToolContext
    ) -> StepResult:
        """
        Run a single step within its timeout.

        Args:
            step: Execution step
            payload: Validated request data
            context: Tool context for the handler

        Returns:
            StepResult; failures are reported, never raised
        """
        start_time = time.monotonic()
        handler = self._handlers.get(step.tool_id)

        def result(success: bool, data: Any = None, code: Optional[ErrorCode] = None, message: str = "") -> StepResult:
            return StepResult(
                order=step.order,
                tool_id=step.tool_id,
                success=success,
                data=data,
                error=StepError(code=code.value, message=message) if code else None,
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

        if handler is None:
            logger.warning("No handler registered for tool", tool=step.tool_id)
            return result(False, code=ErrorCode.TOOL_DISABLED, message=f"Tool '{step.tool_id}' is not available")

        if step.tool_id in self._disabled:
            logger.warning("Tool is disabled", tool=step.tool_id, correlation_id=context.correlation_id)
            return result(False, code=ErrorCode.TOOL_DISABLED, message=f"Tool '{step.tool_id}' is disabled")

        try:
            data = await asyncio.wait_for(
                self._call_handler(handler, payload, context),
                timeout=step.timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Tool step timed out",
                tool=step.tool_id,
                order=step.order,
                timeout_ms=step.timeout_ms,
                correlation_id=context.correlation_id
            )
            outcome = result(False, code=ErrorCode.TOOL_TIMEOUT, message=f"Tool '{step.tool_id}' timed out")
        except Exception as e:
            logger.error(
                "Tool execution failed",
                tool=step.tool_id,
                error=str(e),
                correlation_id=context.correlation_id,
                exc_info=True
            )
            outcome = result(False, code=ErrorCode.TOOL_EXECUTION_ERROR, message=f"Tool '{step.tool_id}' failed")
        else:
            outcome = result(True, data=data)

        (self._metrics or get_metrics()).record_tool(step.tool_id, outcome.success, outcome.duration_ms)
        return outcome

    async def execute_plan(
        self,
        intent: ResolvedIntent,
        context: RequestContext,
        request_data: Any = None
    ) -> PlanResult:
        """
        Run an intent's execution plan.

        Levels run in order; within a level, steps marked parallel run
        concurrently and the rest one at a time. The first failure stops
        the plan.

        Args:
            intent: Resolved intent carrying the plan
            context: Request context
            request_data: Validated request body

        Returns:
            PlanResult with per-step results
        """
        results: dict[int, StepResult] = {}
        ordered: list[StepResult] = []

        def tool_context(step: ExecutionStep) -> ToolContext:
            previous = results[step.depends_on[-1]].data if step.depends_on else None
            return ToolContext(
                correlation_id=context.correlation_id,
                user_id=context.user_id,
                user_email=context.user_email,
                resource=intent.resource,
                action=intent.action,
                sub_action=intent.sub_action,
                params=intent.params,
                previous_result=previous,
            )

        for level in plan_levels(intent.execution_plan):
            parallel = [s for s in level if s.parallel]
            sequential = [s for s in level if not s.parallel]

            batch: list[StepResult] = []
            if parallel:
                batch.extend(await asyncio.gather(*(
                    self.execute_step(s, request_data, tool_context(s)) for s in parallel
                )))
            for step in sequential:
                if any(not r.success for r in batch):
                    break
                batch.append(await self.execute_step(step, request_data, tool_context(step)))

            for step_result in batch:
                results[step_result.order] = step_result
                ordered.append(step_result)

            if any(not r.success for r in batch):
                return PlanResult(success=False, steps=ordered)

        return PlanResult(success=True, steps=ordered)


# Global router instance
_router: Optional[ToolRouter] = None


def get_tool_router() -> ToolRouter:
    global _router
    if _router is None:
        _router = ToolRouter()
    return _router
