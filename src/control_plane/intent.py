"""Intent classification and execution planning.

Maps a (method, path) pair to a structured intent (resource, action,
required tools, auth requirement) and builds the ordered execution plan
for the intent's tools.
"""

from typing import Any, Optional

from shared.logging import get_logger
from shared.models import AuthType, ExecutionStep, ResolvedIntent
from control_plane.routes import RouteRegistry, get_route_registry

logger = get_logger(__name__)

# Per-tool-class timeouts in milliseconds: AI > external API > everything else
AI_TOOL_TIMEOUTS = {
    "claude": 120000,
    "stability": 60000,
}
EXTERNAL_TOOL_PREFIXES = ("source-", "google-")
EXTERNAL_TOOL_TIMEOUT = 30000
DEFAULT_TOOL_TIMEOUT = 10000


def get_tool_timeout(tool_id: str) -> int:
    """Default step timeout (ms) for a tool."""
    if tool_id in AI_TOOL_TIMEOUTS:
        return AI_TOOL_TIMEOUTS[tool_id]
    if tool_id.startswith(EXTERNAL_TOOL_PREFIXES):
        return EXTERNAL_TOOL_TIMEOUT
    return DEFAULT_TOOL_TIMEOUT


def create_execution_plan(tools: list[str]) -> list[ExecutionStep]:
    """
    Build a sequential plan: each step depends on the one before it.

    Args:
        tools: Tool IDs in execution order

    Returns:
        One step per tool
    """
    return [
        ExecutionStep(
            order=index,
            tool_id=tool_id,
            parallel=False,
            depends_on=(index - 1,) if index > 0 else (),
            timeout_ms=get_tool_timeout(tool_id),
        )
        for index, tool_id in enumerate(tools)
    ]


def validate_execution_plan(steps: list[ExecutionStep]) -> None:
    """
    Check that every dependency points at an earlier step.

    Raises:
        ValueError: On duplicate orders, or forward, self or unknown references
    """
    seen: set[int] = set()
    for step in steps:
        if step.order in seen:
            raise ValueError(f"Duplicate step order {step.order}")
        for dep in step.depends_on:
            if dep == step.order:
                raise ValueError(f"Step {step.order} depends on itself")
            if dep not in seen:
                raise ValueError(
                    f"Step {step.order} depends on {dep}, which is not an earlier step"
                )
        seen.add(step.order)


def plan_levels(steps: list[ExecutionStep]) -> list[list[ExecutionStep]]:
    """
    Group a valid plan into levels that can run one after another.

    A step lands one level after its deepest dependency, so steps in the
    same level never depend on each other.
    """
    validate_execution_plan(steps)

    depth: dict[int, int] = {}
    levels: list[list[ExecutionStep]] = []
    for step in steps:
        level = max((depth[d] + 1 for d in step.depends_on), default=0)
        depth[step.order] = level
        while len(levels) <= level:
            levels.append([])
        levels[level].append(step)
    return levels


class IntentClassifier:
    """Classifies requests against a route registry."""

    def __init__(self, registry: Optional[RouteRegistry] = None) -> None:
        self.registry = registry if registry is not None else get_route_registry()

    def classify_intent(self, method: str, path: str) -> Optional[ResolvedIntent]:
        """
        Classify a request into an intent.

        Args:
            method: HTTP method
            path: Request path

        Returns:
            Resolved intent, or None if no route matches
        """
        match = self.registry.match(method, path)
        if match is None:
            logger.warning("No intent match found for route", method=method, path=path)
            return None

        route = match.definition
        tools = list(route.tools)

        logger.debug(
            "Classified intent",
            intent=route.qualified_action,
            method=method,
            path=path
        )

        return ResolvedIntent(
            action=route.action,
            resource=route.resource,
            sub_action=route.sub_action,
            tools=tools,
            auth_required=route.auth_type != AuthType.NONE,
            auth_type=route.auth_type,
            params=match.params,
            execution_plan=create_execution_plan(tools),
            route=route,
        )

    def get_auth_type(self, method: str, path: str) -> AuthType:
        """Auth type of the matching route; ``none`` when nothing matches."""
        match = self.registry.match(method, path)
        return match.definition.auth_type if match else AuthType.NONE

    def get_all_route_patterns(self) -> list[dict[str, Any]]:
        """Route patterns for documentation; not used on the request path."""
        return [
            {
                "method": r.method.value,
                "pattern": r.path_pattern,
                "resource": r.resource,
                "action": r.action,
                "sub_action": r.sub_action,
                "tools": list(r.tools),
                "requires_auth": r.auth_type != AuthType.NONE,
                "multi_param": self.registry.get_pattern(r).multi_param,
            }
            for r in self.registry.list_routes()
        ]


def requires_auth(intent: ResolvedIntent) -> bool:
    return intent.auth_required


def resolve_tools(intent: ResolvedIntent) -> list[str]:
    return list(intent.tools)


# Convenience functions bound to the global registry

def classify_intent(method: str, path: str) -> Optional[ResolvedIntent]:
    return IntentClassifier(get_route_registry()).classify_intent(method, path)


def get_auth_type(method: str, path: str) -> AuthType:
    return IntentClassifier(get_route_registry()).get_auth_type(method, path)


def get_all_route_patterns() -> list[dict[str, Any]]:
    return IntentClassifier(get_route_registry()).get_all_route_patterns()
