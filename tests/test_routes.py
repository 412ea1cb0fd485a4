"""Tests for route matching, intent classification and execution planning."""

import pytest

from shared.models import AuthType, HttpMethod, RouteCategory, RouteDefinition


def make_route(method, path, resource="test", action="run", tools=("db-test",), **kwargs):
    return RouteDefinition(
        method=method,
        path_pattern=path,
        resource=resource,
        action=action,
        tools=tuple(tools),
        **kwargs
    )


class TestRouteRegistry:
    """Tests for the RouteRegistry."""

    def test_first_registered_route_wins(self):
        """Overlapping patterns resolve to the earlier registration."""
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.GET, "/api/personas/:id", action="read"))
        registry.register(make_route(HttpMethod.GET, "/api/personas/active", action="active"))

        match = registry.match("GET", "/api/personas/active")

        assert match is not None
        assert match.definition.action == "read"
        assert match.params["id"] == "active"

    def test_extracts_single_param_as_id(self):
        """The captured segment is exposed as params['id']."""
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.GET, "/api/newsletters/:id"))

        match = registry.match("GET", "/api/newsletters/abc123")

        assert match.params == {"id": "abc123"}

    def test_multi_param_routes_keep_every_name(self):
        """Named params are all extracted; id aliases the first."""
        from control_plane.routes import RouteRegistry, compile_path

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.GET, "/api/users/:userId/drafts/:draftId"))

        match = registry.match("GET", "/api/users/u1/drafts/d2")

        assert match.params == {"userId": "u1", "draftId": "d2", "id": "u1"}
        assert compile_path("/api/users/:userId/drafts/:draftId").multi_param

    def test_duplicate_param_names_rejected(self):
        from control_plane.routes import compile_path

        with pytest.raises(ValueError, match="Duplicate parameter"):
            compile_path("/api/:id/x/:id")

    def test_match_is_anchored_and_method_aware(self):
        """Partial paths, extra segments and other methods do not match."""
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.GET, "/api/newsletters/:id"))

        assert registry.match("GET", "/api/newsletters") is None
        assert registry.match("GET", "/api/newsletters/a/b") is None
        assert registry.match("DELETE", "/api/newsletters/a") is None
        assert registry.match("get", "/api/newsletters/a") is not None

    def test_literal_characters_are_escaped(self):
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.GET, "/api/v1.0/health"))

        assert registry.match("GET", "/api/v1.0/health") is not None
        assert registry.match("GET", "/api/v1x0/health") is None

    def test_duplicate_registration_keeps_first(self):
        """Registering the same route twice is allowed; the first still wins."""
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.POST, "/api/things", action="first"))
        registry.register(make_route(HttpMethod.POST, "/api/things", action="second"))

        assert len(registry) == 2
        assert registry.match("POST", "/api/things").definition.action == "first"

    def test_stats_and_grouping(self):
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register_many([
            make_route(HttpMethod.GET, "/api/a", category=RouteCategory.DRAFTS),
            make_route(HttpMethod.POST, "/api/b", category=RouteCategory.DRAFTS, auth_type=AuthType.OAUTH),
            make_route(HttpMethod.GET, "/api/c", category=RouteCategory.HEALTH, deprecated=True),
        ])

        stats = registry.stats()

        assert stats["total"] == 3
        assert stats["by_category"]["drafts"] == 2
        assert stats["deprecated"] == 1
        assert len(registry.by_category(RouteCategory.DRAFTS)) == 2
        assert len(registry.by_auth_type(AuthType.OAUTH)) == 1
        assert len(registry.list_routes(include_deprecated=False)) == 2

    def test_openapi_paths_use_brace_params(self):
        from control_plane.routes import RouteRegistry

        registry = RouteRegistry()
        registry.register(make_route(HttpMethod.GET, "/api/newsletters/:id", auth_type=AuthType.API_KEY))

        paths = registry.generate_openapi_paths()

        operation = paths["/api/newsletters/{id}"]["get"]
        assert operation["parameters"][0]["name"] == "id"
        assert operation["security"] == [{"ApiKeyAuth": []}]

    def test_default_table_loaded(self):
        """The global registry serves the newsletter route table."""
        from control_plane.routes import get_route_registry

        registry = get_route_registry()

        match = registry.match("POST", "/api/generateNewsletter")
        assert match.definition.auth_type == AuthType.API_KEY
        assert registry.match("GET", "/api/health").definition.tools == ()
        assert registry.match("POST", "/api/sendEmail").definition.auth_type == AuthType.OAUTH
        assert registry.match("GET", "/api/personas/active").params == {}


class TestExecutionPlan:
    """Tests for execution plan construction."""

    def test_sequential_plan_for_generation_tools(self):
        """Each step depends on the previous one; AI tools get the longest timeouts."""
        from control_plane.intent import create_execution_plan

        plan = create_execution_plan(["claude", "stability", "db-newsletter"])

        assert [s.order for s in plan] == [0, 1, 2]
        assert [list(s.depends_on) for s in plan] == [[], [0], [1]]
        assert all(not s.parallel for s in plan)
        assert plan[0].timeout_ms > plan[1].timeout_ms > plan[2].timeout_ms

    def test_tool_timeouts(self):
        from control_plane.intent import get_tool_timeout

        assert get_tool_timeout("claude") == 120000
        assert get_tool_timeout("stability") == 60000
        assert get_tool_timeout("source-arxiv") == 30000
        assert get_tool_timeout("google-drive") == 30000
        assert get_tool_timeout("db-draft") == 10000

    def test_empty_plan(self):
        from control_plane.intent import create_execution_plan, plan_levels

        assert create_execution_plan([]) == []
        assert plan_levels([]) == []

    def test_forward_reference_rejected(self):
        from control_plane.intent import validate_execution_plan
        from shared.models import ExecutionStep

        steps = [
            ExecutionStep(order=0, tool_id="a", depends_on=(1,), timeout_ms=10),
            ExecutionStep(order=1, tool_id="b", timeout_ms=10),
        ]

        with pytest.raises(ValueError, match="not an earlier step"):
            validate_execution_plan(steps)

    def test_levels_group_independent_steps(self):
        from control_plane.intent import plan_levels
        from shared.models import ExecutionStep

        steps = [
            ExecutionStep(order=0, tool_id="claude", timeout_ms=10),
            ExecutionStep(order=1, tool_id="source-a", parallel=True, depends_on=(0,), timeout_ms=10),
            ExecutionStep(order=2, tool_id="source-b", parallel=True, depends_on=(0,), timeout_ms=10),
            ExecutionStep(order=3, tool_id="db", depends_on=(1, 2), timeout_ms=10),
        ]

        levels = plan_levels(steps)

        assert [[s.order for s in level] for level in levels] == [[0], [1, 2], [3]]


class TestIntentClassifier:
    """Tests for intent classification."""

    def test_classify_generate_newsletter(self):
        from control_plane.intent import classify_intent

        intent = classify_intent("POST", "/api/generateNewsletter")

        assert intent.resource == "newsletter"
        assert intent.action == "generate"
        assert intent.tools == ["claude", "stability", "db-newsletter"]
        assert intent.auth_required
        assert intent.auth_type == AuthType.API_KEY
        assert len(intent.execution_plan) == 3

    def test_resolve_tools_returns_a_copy(self):
        from control_plane.intent import classify_intent, resolve_tools

        intent = classify_intent("POST", "/api/generateNewsletter")
        tools = resolve_tools(intent)
        tools.append("extra")

        assert resolve_tools(intent) == ["claude", "stability", "db-newsletter"]

    def test_classify_with_params(self):
        from control_plane.intent import classify_intent

        intent = classify_intent("GET", "/api/newsletters/abc123")

        assert intent.action == "read"
        assert intent.params["id"] == "abc123"
        assert not intent.auth_required

    def test_unmatched_route_returns_none(self):
        from control_plane.intent import classify_intent, get_auth_type

        assert classify_intent("GET", "/api/nope") is None
        assert get_auth_type("GET", "/api/nope") == AuthType.NONE

    def test_route_patterns_listing(self):
        from control_plane.intent import get_all_route_patterns

        patterns = get_all_route_patterns()

        generate = next(p for p in patterns if p["pattern"] == "/api/generateNewsletter")
        assert generate["requires_auth"] is True
        assert generate["multi_param"] is False
