"""Tests for plan execution, the dispatcher and the HTTP surface."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from shared.models import AuditAction, ExecutionStep, ResolvedIntent


VALID_NEWSLETTER = {
    "topics": ["AI agents"],
    "audience": ["engineers"],
    "tone": "friendly",
    "flavors": [],
    "imageStyle": "watercolor",
}


def make_context():
    from control_plane.context import create_context

    return create_context(correlation_id="req-test-1", method="POST", path="/api/x")


def generation_router(calls):
    """Tool router with recording handlers for the newsletter generation tools."""
    from control_plane.executor import ToolRouter

    router = ToolRouter()

    async def claude(payload, ctx):
        calls.append(("claude", ctx.previous_result))
        return {"sections": [{"title": t} for t in payload["topics"]]}

    async def stability(payload, ctx):
        calls.append(("stability", ctx.previous_result))
        return {"images": ["img-1"], **ctx.previous_result}

    def db_newsletter(payload, ctx):
        calls.append(("db-newsletter", ctx.previous_result))
        return {"id": "n1", "accessToken": "should-not-leak", **ctx.previous_result}

    router.register_handler("claude", claude)
    router.register_handler("stability", stability)
    router.register_handler("db-newsletter", db_newsletter)
    return router


class TestToolRouter:
    """Tests for plan execution."""

    @pytest.mark.asyncio
    async def test_plan_runs_in_order_passing_results(self):
        from control_plane.intent import classify_intent

        calls = []
        router = generation_router(calls)
        intent = classify_intent("POST", "/api/generateNewsletter")

        result = await router.execute_plan(intent, make_context(), VALID_NEWSLETTER)

        assert result.success
        assert [c[0] for c in calls] == ["claude", "stability", "db-newsletter"]
        assert calls[0][1] is None
        assert calls[1][1] == {"sections": [{"title": "AI agents"}]}
        assert result.data["id"] == "n1"

    @pytest.mark.asyncio
    async def test_missing_handler_is_tool_disabled(self):
        from control_plane.executor import ToolRouter
        from control_plane.intent import classify_intent

        result = await ToolRouter().execute_plan(
            classify_intent("GET", "/api/newsletters/n1"), make_context()
        )

        assert not result.success
        assert result.error.code == "TOOL_DISABLED"

    @pytest.mark.asyncio
    async def test_step_timeout(self):
        from control_plane.executor import ToolContext, ToolRouter

        router = ToolRouter()

        async def slow(payload, ctx):
            await asyncio.sleep(1)

        router.register_handler("slow", slow)
        step = ExecutionStep(order=0, tool_id="slow", timeout_ms=10)

        result = await router.execute_step(
            step, None, ToolContext(correlation_id="c1", resource="x", action="y")
        )

        assert not result.success
        assert result.error.code == "TOOL_TIMEOUT"

    @pytest.mark.asyncio
    async def test_failure_stops_plan_without_leaking(self):
        from control_plane.executor import ToolRouter
        from control_plane.intent import create_execution_plan

        calls = []
        router = ToolRouter()

        async def broken(payload, ctx):
            raise ConnectionError("db at 10.0.0.5 refused")

        async def never(payload, ctx):
            calls.append("never")

        router.register_handler("db-a", broken)
        router.register_handler("db-b", never)
        intent = ResolvedIntent(
            action="save",
            resource="draft",
            tools=["db-a", "db-b"],
            execution_plan=create_execution_plan(["db-a", "db-b"]),
        )

        result = await router.execute_plan(intent, make_context())

        assert not result.success
        assert result.error.code == "TOOL_EXECUTION_ERROR"
        assert "10.0.0.5" not in result.error.message
        assert calls == []
        assert len(result.steps) == 1

    @pytest.mark.asyncio
    async def test_parallel_steps_run_together(self):
        from control_plane.executor import ToolRouter

        running = []
        peak = []
        router = ToolRouter()

        async def source(payload, ctx):
            running.append(1)
            peak.append(len(running))
            await asyncio.sleep(0.01)
            running.pop()
            return ctx.resource

        router.register_handler("source-a", source)
        router.register_handler("source-b", source)
        intent = ResolvedIntent(
            action="fetch",
            resource="trending",
            execution_plan=[
                ExecutionStep(order=0, tool_id="source-a", parallel=True, timeout_ms=1000),
                ExecutionStep(order=1, tool_id="source-b", parallel=True, timeout_ms=1000),
            ],
        )

        result = await router.execute_plan(intent, make_context())

        assert result.success
        assert max(peak) == 2


    @pytest.mark.asyncio
    async def test_disabled_tool_is_refused_until_enabled(self):
        from control_plane.intent import classify_intent

        calls = []
        router = generation_router(calls)
        intent = classify_intent("POST", "/api/generateNewsletter")

        assert router.disable_tool("stability")
        assert not router.disable_tool("unknown-tool")
        assert not router.is_enabled("stability")
        assert router.list_disabled() == ["stability"]

        refused = await router.execute_plan(intent, make_context(), VALID_NEWSLETTER)

        assert not refused.success
        assert refused.error.code == "TOOL_DISABLED"
        assert [c[0] for c in calls] == ["claude"]

        assert router.enable_tool("stability")
        calls.clear()
        accepted = await router.execute_plan(intent, make_context(), VALID_NEWSLETTER)

        assert accepted.success
        assert [c[0] for c in calls] == ["claude", "stability", "db-newsletter"]

    @pytest.mark.asyncio
    async def test_tool_calls_are_measured(self):
        from control_plane.executor import ToolContext, ToolRouter
        from control_plane.metrics import Metrics

        metrics = Metrics()
        router = ToolRouter(metrics=metrics)

        async def ok(payload, ctx):
            return "done"

        async def broken(payload, ctx):
            raise ValueError("nope")

        router.register_handler("ok", ok)
        router.register_handler("broken", broken)
        context = ToolContext(correlation_id="c1", resource="x", action="y")

        await router.execute_step(ExecutionStep(order=0, tool_id="ok", timeout_ms=1000), None, context)
        await router.execute_step(ExecutionStep(order=0, tool_id="broken", timeout_ms=1000), None, context)
        await router.execute_step(ExecutionStep(order=0, tool_id="absent", timeout_ms=1000), None, context)

        assert metrics.value("control_plane_tool_calls_total", tool="ok", outcome="success") == 1
        assert metrics.value("control_plane_tool_calls_total", tool="broken", outcome="failure") == 1
        assert metrics.value("control_plane_tool_duration_seconds_count", tool="ok") == 1
        assert metrics.value("control_plane_tool_calls_total", tool="absent", outcome="failure") == 0


class TestDispatcher:
    """End-to-end tests through the full pipeline."""

    @pytest.mark.asyncio
    async def test_generate_newsletter_end_to_end(self, audit_trail):
        """Valid key and body: audited auth, validation, 3-step plan, sanitized output."""
        from control_plane.auth import AuthResolver
        from control_plane.dispatcher import Dispatcher

        calls = []
        dispatcher = Dispatcher(
            router=generation_router(calls),
            auth_resolver=AuthResolver(audit=audit_trail),
        )

        result = await dispatcher.dispatch(
            "POST",
            "/api/generateNewsletter",
            headers={"x-api-key": "validlongkey123", "x-correlation-id": "req-e2e-1"},
            body=VALID_NEWSLETTER,
        )

        assert result.status_code == 200
        assert result.body["success"] is True
        assert result.body["data"]["id"] == "n1"
        assert "accessToken" not in result.body["data"]
        assert result.body["meta"]["correlation_id"] == "req-e2e-1"
        assert result.headers["X-Correlation-ID"] == "req-e2e-1"
        assert [c[0] for c in calls] == ["claude", "stability", "db-newsletter"]

        validations = audit_trail.recent(action=AuditAction.API_KEY_VALIDATE)
        assert len(validations) == 1
        assert validations[0].success
        assert validations[0].correlation_id == "req-e2e-1"

    @pytest.mark.asyncio
    async def test_missing_key_is_401(self, audit_trail):
        from control_plane.auth import AuthResolver
        from control_plane.dispatcher import Dispatcher

        calls = []
        dispatcher = Dispatcher(router=generation_router(calls), auth_resolver=AuthResolver(audit=audit_trail))

        result = await dispatcher.dispatch("POST", "/api/generateNewsletter", body=VALID_NEWSLETTER)

        assert result.status_code == 401
        assert result.body["error"]["code"] == "MISSING_API_KEY"
        assert calls == []
        assert len(audit_trail.recent(action=AuditAction.AUTH_FAILURE)) == 1

    @pytest.mark.asyncio
    async def test_invalid_body_is_400_after_auth(self, audit_trail):
        from control_plane.auth import AuthResolver
        from control_plane.dispatcher import Dispatcher

        calls = []
        dispatcher = Dispatcher(router=generation_router(calls), auth_resolver=AuthResolver(audit=audit_trail))

        result = await dispatcher.dispatch(
            "POST",
            "/api/generateNewsletter",
            headers={"x-api-key": "validlongkey123"},
            body={**VALID_NEWSLETTER, "topics": ["a", "b", "c", "d", "e", "f"]},
        )

        assert result.status_code == 400
        assert result.body["error"]["code"] == "VALIDATION_ERROR"
        assert result.body["error"]["details"]["errors"][0]["field"] == "topics"
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_route_is_404(self):
        from control_plane.dispatcher import Dispatcher
        from control_plane.executor import ToolRouter

        result = await Dispatcher(router=ToolRouter()).dispatch("GET", "/api/doesNotExist")

        assert result.status_code == 404
        assert result.body["error"]["code"] == "ROUTE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_health_is_builtin(self):
        from control_plane.dispatcher import Dispatcher
        from control_plane.executor import ToolRouter

        router = ToolRouter()
        router.register_handler("claude", lambda payload, ctx: None)

        result = await Dispatcher(router=router).dispatch("GET", "/api/health")

        assert result.status_code == 200
        assert result.body["data"]["status"] == "ok"
        assert result.body["data"]["tools"] == ["claude"]

    @pytest.mark.asyncio
    async def test_handler_error_maps_to_status(self):
        from control_plane.dispatcher import Dispatcher
        from control_plane.executor import ToolRouter

        router = ToolRouter()

        async def lost(payload, ctx):
            raise RuntimeError("disk full")

        router.register_handler("db-newsletter", lost)

        result = await Dispatcher(router=router).dispatch("GET", "/api/newsletters/n1")

        assert result.status_code == 500
        assert result.body["error"]["code"] == "TOOL_EXECUTION_ERROR"

    @pytest.mark.asyncio
    async def test_requests_are_measured_per_intent(self):
        from control_plane.dispatcher import Dispatcher
        from control_plane.executor import ToolRouter
        from control_plane.metrics import Metrics

        metrics = Metrics()
        dispatcher = Dispatcher(router=ToolRouter(), metrics=metrics)

        await dispatcher.dispatch("GET", "/api/health")
        await dispatcher.dispatch("GET", "/api/doesNotExist")

        assert metrics.value("control_plane_requests_total", intent="health.check", outcome="success") == 1
        assert metrics.value("control_plane_requests_total", intent="unmatched", outcome="failure") == 1
        assert metrics.value("control_plane_request_duration_seconds_count", intent="health.check") == 1

    @pytest.mark.asyncio
    async def test_rate_limited_after_auth_and_validation(self, audit_trail):
        from control_plane.auth import AuthResolver
        from control_plane.dispatcher import Dispatcher
        from control_plane.metrics import Metrics, set_metrics
        from control_plane.ratelimit import RateLimiter

        metrics = Metrics()
        set_metrics(metrics)
        calls = []
        dispatcher = Dispatcher(
            router=generation_router(calls),
            auth_resolver=AuthResolver(audit=audit_trail),
            rate_limiter=RateLimiter(),
        )

        results = [
            await dispatcher.dispatch(
                "POST",
                "/api/generateNewsletter",
                headers={"x-api-key": "validlongkey123"},
                body=VALID_NEWSLETTER,
            )
            for _ in range(11)
        ]

        assert [r.status_code for r in results[:10]] == [200] * 10
        assert results[10].status_code == 429
        assert results[10].body["error"]["code"] == "RATE_LIMITED"
        assert "Retry-After" in results[10].headers
        assert len(calls) == 30
        assert metrics.value("control_plane_rate_limited_total", tool="claude") == 1

    def test_rate_limit_can_be_turned_off(self):
        from control_plane.dispatcher import Dispatcher
        from control_plane.executor import ToolRouter

        dispatcher = Dispatcher(router=ToolRouter(), rate_limit_enabled=False)

        assert "rate_limit" not in dispatcher.chain.names
        assert "rate_limit" in Dispatcher(router=ToolRouter()).chain.names

    @pytest.mark.asyncio
    async def test_path_params_reach_handlers(self):
        from control_plane.dispatcher import Dispatcher
        from control_plane.executor import ToolRouter

        router = ToolRouter()

        async def read(payload, ctx):
            return {"id": ctx.params["id"], "resource": ctx.resource}

        router.register_handler("db-newsletter", read)

        result = await Dispatcher(router=router).dispatch("GET", "/api/newsletters/abc123")

        assert result.body["data"] == {"id": "abc123", "resource": "newsletter"}


class TestHttpApp:
    """Tests for the FastAPI surface."""

    def test_health_over_http(self):
        from control_plane.main import app

        with TestClient(app) as client:
            response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert "x-correlation-id" in response.headers

    def test_errors_use_envelope(self):
        from control_plane.main import app

        with TestClient(app) as client:
            missing = client.get("/api/nothing-here")
            unauthorized = client.post("/api/generateNewsletter", json=VALID_NEWSLETTER)
            preflight = client.options("/api/generateNewsletter")

        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "ROUTE_NOT_FOUND"
        assert unauthorized.status_code == 401
        assert unauthorized.json()["error"]["code"] == "MISSING_API_KEY"
        assert preflight.status_code == 204

    def test_route_documentation(self):
        from control_plane.main import app

        with TestClient(app) as client:
            response = client.get("/routes", params={"category": "health"})

        body = response.json()
        assert body["count"] == 1
        assert body["routes"][0]["path"] == "/api/health"

    def test_metrics_endpoint(self):
        from control_plane.main import app

        with TestClient(app) as client:
            client.get("/api/health")
            response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'control_plane_requests_total{intent="health.check",outcome="success"}' in response.text
