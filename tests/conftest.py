"""Shared test fixtures."""

import pytest

from control_plane.audit import AuditTrail, set_audit_trail
from control_plane.auth import set_auth_resolver
from control_plane.metrics import set_metrics
from control_plane.ratelimit import set_rate_limiter
from control_plane.responses import reset_output_validator_config
from control_plane.routes import set_route_registry
from control_plane.validation import reset_input_validator_config


@pytest.fixture(autouse=True)
def reset_globals():
    """Give every test fresh process-wide components."""
    set_audit_trail(None)
    set_auth_resolver(None)
    set_route_registry(None)
    set_metrics(None)
    set_rate_limiter(None)
    reset_input_validator_config()
    reset_output_validator_config()
    yield
    set_audit_trail(None)
    set_auth_resolver(None)
    set_route_registry(None)
    set_metrics(None)
    set_rate_limiter(None)


@pytest.fixture
def audit_trail() -> AuditTrail:
    trail = AuditTrail()
    set_audit_trail(trail)
    return trail
