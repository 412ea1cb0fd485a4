"""Route Registry for the Control Plane.

Holds the ordered set of route definitions and resolves an incoming
(method, path) pair to a definition plus extracted path parameters.

Matching is a linear scan in registration order: the first definition
whose compiled pattern matches wins, regardless of specificity.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import AuthType, RouteCategory, RouteDefinition

logger = get_logger(__name__)

_PARAM_SEGMENT = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class CompiledPattern:
    """An Express-style path pattern compiled to an anchored regex."""
    source: str
    regex: re.Pattern
    param_names: tuple[str, ...] = ()

    @property
    def multi_param(self) -> bool:
        return len(self.param_names) > 1


@dataclass(frozen=True)
class RegisteredRoute:
    definition: RouteDefinition
    pattern: CompiledPattern


@dataclass
class RouteMatch:
    """Result of a successful match."""
    definition: RouteDefinition
    params: dict[str, str] = field(default_factory=dict)


def compile_path(path_pattern: str) -> CompiledPattern:
    """
    Compile an Express-style pattern such as ``/api/personas/:id/activate``.

    Each ``:name`` segment matches one non-empty path segment.

    Args:
        path_pattern: Pattern with ``:name`` placeholders

    Returns:
        Compiled pattern with its parameter names in positional order
    """
    names: list[str] = []
    parts: list[str] = []
    last = 0

    for match in _PARAM_SEGMENT.finditer(path_pattern):
        name = match.group(1)
        if name in names:
            raise ValueError(f"Duplicate parameter ':{name}' in '{path_pattern}'")
        names.append(name)
        parts.append(re.escape(path_pattern[last:match.start()]))
        parts.append(f"(?P<{name}>[^/]+)")
        last = match.end()

    parts.append(re.escape(path_pattern[last:]))

    return CompiledPattern(
        source=path_pattern,
        regex=re.compile("^" + "".join(parts) + "$"),
        param_names=tuple(names),
    )


def extract_params(pattern: CompiledPattern, match: re.Match) -> dict[str, str]:
    """
    Extract path parameters from a regex match.

    Every parameter is exposed by name; the first one is also exposed
    as ``id`` so single-parameter routes can always read ``params["id"]``.
    """
    params = {name: match.group(name) for name in pattern.param_names}
    if pattern.param_names:
        params.setdefault("id", match.group(pattern.param_names[0]))
    return params


class RouteRegistry:
    """
    Ordered registry of route definitions.

    Responsibilities:
    - Register route definitions (append-only, duplicates allowed)
    - Match (method, path) pairs, first registered wins
    - Group routes for statistics and documentation
    """

    def __init__(self) -> None:
        self._routes: tuple[RegisteredRoute, ...] = ()
        self._lock = threading.Lock()

    def register(self, definition: RouteDefinition) -> None:
        """
        Register a route definition.

        Registering the same method and path twice is permitted; the
        earlier registration keeps winning at match time.

        Args:
            definition: Route definition to register
        """
        route = RegisteredRoute(definition=definition, pattern=compile_path(definition.path_pattern))

        with self._lock:
            if any(r.definition.route_id == definition.route_id for r in self._routes):
                logger.warning(
                    "Route already registered, earlier entry keeps precedence",
                    route=definition.route_id
                )
            self._routes = self._routes + (route,)

        logger.debug(
            "Route registered",
            route=definition.route_id,
            category=definition.category.value,
            auth_type=definition.auth_type.value
        )

    def register_many(self, definitions: list[RouteDefinition]) -> None:
        """Register multiple route definitions at once."""
        for definition in definitions:
            self.register(definition)

        logger.info("Routes registered", count=len(definitions))

    def match(self, method: str, path: str) -> Optional[RouteMatch]:
        """
        Resolve a request to a route definition.

        Args:
            method: HTTP method (case-insensitive)
            path: Request path without query string

        Returns:
            RouteMatch if a definition matches, None otherwise
        """
        method = method.upper()

        for route in self._routes:
            if route.definition.method.value != method:
                continue
            found = route.pattern.regex.match(path)
            if found:
                return RouteMatch(
                    definition=route.definition,
                    params=extract_params(route.pattern, found)
                )

        return None

    def get_pattern(self, definition: RouteDefinition) -> Optional[CompiledPattern]:
        """Get the compiled pattern for a registered definition."""
        for route in self._routes:
            if route.definition is definition:
                return route.pattern
        return None

    def list_routes(
        self,
        category: Optional[RouteCategory] = None,
        include_deprecated: bool = True
    ) -> list[RouteDefinition]:
        """
        List registered routes in registration order.

        Args:
            category: Filter by category
            include_deprecated: Include deprecated routes

        Returns:
            List of route definitions
        """
        routes = [r.definition for r in self._routes]

        if category:
            routes = [r for r in routes if r.category == category]

        if not include_deprecated:
            routes = [r for r in routes if not r.deprecated]

        return routes

    def by_category(self, category: RouteCategory) -> list[RouteDefinition]:
        return self.list_routes(category=category)

    def by_auth_type(self, auth_type: AuthType) -> list[RouteDefinition]:
        return [r for r in self.list_routes() if r.auth_type == auth_type]

    def stats(self) -> dict[str, Any]:
        """Get route counts per category, auth type and method."""
        by_category: dict[str, int] = {}
        by_auth_type: dict[str, int] = {}
        by_method: dict[str, int] = {}
        deprecated = 0

        for route in self.list_routes():
            by_category[route.category.value] = by_category.get(route.category.value, 0) + 1
            by_auth_type[route.auth_type.value] = by_auth_type.get(route.auth_type.value, 0) + 1
            by_method[route.method.value] = by_method.get(route.method.value, 0) + 1
            if route.deprecated:
                deprecated += 1

        return {
            "total": len(self._routes),
            "by_category": by_category,
            "by_auth_type": by_auth_type,
            "by_method": by_method,
            "deprecated": deprecated,
        }

    def generate_documentation(self) -> list[dict[str, Any]]:
        """
        Generate route documentation sorted by category, then path.

        Returns:
            One dict per route with method, path, category, auth type and tags
        """
        docs = [
            {
                "method": r.method.value,
                "path": r.path_pattern,
                "description": r.description,
                "category": r.category.value,
                "auth_type": r.auth_type.value,
                "tools": list(r.tools),
                "deprecated": r.deprecated,
                "tags": list(r.tags),
                "has_input_schema": r.input_schema is not None,
            }
            for r in self.list_routes()
        ]
        return sorted(docs, key=lambda d: (d["category"], d["path"]))

    def generate_openapi_paths(self) -> dict[str, dict[str, Any]]:
        """Generate an OpenAPI ``paths`` object for the registered routes."""
        paths: dict[str, dict[str, Any]] = {}

        for route in self.list_routes():
            openapi_path = _PARAM_SEGMENT.sub(r"{\1}", route.path_pattern)

            if route.auth_type == AuthType.API_KEY:
                security = [{"ApiKeyAuth": []}]
            elif route.auth_type == AuthType.OAUTH:
                security = [{"OAuth2": []}]
            else:
                security = []

            parameters = [
                {"name": name, "in": "path", "required": True, "schema": {"type": "string"}}
                for name in _PARAM_SEGMENT.findall(route.path_pattern)
            ]

            operations = paths.setdefault(openapi_path, {})
            operations.setdefault(route.method.value.lower(), {
                "summary": route.description,
                "parameters": parameters,
                "tags": [route.category.value, *route.tags],
                "deprecated": route.deprecated,
                "security": security,
                "responses": {
                    "200": {"description": "Successful response"},
                    "400": {"description": "Validation error"},
                    "401": {"description": "Authentication required"},
                    "500": {"description": "Internal server error"},
                },
            })

        return paths

    def clear(self) -> None:
        """Clear all registered routes. Used by tests."""
        with self._lock:
            self._routes = ()
        logger.warning("Route registry cleared")

    def __len__(self) -> int:
        return len(self._routes)


# Global registry instance
_registry: Optional[RouteRegistry] = None


def get_route_registry() -> RouteRegistry:
    """Get the global route registry, loaded with the default route table."""
    global _registry
    if _registry is None:
        from control_plane.catalog import DEFAULT_ROUTES

        registry = RouteRegistry()
        registry.register_many(DEFAULT_ROUTES)
        _registry = registry
    return _registry


def set_route_registry(registry: Optional[RouteRegistry]) -> None:
    """Replace the global registry wholesale. Passing None reloads defaults on next use."""
    global _registry
    _registry = registry
