"""Default route table for the newsletter Control Plane.

Order matters: where patterns overlap, the more specific route must be
registered first (``/api/personas/active`` before ``/api/personas/:id``).
"""

from typing import Any, Optional

from shared.models import (
    AuthType,
    HttpMethod,
    RateLimitTier,
    RouteCategory,
    RouteDefinition,
)
from control_plane import schemas


def _route(
    method: HttpMethod,
    path: str,
    resource: str,
    action: str,
    tools: list[str],
    category: RouteCategory,
    auth_type: AuthType = AuthType.NONE,
    sub_action: Optional[str] = None,
    description: Optional[str] = None,
    rate_limit_tier: Optional[RateLimitTier] = None,
    input_schema: Any = None,
    query_schema: Any = None,
    params_schema: Any = None,
    timeout: Optional[int] = None,
) -> RouteDefinition:
    return RouteDefinition(
        method=method,
        path_pattern=path,
        resource=resource,
        action=action,
        sub_action=sub_action,
        category=category,
        auth_type=auth_type,
        tools=tuple(tools),
        rate_limit_tier=rate_limit_tier,
        timeout=timeout,
        description=description,
        input_schema=input_schema,
        query_schema=query_schema,
        params_schema=params_schema,
    )


GET, POST, PUT, DELETE = HttpMethod.GET, HttpMethod.POST, HttpMethod.PUT, HttpMethod.DELETE
API_KEY, OAUTH = AuthType.API_KEY, AuthType.OAUTH

GENERATION_TOOLS = ["claude", "stability", "db-newsletter"]
TRENDING_SOURCE_TOOLS = ["source-hackernews", "source-arxiv", "source-github", "source-reddit"]


GENERATION_ROUTES = [
    _route(POST, "/api/generateNewsletter", "newsletter", "generate", GENERATION_TOOLS,
           RouteCategory.GENERATION, API_KEY,
           description="Generate a newsletter from topics",
           rate_limit_tier=RateLimitTier.LOW, timeout=300000,
           input_schema=schemas.GenerateNewsletterRequest),
    _route(POST, "/api/generateEnhancedNewsletter", "newsletter", "generate", GENERATION_TOOLS,
           RouteCategory.GENERATION, API_KEY, sub_action="enhanced",
           description="Generate an audience-sectioned newsletter",
           rate_limit_tier=RateLimitTier.LOW, timeout=300000,
           input_schema=schemas.GenerateEnhancedNewsletterRequest),
    _route(POST, "/api/generateImage", "image", "generate", ["stability"],
           RouteCategory.GENERATION, API_KEY,
           description="Generate an image for a section",
           rate_limit_tier=RateLimitTier.LOW,
           input_schema=schemas.GenerateImageRequest),
    _route(POST, "/api/generateTopicSuggestions", "topics", "generate", ["claude"],
           RouteCategory.TOPICS, API_KEY,
           description="Suggest topics for an audience",
           rate_limit_tier=RateLimitTier.MEDIUM,
           input_schema=schemas.GenerateTopicSuggestionsRequest),
    _route(POST, "/api/generateCompellingTrendingContent", "content", "generate", ["claude"],
           RouteCategory.TOPICS, API_KEY, sub_action="compelling",
           description="Summarize trending sources into compelling content",
           rate_limit_tier=RateLimitTier.MEDIUM,
           input_schema=schemas.GenerateCompellingContentRequest),
    _route(GET, "/api/fetchTrendingSources", "sources", "fetch", TRENDING_SOURCE_TOOLS,
           RouteCategory.TOPICS,
           description="Fetch trending sources from public feeds"),
]

NEWSLETTER_ROUTES = [
    _route(GET, "/api/newsletters", "newsletter", "list", ["db-newsletter"],
           RouteCategory.NEWSLETTER, query_schema=schemas.PaginationQuery),
    _route(GET, "/api/newsletters/:id", "newsletter", "read", ["db-newsletter"],
           RouteCategory.NEWSLETTER, params_schema=schemas.IdParams),
    _route(POST, "/api/newsletters", "newsletter", "create", ["db-newsletter"],
           RouteCategory.NEWSLETTER, input_schema=schemas.SaveNewsletterRequest),
    _route(PUT, "/api/newsletters/:id", "newsletter", "update", ["db-newsletter"],
           RouteCategory.NEWSLETTER, params_schema=schemas.IdParams),
    _route(PUT, "/api/newsletters/:id/sections", "newsletter", "update", ["db-newsletter"],
           RouteCategory.NEWSLETTER, sub_action="sections",
           input_schema=schemas.UpdateNewsletterSectionsRequest,
           params_schema=schemas.IdParams),
    _route(DELETE, "/api/newsletters/:id", "newsletter", "delete", ["db-newsletter"],
           RouteCategory.NEWSLETTER, params_schema=schemas.IdParams),
]

SUBSCRIBER_ROUTES = [
    _route(GET, "/api/subscribers", "subscriber", "list", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS),
    _route(POST, "/api/subscribers", "subscriber", "create", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS, input_schema=schemas.CreateSubscriberRequest),
    _route(POST, "/api/subscribers/import", "subscriber", "import", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS, input_schema=schemas.ImportSubscribersRequest),
    _route(PUT, "/api/subscribers/:id", "subscriber", "update", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS, input_schema=schemas.UpdateSubscriberRequest),
    _route(DELETE, "/api/subscribers/:id", "subscriber", "delete", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS),
    _route(GET, "/api/subscriber-lists", "subscriber-list", "list", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS),
    _route(POST, "/api/subscriber-lists", "subscriber-list", "create", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS),
    _route(PUT, "/api/subscriber-lists/:id", "subscriber-list", "update", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS),
    _route(DELETE, "/api/subscriber-lists/:id", "subscriber-list", "delete", ["db-subscriber"],
           RouteCategory.SUBSCRIBERS),
]

PERSONA_ROUTES = [
    _route(GET, "/api/personas", "persona", "list", ["db-persona"], RouteCategory.PERSONAS),
    _route(GET, "/api/personas/active", "persona", "read", ["db-persona"],
           RouteCategory.PERSONAS, sub_action="active"),
    _route(GET, "/api/personas/:id", "persona", "read", ["db-persona"], RouteCategory.PERSONAS),
    _route(POST, "/api/personas", "persona", "create", ["db-persona"],
           RouteCategory.PERSONAS, input_schema=schemas.CreatePersonaRequest),
    _route(PUT, "/api/personas/:id", "persona", "update", ["db-persona"], RouteCategory.PERSONAS),
    _route(POST, "/api/personas/:id/activate", "persona", "activate", ["db-persona"],
           RouteCategory.PERSONAS),
    _route(DELETE, "/api/personas/:id", "persona", "delete", ["db-persona"], RouteCategory.PERSONAS),
]

TEMPLATE_ROUTES = [
    _route(GET, "/api/templates", "template", "list", ["db-template"], RouteCategory.TEMPLATES),
    _route(GET, "/api/templates/:id", "template", "read", ["db-template"], RouteCategory.TEMPLATES),
    _route(POST, "/api/templates", "template", "create", ["db-template"], RouteCategory.TEMPLATES),
    _route(POST, "/api/templates/from-newsletter", "template", "create", ["db-template"],
           RouteCategory.TEMPLATES, sub_action="from-newsletter"),
    _route(PUT, "/api/templates/:id", "template", "update", ["db-template"], RouteCategory.TEMPLATES),
    _route(DELETE, "/api/templates/:id", "template", "delete", ["db-template"], RouteCategory.TEMPLATES),
]

DRAFT_ROUTES = [
    _route(GET, "/api/drafts/:id/exists", "draft", "exists", ["db-draft"], RouteCategory.DRAFTS),
    _route(GET, "/api/drafts/:id", "draft", "read", ["db-draft"], RouteCategory.DRAFTS),
    _route(POST, "/api/drafts", "draft", "save", ["db-draft"],
           RouteCategory.DRAFTS, input_schema=schemas.SaveDraftRequest),
    _route(DELETE, "/api/drafts/:id", "draft", "delete", ["db-draft"], RouteCategory.DRAFTS),
]

CALENDAR_ROUTES = [
    _route(GET, "/api/calendar", "calendar", "list", ["db-calendar"], RouteCategory.CALENDAR),
    _route(GET, "/api/calendar/:id", "calendar", "read", ["db-calendar"], RouteCategory.CALENDAR),
    _route(POST, "/api/calendar", "calendar", "create", ["db-calendar"],
           RouteCategory.CALENDAR, input_schema=schemas.CreateCalendarEntryRequest),
    _route(PUT, "/api/calendar/:id", "calendar", "update", ["db-calendar"], RouteCategory.CALENDAR),
    _route(DELETE, "/api/calendar/:id", "calendar", "delete", ["db-calendar"], RouteCategory.CALENDAR),
]

THUMBNAIL_ROUTES = [
    _route(GET, "/api/thumbnails", "thumbnail", "list", ["db-thumbnail"], RouteCategory.OTHER),
    _route(GET, "/api/thumbnails/status", "thumbnail", "status", ["db-thumbnail"], RouteCategory.OTHER),
    _route(POST, "/api/thumbnails/:id/generate", "thumbnail", "generate", ["stability", "db-thumbnail"],
           RouteCategory.GENERATION, API_KEY, rate_limit_tier=RateLimitTier.LOW),
    _route(DELETE, "/api/thumbnails/:id", "thumbnail", "delete", ["db-thumbnail"], RouteCategory.OTHER),
]

GOOGLE_ROUTES = [
    _route(POST, "/api/oauth/google/url", "oauth", "initiate", ["google-oauth"], RouteCategory.AUTH),
    _route(POST, "/api/oauth/google/callback", "oauth", "callback", ["google-oauth"], RouteCategory.AUTH),
    _route(GET, "/api/oauth/google/status", "oauth", "status", ["google-oauth"], RouteCategory.AUTH),
    _route(POST, "/api/oauth/google/revoke", "oauth", "revoke", ["google-oauth"], RouteCategory.AUTH),
    _route(POST, "/api/saveToDrive", "drive", "save", ["google-drive"],
           RouteCategory.OTHER, OAUTH, input_schema=schemas.SaveToDriveRequest),
    _route(GET, "/api/loadFromDrive", "drive", "load", ["google-drive"], RouteCategory.OTHER, OAUTH),
    _route(POST, "/api/sendEmail", "email", "send", ["google-gmail", "db-subscriber"],
           RouteCategory.SUBSCRIBERS, OAUTH, rate_limit_tier=RateLimitTier.LOW,
           input_schema=schemas.SendEmailRequest),
    _route(POST, "/api/savePresets", "preset", "save", ["google-sheets"], RouteCategory.OTHER, OAUTH),
    _route(GET, "/api/loadPresets", "preset", "load", ["google-sheets"], RouteCategory.OTHER, OAUTH),
]

SYSTEM_ROUTES = [
    _route(POST, "/api/api-keys", "api-key", "save", ["db-apikey"],
           RouteCategory.AUTH, input_schema=schemas.SaveApiKeyRequest),
    _route(POST, "/api/api-keys/validate", "api-key", "validate", ["db-apikey", "claude", "stability"],
           RouteCategory.AUTH),
    _route(GET, "/api/api-keys/status", "api-key", "status", ["db-apikey"], RouteCategory.AUTH),
    _route(GET, "/api/logs", "logs", "list", ["db-logs"], RouteCategory.LOGS),
    _route(GET, "/api/logs/stats", "logs", "stats", ["db-logs"], RouteCategory.LOGS),
    _route(GET, "/api/health", "health", "check", [], RouteCategory.HEALTH,
           description="Health check",
           rate_limit_tier=RateLimitTier.UNLIMITED),
]


DEFAULT_ROUTES: list[RouteDefinition] = [
    *GENERATION_ROUTES,
    *NEWSLETTER_ROUTES,
    *SUBSCRIBER_ROUTES,
    *PERSONA_ROUTES,
    *TEMPLATE_ROUTES,
    *DRAFT_ROUTES,
    *CALENDAR_ROUTES,
    *THUMBNAIL_ROUTES,
    *GOOGLE_ROUTES,
    *SYSTEM_ROUTES,
]
