"""Request schemas for Control Plane routes.

Bodies arrive as camelCase JSON; fields are declared in snake_case and
exposed through camelCase aliases, which are also the names used in
validation error paths.
"""

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NonEmptyString = Annotated[str, Field(min_length=1)]
Email = Annotated[str, Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")]
Url = Annotated[str, Field(pattern=r"^https?://\S+$")]

SourceCategory = Literal["hackernews", "arxiv", "github", "reddit", "dev"]


class RequestModel(BaseModel):
    """Base for request bodies: camelCase aliases, unknown keys dropped."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Shared shapes
# =============================================================================

class TrendingSource(RequestModel):
    id: NonEmptyString
    title: NonEmptyString
    url: Url
    author: Optional[str] = None
    publication: Optional[str] = None
    date: Optional[str] = None
    category: SourceCategory
    summary: Optional[str] = None


class PromptOfTheDay(RequestModel):
    title: NonEmptyString
    summary: NonEmptyString
    example_prompts: list[str]
    prompt_code: str


class NewsletterSection(RequestModel):
    title: NonEmptyString
    content: NonEmptyString
    image_prompt: str
    image_url: Optional[str] = None


class Newsletter(RequestModel):
    id: Optional[str] = None
    subject: NonEmptyString
    introduction: NonEmptyString
    sections: list[NewsletterSection]
    conclusion: NonEmptyString
    prompt_of_the_day: Optional[PromptOfTheDay] = None


# =============================================================================
# Generation
# =============================================================================

class GenerateNewsletterRequest(RequestModel):
    """POST /api/generateNewsletter"""
    topics: list[NonEmptyString] = Field(..., min_length=1, max_length=5)
    audience: list[NonEmptyString] = Field(..., min_length=1)
    tone: NonEmptyString
    flavors: list[str] = Field(default_factory=list)
    image_style: NonEmptyString
    trending_sources: Optional[list[TrendingSource]] = None


class GenerateEnhancedNewsletterRequest(RequestModel):
    """POST /api/generateEnhancedNewsletter"""
    topics: list[NonEmptyString] = Field(..., min_length=1, max_length=5)
    audiences: list[NonEmptyString] = Field(..., min_length=1)
    tone: NonEmptyString
    flavors: list[str] = Field(default_factory=list)
    image_style: NonEmptyString
    trending_sources: Optional[list[TrendingSource]] = None
    persona_id: Optional[str] = None


class GenerateImageRequest(RequestModel):
    prompt: NonEmptyString
    image_style: NonEmptyString


class GenerateTopicSuggestionsRequest(RequestModel):
    audience: list[NonEmptyString] = Field(..., min_length=1)
    existing_topics: Optional[list[str]] = None
    trending_sources: Optional[list[TrendingSource]] = None


class GenerateCompellingContentRequest(RequestModel):
    audience: list[NonEmptyString] = Field(..., min_length=1)
    trending_sources: list[TrendingSource]


# =============================================================================
# Newsletters
# =============================================================================

class SaveNewsletterRequest(RequestModel):
    newsletter: Newsletter
    topics: list[str]


class UpdateNewsletterSectionsRequest(RequestModel):
    sections: list[NewsletterSection]


# =============================================================================
# Subscribers
# =============================================================================

class CreateSubscriberRequest(RequestModel):
    email: Email
    name: Optional[str] = None
    lists: list[NonEmptyString] = Field(default_factory=list)
    source: str = "manual"


class UpdateSubscriberRequest(RequestModel):
    name: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None
    lists: Optional[list[NonEmptyString]] = None


class ImportedSubscriber(RequestModel):
    email: Email
    name: Optional[str] = None


class ImportSubscribersRequest(RequestModel):
    subscribers: list[ImportedSubscriber] = Field(..., min_length=1)
    list_id: Optional[NonEmptyString] = None
    source: str = "import"


# =============================================================================
# Personas, calendar, drafts
# =============================================================================

class CreatePersonaRequest(RequestModel):
    name: NonEmptyString
    tagline: Optional[str] = None
    expertise: Optional[str] = None
    values: Optional[str] = None
    writing_style: Optional[str] = None
    signature_elements: list[str] = Field(default_factory=list)
    sample_writing: Optional[str] = None


class CreateCalendarEntryRequest(RequestModel):
    title: NonEmptyString
    description: Optional[str] = None
    scheduled_date: NonEmptyString
    topics: list[str] = Field(default_factory=list)
    audiences: list[str] = Field(default_factory=list)
    persona_id: Optional[str] = None


class SaveDraftRequest(RequestModel):
    user_email: Email
    content: dict
    topics: Optional[list[str]] = None
    settings: Optional[dict] = None


# =============================================================================
# Google integrations
# =============================================================================

class SendEmailRequest(RequestModel):
    """POST /api/sendEmail"""
    newsletter_id: Optional[str] = None
    subject: NonEmptyString
    html_content: NonEmptyString
    recipients: list[Email] = Field(..., min_length=1, max_length=500)
    list_id: Optional[str] = None


class SaveToDriveRequest(RequestModel):
    """POST /api/saveToDrive"""
    content: NonEmptyString
    filename: NonEmptyString


class SaveApiKeyRequest(RequestModel):
    service: Literal["claude", "gemini", "stability", "brave"]
    key: NonEmptyString


# =============================================================================
# Query / path parameter schemas
# =============================================================================

class IdParams(RequestModel):
    id: NonEmptyString


class PaginationQuery(RequestModel):
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
