from __future__ import annotations

from dataclasses import dataclass

ENDORSER_CATEGORIES = (
    "politician",
    "union",
    "celebrity",
    "media",
    "business",
    "nonprofit",
    "academic",
    "religious",
)
SOURCE_TYPES = ("twitter", "instagram", "press_release", "interview", "event", "website", "rss")
ENDORSEMENT_TYPES = ("endorsement", "un_endorsement", "conditional", "rumored")
SENTIMENTS = ("positive", "neutral", "negative")
CONFIDENCE_LEVELS = ("rumored", "reported", "confirmed")
STRENGTHS = ("weak", "standard", "strong", "enthusiastic")
VERIFICATION_STATUSES = ("unverified", "verified", "flagged")
NOTIFICATION_KINDS = ("new_endorsement", "high_confidence", "human_review_needed")
CLASSIFICATION_STATUSES = ("pending", "auto_approved", "dismissed")


@dataclass(frozen=True)
class Candidate:
    id: str
    name: str
    party: str | None
    photo_url: str | None
    website: str | None
    bio: str | None
    campaign_color: str | None
    position_summary: dict[str, str]
    created_at: str


@dataclass(frozen=True)
class Endorser:
    id: str
    name: str
    display_name: str | None
    title: str | None
    organization: str | None
    category: str
    subcategory: str | None
    borough: str | None
    influence_score: int
    twitter_handle: str | None
    instagram_handle: str | None
    linkedin_url: str | None
    personal_website: str | None
    is_organization: bool
    verification_status: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Endorsement:
    id: str
    endorser_id: str
    candidate_id: str
    source_url: str | None
    source_type: str
    source_title: str | None
    quote: str | None
    endorsement_type: str
    sentiment: str
    confidence: str
    strength: str
    endorsed_at: str | None
    discovered_at: str
    verified_by: str | None
    verified_at: str | None
    verification_notes: str | None
    is_retracted: bool
    retraction_reason: str | None
    retracted_at: str | None
    context_tags: list[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Feed:
    id: str
    name: str
    url: str
    category: str | None
    check_frequency_minutes: int
    is_active: bool
    is_high_priority: bool
    keywords: list[str]
    exclude_keywords: list[str]
    last_check_at: str | None = None
    last_success_at: str | None = None
    error_count: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class FeedItem:
    title: str
    description: str
    content: str
    link: str
    pub_date: str
    author: str | None
    categories: list[str]
    source: str


@dataclass(frozen=True)
class ClassificationResult:
    raw_text: str
    source_url: str
    source_type: str
    confidence: float
    candidate_mentions: list[str]
    endorser_info: dict[str, str | None] | None
    endorsement_type: str
    sentiment: str
    requires_human_review: bool
    reasoning: str


@dataclass(frozen=True)
class ScrapedEndorsement:
    endorser_name: str
    candidate_name: str
    source_url: str | None
    source_title: str | None
    quote: str | None
    endorsement_type: str
    sentiment: str
    confidence: str
    strength: str
    endorsed_at: str | None


@dataclass(frozen=True)
class Job:
    id: str
    queue: str
    job_type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    not_before: str | None
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
