from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

NO_DESCRIPTION = "No description available"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class RepositoryCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str = ""
    html_url: str
    homepage: str = ""
    language: str = ""
    stars: int = 0
    topics: Tuple[str, ...] = ()
    fork: bool = False
    updated_at: Optional[datetime] = None

    @field_validator('stars')
    @classmethod
    def non_negative_stars(cls, value: int) -> int:
        return max(value, 0)

    @classmethod
    def from_api(cls, raw: dict) -> "RepositoryCandidate":
        """Normalize one loosely-typed repository object from the GitHub API"""
        topics = raw.get("topics") or []
        return cls(
            id=raw["id"],
            name=raw["name"],
            description=_text(raw.get("description")),
            html_url=raw.get("html_url") or "",
            homepage=_text(raw.get("homepage")),
            language=_text(raw.get("language")),
            stars=raw.get("stargazers_count") or 0,
            topics=tuple(dict.fromkeys(t for t in topics if isinstance(t, str) and t)),
            fork=bool(raw.get("fork", False)),
            updated_at=raw.get("updated_at") or None,
        )


class FetchOutcome(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ERROR = "error"


class EnrichmentResult(BaseModel):
    name: str
    summary: Optional[str] = None
    outcome: FetchOutcome

    @property
    def has_summary(self) -> bool:
        return bool(self.summary and self.summary.strip())


class ProjectRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    html_url: str
    language: str = ""
    stars: int = 0
    topics: Tuple[str, ...] = ()
    homepage: Optional[str] = None

    @field_validator('description')
    @classmethod
    def description_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("description must not be empty")
        return value

    @classmethod
    def merge(cls, candidate: RepositoryCandidate, enrichment: Optional[EnrichmentResult]) -> "ProjectRecord":
        if enrichment is not None and enrichment.has_summary:
            description = enrichment.summary
        elif candidate.description:
            description = candidate.description
        else:
            description = NO_DESCRIPTION

        return cls(
            name=candidate.name,
            description=description,
            html_url=candidate.html_url,
            language=candidate.language,
            stars=candidate.stars,
            topics=candidate.topics,
            homepage=candidate.homepage or None,
        )


class AggregationStatus(str, Enum):
    LOADED = "loaded"
    DEGRADED = "degraded"  # some enrichment missing
    FAILED = "failed"


class AggregationResult(BaseModel):
    status: AggregationStatus
    projects: List[ProjectRecord] = []
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != AggregationStatus.FAILED


class NotificationRequest(BaseModel):
    name: str = ""
    email: str = ""
    subject: str = ""
    message: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "NotificationRequest":
        """Build a request from a decoded JSON body, coercing non-string values to empty"""
        if not isinstance(payload, dict):
            payload = {}
        fields = {}
        for key in cls.model_fields:
            value = payload.get(key)
            fields[key] = value if isinstance(value, str) else ""
        return cls(**fields)

    def missing_fields(self) -> List[str]:
        return [key for key in type(self).model_fields if not getattr(self, key).strip()]


class NotificationStatus(str, Enum):
    SENT = "sent"
    VALIDATION_ERROR = "validation_error"
    CONFIGURATION_ERROR = "configuration_error"
    TRANSPORT_ERROR = "transport_error"


class NotificationOutcome(BaseModel):
    """Terminal result of one contact form submission.

    ``message`` is safe to show to the submitter; ``detail`` is meant for
    operators and must not be returned to clients. ``states`` is the
    trail of dispatch states this submission passed through.
    """

    model_config = ConfigDict(frozen=True)

    status: NotificationStatus
    message: str
    message_id: Optional[str] = None
    retryable: bool = False
    detail: Optional[str] = None
    states: Tuple[str, ...] = ()

    @property
    def sent(self) -> bool:
        return self.status == NotificationStatus.SENT

    @classmethod
    def success(cls, message_id: str) -> "NotificationOutcome":
        return cls(status=NotificationStatus.SENT, message="Email sent successfully", message_id=message_id)

    @classmethod
    def validation_error(cls, detail: str) -> "NotificationOutcome":
        return cls(status=NotificationStatus.VALIDATION_ERROR, message="All fields are required", detail=detail)

    @classmethod
    def configuration_error(cls, detail: str) -> "NotificationOutcome":
        return cls(
            status=NotificationStatus.CONFIGURATION_ERROR,
            message="Email service is currently unavailable",
            detail=detail,
        )

    @classmethod
    def transport_error(cls, retryable: bool, detail: str) -> "NotificationOutcome":
        if retryable:
            message = "Failed to send email. Please try again later."
        else:
            message = "Email service configuration error"
        return cls(
            status=NotificationStatus.TRANSPORT_ERROR,
            message=message,
            retryable=retryable,
            detail=detail,
        )
