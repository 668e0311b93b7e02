from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import TriggerEvent

# -------------------- Trigger input --------------------

SHA_PATTERN = r"^(?:[0-9a-fA-F]{7,40})?$"
REF_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._/+-]*$"
REPOSITORY_PATTERN = r"^[A-Za-z0-9/][A-Za-z0-9._/:@+-]*$"


class EventPayload(BaseModel):
    """
    Trigger event as delivered by a webhook or an --event file:
    {eventType, ref | branch, commitSHA, repository?}

    Every value ends up in step commands and environments, so each field is
    held to the characters a real git ref, sha or repository URL uses.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: str = Field(default="push", alias="eventType", pattern=r"^[a-z][a-z0-9_-]*$")
    ref: Optional[str] = Field(default=None, pattern=REF_PATTERN, max_length=255)
    branch: Optional[str] = Field(default=None, pattern=REF_PATTERN, max_length=255)
    sha: str = Field(default="", alias="commitSHA", pattern=SHA_PATTERN)
    repository: Optional[str] = Field(default=None, pattern=REPOSITORY_PATTERN, max_length=512)

    @field_validator("ref", "branch")
    @classmethod
    def _no_parent_refs(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (".." in value or value.endswith("/")):
            raise ValueError("not a valid git ref name")
        return value

    @model_validator(mode="after")
    def _need_ref(self) -> "EventPayload":
        if not self.ref and not self.branch:
            raise ValueError("either 'ref' or 'branch' is required")
        return self

    def to_event(self) -> TriggerEvent:
        ref = self.ref or f"refs/heads/{self.branch}"
        return TriggerEvent(event_type=self.event_type, ref=ref, sha=self.sha, repository=self.repository)


def parse_event(data: Any) -> TriggerEvent:
    """Validate raw event data; ConfigError on anything malformed."""
    try:
        return EventPayload.model_validate(data).to_event()
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"invalid trigger event: {problems}") from None


# -------------------- API responses --------------------

class TriggerResponse(BaseModel):
    triggered: bool
    run_id: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None


class JobView(BaseModel):
    name: str
    status: str
    reason: Optional[str] = None
    steps: list[dict[str, Any]] = Field(default_factory=list)


class RunSummary(BaseModel):
    id: str
    pipeline: str
    status: str
    reason: Optional[str] = None
    event: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RunDetail(RunSummary):
    jobs: list[JobView] = Field(default_factory=list)
    cleanup: list[dict[str, Any]] = Field(default_factory=list)


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
