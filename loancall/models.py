"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Status enums ────────────────────────────────────────────────
class CallStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not CallStatus.PROCESSING


class ApplicationStatus(str, enum.Enum):
    REVIEW_NEEDED = "Review needed"
    READY_FOR_LOS = "Ready for LOS"
    PUSHED = "Pushed to Encompass"


SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELED = "canceled"


# ── AI analysis ─────────────────────────────────────────────────
_NUMBER_NOISE = re.compile(r"[\s$,%]")


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class LoanInfo(BaseModel):
    """
    Loan details found in a call. Every field is optional: an absent field
    means the call gave no evidence for it, never that the value is zero.
    """

    model_config = ConfigDict(extra="ignore")

    loan_type: Optional[str] = None
    loan_amount: Optional[float] = None
    property_type: Optional[str] = None
    rate: Optional[float] = None
    term: Optional[int] = None

    @field_validator("loan_type", "property_type", mode="before")
    @classmethod
    def _strip_text(cls, value):
        value = _blank_to_none(value)
        return value.strip() if isinstance(value, str) else value

    @field_validator("loan_amount", "rate", mode="before")
    @classmethod
    def _bare_number(cls, value):
        value = _blank_to_none(value)
        if isinstance(value, str):
            return _NUMBER_NOISE.sub("", value)
        return value

    @field_validator("term", mode="before")
    @classmethod
    def _term_years(cls, value):
        value = _blank_to_none(value)
        if isinstance(value, str):
            m = re.match(r"\s*(\d+)", value)
            if not m:
                raise ValueError(f"term is not a number of years: {value!r}")
            return int(m.group(1))
        return value

    @field_validator("loan_amount", "rate", "term")
    @classmethod
    def _zero_is_unknown(cls, value):
        # Models answer 0 or -1 for figures they could not find.
        if value is not None and value <= 0:
            return None
        return value

    def missing_fields(self) -> list[str]:
        return [name for name, value in self if value is None]

    def to_json_dict(self) -> dict:
        return self.model_dump(exclude_none=True)


class CallAnalysis(BaseModel):
    """Structured output of the extraction step."""

    model_config = ConfigDict(extra="ignore")

    summary: str
    key_points: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)
    loan_info: LoanInfo = Field(default_factory=LoanInfo)

    @field_validator("key_points", "action_items", "loan_info", mode="before")
    @classmethod
    def _null_is_empty(cls, value, info):
        if value is None:
            return {} if info.field_name == "loan_info" else []
        return value

    def to_json_dict(self) -> dict:
        return {
            "summary": self.summary,
            "key_points": self.key_points,
            "action_items": self.action_items,
            "loan_info": self.loan_info.to_json_dict(),
        }


# ── Call job (persisted in DB) ──────────────────────────────────
class CallJob(BaseModel):
    id: str
    title: str
    client_name: str
    audio_url: str
    duration: int = Field(default=0, ge=0, description="Seconds")
    status: CallStatus = CallStatus.PROCESSING
    transcript: Optional[str] = None
    summary: Optional[str] = None
    key_points: Optional[list[str]] = None
    action_items: Optional[list[str]] = None
    loan_info: Optional[LoanInfo] = None
    error_message: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def analysis_available(self) -> bool:
        """False when the UI should show the raw transcript with no analysis."""
        return self.status is CallStatus.COMPLETED and self.summary is not None


# ── Loan application (persisted in DB) ──────────────────────────
class LoanApplication(BaseModel):
    id: str
    client_name: str
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    loan_amount: Optional[float] = Field(default=None, gt=0)
    loan_type: Optional[str] = None
    property_type: Optional[str] = None
    interest_rate: Optional[float] = Field(default=None, ge=0, description="Percent")
    term: Optional[int] = Field(default=None, gt=0, description="Years")
    call_id: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.REVIEW_NEEDED
    encompass_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _external_id_matches_status(self):
        pushed = self.status is ApplicationStatus.PUSHED
        if pushed != (self.encompass_id is not None):
            raise ValueError("encompass_id must be set exactly when the application is pushed")
        return self

    def missing_loan_fields(self) -> list[str]:
        fields = ("loan_amount", "loan_type", "property_type", "interest_rate", "term")
        return [f for f in fields if getattr(self, f) is None]


class ApplicationFields(BaseModel):
    """Editable application fields, shared by create and update requests."""

    model_config = ConfigDict(extra="forbid")

    client_name: Optional[str] = Field(default=None, min_length=1)
    client_email: Optional[EmailStr] = None
    client_phone: Optional[str] = None
    loan_amount: Optional[float] = Field(default=None, gt=0)
    loan_type: Optional[str] = None
    property_type: Optional[str] = None
    interest_rate: Optional[float] = Field(default=None, ge=0)
    term: Optional[int] = Field(default=None, gt=0)
    status: Optional[ApplicationStatus] = None

    @field_validator("status")
    @classmethod
    def _no_manual_push(cls, value):
        if value is ApplicationStatus.PUSHED:
            raise ValueError("applications are only marked pushed by the LOS push")
        return value


class ApplicationCreate(ApplicationFields):
    client_name: str = Field(min_length=1)
    call_id: Optional[str] = None
    user_id: Optional[str] = None


# ── Subscription (persisted in DB) ──────────────────────────────
class Subscription(BaseModel):
    id: str
    user_id: str
    plan_id: str
    status: str
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
