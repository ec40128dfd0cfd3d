"""Pydantic models for data flowing through the verification engine."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from verifyflow.auth.totp import DEFAULT_DIGITS
from verifyflow.errors import VerificationError


# === Enums matching DB schema ===


class VerificationType(StrEnum):
    ONBOARDING = "onboarding"
    FORGOT_PASSWORD = "forgot-password"
    CHANGE_EMAIL = "change-email"


class SubmissionStatus(StrEnum):
    IDLE = "idle"
    COMPLETED = "completed"
    REJECTED = "rejected"


# === Query / form field names ===

CODE_PARAM = "code"
TARGET_PARAM = "target"
TYPE_PARAM = "type"
REDIRECT_TO_PARAM = "redirectTo"


# === Engine data models ===


class VerificationChallenge(BaseModel):
    """A pending verification for one (type, target) pair."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    type: VerificationType
    target: str
    secret: str = Field(repr=False)
    algorithm: str = "SHA256"
    digits: int = 6
    period: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


class PreparedVerification(BaseModel):
    """Result of issuing a challenge. The otp goes out of band to the user."""

    challenge_id: UUID
    type: VerificationType
    target: str
    otp: str = Field(repr=False)
    redirect_to: str
    verify_url: str = Field(repr=False)
    expires_at: datetime | None = None


class OtpMessage(BaseModel):
    """Payload handed to the delivery collaborator."""

    type: VerificationType
    target: str
    otp: str = Field(repr=False)
    verify_url: str = Field(repr=False)


class VerifySubmission(BaseModel):
    """Fields submitted to the verify page (query string or form body)."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    type: VerificationType
    target: str
    redirect_to: str | None = Field(default=None, alias=REDIRECT_TO_PARAM)

    @field_validator("code")
    @classmethod
    def _code_length(cls, v: str, info: ValidationInfo) -> str:
        # Expected length comes from the validation context (the deployment's digits)
        digits = (info.context or {}).get("digits", DEFAULT_DIGITS)
        if len(v) != digits:
            raise ValueError(f"Code must be {digits} characters")
        return v


class VerifiedSubmission(BaseModel):
    """Values extracted from a submission after its challenge was consumed."""

    model_config = ConfigDict(frozen=True)

    type: VerificationType
    target: str
    redirect_to: str | None = None


class Redirect(BaseModel):
    """Next action returned by the default handoff handlers."""

    location: str


class VerifyResult(BaseModel):
    """Outcome of one submission to the verify flow."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: SubmissionStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    error: VerificationError | None = None
    result: Any = None

    @property
    def errors(self) -> dict[str, list[str]]:
        """Field errors in the shape a form renderer expects."""
        if self.error is None:
            return {}
        fields = getattr(self.error, "fields", None)
        if fields:
            return fields
        return {CODE_PARAM: [self.error.message]}
