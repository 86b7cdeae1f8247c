from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from w9mail.logging import get_correlation_id
from w9mail.storage.models import Role, SenderKind

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "validation_error",
    "server_error",
}

MAX_BODY_LENGTH = 1_000_000


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    """Body of every hard (non-2xx) failure."""

    status: Literal["error"] = "error"
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True)


class StatusMessage(WireModel):
    status: str
    message: str


# -- auth ----------------------------------------------------------------------


class LoginRequest(WireModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    turnstile_token: Optional[str] = None


class LoginResponse(WireModel):
    token: str
    id: str
    email: str
    role: Role
    must_change_password: bool = Field(alias="mustChangePassword")


class SignupRequest(WireModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    turnstile_token: Optional[str] = None


class SignupVerifyRequest(WireModel):
    token: str = Field(..., max_length=256)


class PasswordResetRequest(WireModel):
    email: str = Field(..., max_length=320)
    turnstile_token: Optional[str] = None


class PasswordResetConfirmRequest(WireModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., alias="newPassword", max_length=1024)
    turnstile_token: Optional[str] = None


class ChangePasswordRequest(WireModel):
    current_password: str = Field(..., alias="currentPassword", max_length=1024)
    new_password: str = Field(..., alias="newPassword", max_length=1024)


class UserSummary(WireModel):
    id: str
    email: str
    role: Role
    must_change_password: bool = Field(alias="mustChangePassword")


# -- users ---------------------------------------------------------------------


class CreateUserRequest(WireModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    role: Optional[Role] = None


class UpdateUserRequest(WireModel):
    password: Optional[str] = Field(default=None, max_length=1024)
    role: Optional[Role] = None
    must_change_password: Optional[bool] = Field(default=None, alias="mustChangePassword")


# -- api tokens ----------------------------------------------------------------


class CreateApiTokenRequest(WireModel):
    name: Optional[str] = Field(default=None, max_length=128)


class ApiTokenCreated(WireModel):
    id: str
    token: str
    name: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")
    message: str


class ApiTokenSummary(WireModel):
    id: str
    name: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")
    last_used_at: Optional[datetime] = Field(default=None, alias="lastUsedAt")


# -- accounts and aliases ------------------------------------------------------


class AccountResponse(WireModel):
    id: str
    email: str
    display_name: str = Field(alias="displayName")
    is_active: bool = Field(alias="isActive")


class CreateAccountRequest(WireModel):
    email: str = Field(..., max_length=320)
    display_name: str = Field(..., alias="displayName", max_length=256)
    password: str = Field(..., max_length=1024)
    is_active: bool = Field(default=True, alias="isActive")


class CreateAccountResponse(WireModel):
    status: str
    message: str
    account: Optional[AccountResponse] = None


class UpdateAccountRequest(WireModel):
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    password: Optional[str] = Field(default=None, max_length=1024)


class AliasResponse(WireModel):
    id: str
    alias_email: str = Field(alias="aliasEmail")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    is_active: bool = Field(alias="isActive")
    account_id: str = Field(alias="accountId")
    account_email: Optional[str] = Field(default=None, alias="accountEmail")
    account_display_name: Optional[str] = Field(default=None, alias="accountDisplayName")
    account_is_active: Optional[bool] = Field(default=None, alias="accountIsActive")


class CreateAliasRequest(WireModel):
    account_id: str = Field(..., alias="accountId", max_length=64)
    alias_email: str = Field(..., alias="aliasEmail", max_length=320)
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=256)
    is_active: bool = Field(default=True, alias="isActive")


class UpdateAliasRequest(WireModel):
    """Only fields present in the body are applied; ``displayName: null`` clears it."""

    account_id: Optional[str] = Field(default=None, alias="accountId", max_length=64)
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=256)
    is_active: Optional[bool] = Field(default=None, alias="isActive")


# -- default sender ------------------------------------------------------------


class DefaultSenderResponse(WireModel):
    sender_type: SenderKind = Field(alias="senderType")
    sender_id: str = Field(alias="senderId")
    email: str
    display_label: str = Field(alias="displayLabel")
    via_display: Optional[str] = Field(default=None, alias="viaDisplay")
    is_active: bool = Field(alias="isActive")


class UpdateDefaultSenderRequest(WireModel):
    sender_type: SenderKind = Field(..., alias="senderType")
    sender_id: str = Field(..., alias="senderId", max_length=64)


# -- send ----------------------------------------------------------------------


class SendEmailRequest(WireModel):
    sender: str = Field(..., alias="from", max_length=320)
    to: str = Field(..., max_length=4096)
    subject: str = Field(..., max_length=998)
    body: str = Field(..., max_length=MAX_BODY_LENGTH)
    cc: Optional[str] = Field(default=None, max_length=4096)
    bcc: Optional[str] = Field(default=None, max_length=4096)


class HealthResponse(BaseModel):
    status: str = "ok"


__all__: List[str] = [
    "ErrorBody",
    "Envelope",
    "StatusMessage",
    "LoginRequest",
    "LoginResponse",
    "SignupRequest",
    "SignupVerifyRequest",
    "PasswordResetRequest",
    "PasswordResetConfirmRequest",
    "ChangePasswordRequest",
    "UserSummary",
    "CreateUserRequest",
    "UpdateUserRequest",
    "CreateApiTokenRequest",
    "ApiTokenCreated",
    "ApiTokenSummary",
    "AccountResponse",
    "CreateAccountRequest",
    "CreateAccountResponse",
    "UpdateAccountRequest",
    "AliasResponse",
    "CreateAliasRequest",
    "UpdateAliasRequest",
    "DefaultSenderResponse",
    "UpdateDefaultSenderRequest",
    "SendEmailRequest",
    "HealthResponse",
]
