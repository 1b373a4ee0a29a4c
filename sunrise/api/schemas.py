from __future__ import annotations

import re
from typing import Annotated, Any, Dict, Literal, Optional, Union

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator

SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9]")
PHONE_PATTERN = r"^[\d\s\-+()]*$"
FLAG_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*(?:_[A-Z0-9]+)*$")


def _normalize_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Email is required")
    value = value.strip().lower()
    if len(value) > 255:
        raise ValueError("Email must be less than 255 characters")
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        raise ValueError("Invalid email address")
    return value


def _check_password(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Password is required")
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 100:
        raise ValueError("Password must be less than 100 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain at least one number")
    if not SPECIAL_CHARS.search(value):
        raise ValueError("Password must contain at least one special character")
    return value


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


Email = Annotated[str, BeforeValidator(_normalize_email)]
Password = Annotated[str, BeforeValidator(_check_password)]
Name = Annotated[str, BeforeValidator(_strip), Field(min_length=1, max_length=100)]
Role = Literal["USER", "ADMIN"]
SortOrder = Literal["asc", "desc"]


# -----------------
# Auth
# -----------------

class LoginRequest(BaseModel):
    email: Email
    password: str = Field(min_length=1, max_length=300)


class SignupRequest(BaseModel):
    name: Name
    email: Email
    password: Password


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=500)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=500)


class SendVerificationEmailRequest(BaseModel):
    email: Email


class ForgotPasswordRequest(BaseModel):
    email: Email


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=200)
    password: Password
    confirmPassword: str

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirmPassword:
            raise ValueError("Passwords don't match")
        return self


class ChangePasswordRequest(BaseModel):
    currentPassword: str = Field(min_length=1, max_length=300)
    newPassword: Password
    confirmPassword: str

    @model_validator(mode="after")
    def _check_new_password(self):
        if self.newPassword != self.confirmPassword:
            raise ValueError("Passwords don't match")
        if self.newPassword == self.currentPassword:
            raise ValueError("New password must be different from current password")
        return self


class AcceptInvitationRequest(BaseModel):
    token: str = Field(min_length=1)
    email: Email
    password: Password
    confirmPassword: str

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirmPassword:
            raise ValueError("Passwords don't match")
        return self


# -----------------
# Contact
# -----------------

class ContactRequest(BaseModel):
    name: Name
    email: Email
    subject: Annotated[str, BeforeValidator(_strip), Field(min_length=1, max_length=200)]
    message: Annotated[str, BeforeValidator(_strip), Field(min_length=10, max_length=5000)]
    # Honeypot: real users never see this field.
    website: Optional[str] = None


# -----------------
# Current user
# -----------------

class UpdateProfileRequest(BaseModel):
    name: Optional[Name] = None
    email: Optional[Email] = None
    bio: Optional[str] = Field(default=None, max_length=500)
    phone: Optional[str] = Field(default=None, max_length=20, pattern=PHONE_PATTERN)
    timezone: Optional[str] = Field(default=None, max_length=50)
    location: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name", "email", "timezone")
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class EmailPreferencesUpdate(BaseModel):
    marketing: Optional[bool] = None
    productUpdates: Optional[bool] = None
    # Security alerts cannot be turned off.
    securityAlerts: Optional[Literal[True]] = None


class PreferencesUpdate(BaseModel):
    email: Optional[EmailPreferencesUpdate] = None


class DeleteAccountRequest(BaseModel):
    confirmation: str

    @field_validator("confirmation")
    @classmethod
    def _confirmed(cls, v: str) -> str:
        if v != "DELETE":
            raise ValueError("Please type DELETE to confirm account deletion")
        return v


# -----------------
# Users (admin)
# -----------------

class ListUsersQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    search: Optional[str] = Field(default=None, max_length=200)
    sortBy: Literal["name", "email", "createdAt"] = "createdAt"
    sortOrder: SortOrder = "desc"


class InviteUserRequest(BaseModel):
    name: Name
    email: Email
    role: Role = "USER"


class AdminUserUpdate(BaseModel):
    name: Optional[Name] = None
    role: Optional[Role] = None
    emailVerified: Optional[bool] = None


# -----------------
# Invitations
# -----------------

class InvitationMetadataQuery(BaseModel):
    token: str = Field(min_length=1)
    email: Email


class ListInvitationsQuery(BaseModel):
    search: Optional[str] = Field(default=None, max_length=200)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sortBy: Literal["name", "email", "invitedAt", "expiresAt"] = "invitedAt"
    sortOrder: SortOrder = "desc"


# -----------------
# Admin
# -----------------

class LogsQuery(BaseModel):
    level: Optional[Literal["debug", "info", "warn", "error"]] = None
    search: Optional[str] = Field(default=None, max_length=200)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=100)


FlagMetadataValue = Union[bool, int, float, Annotated[str, Field(max_length=1000)]]


def _check_flag_metadata(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return value
    if len(value) > 50:
        raise ValueError("Metadata cannot have more than 50 keys")
    for key in value:
        if len(key) > 100:
            raise ValueError("Metadata keys must be at most 100 characters")
    return value


class FeatureFlagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    enabled: bool = False
    metadata: Optional[Dict[str, FlagMetadataValue]] = None

    @field_validator("name", mode="before")
    @classmethod
    def _upper_name(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("name")
    @classmethod
    def _name_format(cls, v: str) -> str:
        if not FLAG_NAME_PATTERN.match(v):
            raise ValueError("Flag name must be SCREAMING_SNAKE_CASE (e.g. ENABLE_FEATURE)")
        return v

    @field_validator("metadata")
    @classmethod
    def _metadata_limits(cls, v):
        return _check_flag_metadata(v)


class FeatureFlagUpdate(BaseModel):
    description: Optional[str] = Field(default=None, max_length=500)
    enabled: Optional[bool] = None
    metadata: Optional[Dict[str, FlagMetadataValue]] = None

    @field_validator("metadata")
    @classmethod
    def _metadata_limits(cls, v):
        return _check_flag_metadata(v)
