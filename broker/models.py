from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field, model_validator

AUTHORIZATION_REQUEST_FIELDS = ("client_id", "redirect_uri", "scope", "state")


class FlowState(str, Enum):
    START = "start"
    AWAITING_APPROVAL = "awaiting_approval"
    REDIRECTED_TO_PROVIDER = "redirected_to_provider"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AuthorizationRequest:
    client_id: str
    redirect_uri: str
    scope: str = ""
    state: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "AuthorizationRequest":
        extra = {
            key: value
            for key, value in params.items()
            if key not in AUTHORIZATION_REQUEST_FIELDS
        }
        return cls(
            client_id=params.get("client_id", ""),
            redirect_uri=params.get("redirect_uri", ""),
            scope=params.get("scope", ""),
            state=params.get("state", ""),
            extra=extra,
        )

    @classmethod
    def from_dict(cls, payload: Mapping) -> "AuthorizationRequest":
        values = {}
        for name in AUTHORIZATION_REQUEST_FIELDS:
            value = payload.get(name, "")
            if not isinstance(value, str):
                raise ValueError(f"{name} must be a string.")
            values[name] = value

        extra = payload.get("extra", {})
        if not isinstance(extra, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in extra.items()
        ):
            raise ValueError("extra must map strings to strings.")
        return cls(**values, extra=dict(extra))

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "extra": dict(self.extra),
        }


class UserProfile(BaseModel):
    id: str
    login: str
    name: str = ""
    email: str = ""


class TokenRecord(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_at: float
    issued_at: float
    scope: str = ""
    profile: UserProfile | None = None

    @model_validator(mode="after")
    def _check_lifetime(self) -> "TokenRecord":
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at.")
        return self

    def expires_within(self, margin_seconds: float, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return self.expires_at - margin_seconds <= current


class PendingOAuthState(BaseModel):
    owner_identity: str
    created_at: float


class SessionGrant(BaseModel):
    user_id: str
    client_id: str
    redirect_uri: str
    scope: str = ""
    metadata: dict = Field(default_factory=dict)
    props: dict = Field(default_factory=dict)
    created_at: float


@dataclass
class TokenBundle:
    access_token: str
    profile: UserProfile
    secondary: TokenRecord | None = None


@dataclass
class HandoffPayload:
    user_id: str
    scope: str
    metadata: dict
    props: dict
    request: AuthorizationRequest
    redirect_to: str = ""
