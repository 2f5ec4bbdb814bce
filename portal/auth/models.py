from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True)
class DemoUser:
    """User signed in with email/password. Profile fields are whatever the user store returns."""

    profile: Dict[str, Any]

    @property
    def id(self) -> Optional[str]:
        value = self.profile.get("id")
        return str(value) if value is not None else None

    @property
    def email(self) -> Optional[str]:
        return self.profile.get("email")

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.profile)


@dataclass
class FederatedPrincipal:
    """Identity established through the OIDC provider, with its tokens."""

    claims: Dict[str, Any] = field(default_factory=dict)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # Unix seconds (ID token `exp`)

    @property
    def sub(self) -> Optional[str]:
        value = self.claims.get("sub")
        return str(value) if value is not None else None

    def is_fresh(self, now: float) -> bool:
        return self.expires_at is not None and int(now) <= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claims": dict(self.claims),
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["FederatedPrincipal"]:
        if not isinstance(data, dict):
            return None
        claims = data.get("claims")
        expires_at = data.get("expires_at")
        try:
            expires_at = int(expires_at) if expires_at is not None else None
        except (TypeError, ValueError):
            expires_at = None
        return cls(
            claims=dict(claims) if isinstance(claims, dict) else {},
            access_token=data.get("access_token") or None,
            refresh_token=data.get("refresh_token") or None,
            expires_at=expires_at,
        )


SessionUser = Union[DemoUser, FederatedPrincipal]


@dataclass(frozen=True)
class UserUpsert:
    """User row written on every successful federated login (keyed by `id`)."""

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserUpsert":
        sub = claims.get("sub")
        if not sub:
            raise ValueError("Claims missing sub")
        return cls(
            id=str(sub),
            email=claims.get("email"),
            first_name=claims.get("first_name"),
            last_name=claims.get("last_name"),
            profile_image_url=claims.get("profile_image_url"),
        )


class TokenResponse(BaseModel):
    """Token endpoint response (authorization_code and refresh_token grants)."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


def user_to_dict(user: SessionUser) -> Dict[str, Any]:
    if isinstance(user, DemoUser):
        return user.to_dict()
    if isinstance(user, FederatedPrincipal):
        return user.to_dict()
    raise TypeError(f"Unknown session user type: {type(user).__name__}")
