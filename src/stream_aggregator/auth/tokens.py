"""In-memory representation of a platform's OAuth credentials."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any


@dataclass
class AuthToken:
    """Access/refresh token pair with an optional expiry.

    ``api_key`` is derived from ``access_token`` so the two can never drift
    apart, whatever mutates the token.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Long-lived token exchanged for new access tokens.
        expires_at: Access token expiry as epoch milliseconds, if known.
    """

    access_token: str = ""
    refresh_token: str = ""
    expires_at: int | None = None

    @property
    def api_key(self) -> str:
        return self.access_token

    def snapshot(self) -> AuthToken:
        """Return an independent copy for readers outside the token owner."""
        return replace(self)

    def to_store_dict(self) -> dict[str, Any]:
        """Serialize to the token store's camelCase section layout."""
        data: dict[str, Any] = {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
        }
        if self.expires_at is not None and math.isfinite(self.expires_at):
            data["expiresAt"] = int(self.expires_at)
        return data

    @classmethod
    def from_store_dict(cls, data: dict[str, Any]) -> AuthToken:
        expires_at = data.get("expiresAt")
        return cls(
            access_token=str(data.get("accessToken") or ""),
            refresh_token=str(data.get("refreshToken") or ""),
            expires_at=int(expires_at) if isinstance(expires_at, (int, float)) else None,
        )
