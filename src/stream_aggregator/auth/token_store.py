"""Atomic JSON token store.

The store is a single JSON document keyed by platform::

    {
        "twitch": {"accessToken": "...", "refreshToken": "...", "expiresAt": 1700000000000},
        "youtube": {...},
        "tiktok": {...}
    }

Writes go to ``<path>.tmp`` and are moved into place with
:func:`os.replace`, so a concurrent reader sees either the previous or the
new document, never a partial one.  Sections other than the one being
written are preserved verbatim.

All methods are synchronous; async callers wrap them in
:func:`asyncio.to_thread`.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from stream_aggregator.auth.tokens import AuthToken
from stream_aggregator.core.clock import Clock, SystemClock, ms_to_iso
from stream_aggregator.core.exceptions import TokenStoreError

logger = logging.getLogger(__name__)

_DIR_MODE = 0o700
_FILE_MODE = 0o600


class TokenStore:
    """Read and atomically rewrite the token store file.

    Args:
        path: Location of the JSON file.  Parent directories are created on
            first write.
        clock: Time source for the ``updatedAt`` stamp.
    """

    def __init__(self, path: str | os.PathLike[str], clock: Clock | None = None) -> None:
        self.path = Path(path)
        self._clock = clock or SystemClock()

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    # ------------------------------------------------------------------
    # Whole-document access
    # ------------------------------------------------------------------

    def load(self) -> dict[str, Any]:
        """Return the whole document; a missing file yields an empty mapping.

        Raises:
            TokenStoreError: If the file exists but is not a JSON object.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise TokenStoreError("Invalid token store file", path=str(self.path)) from exc
        if not isinstance(data, dict):
            raise TokenStoreError("Invalid token store file", path=str(self.path))
        return data

    def save(self, data: dict[str, Any]) -> None:
        """Atomically replace the document with *data*."""
        self.path.parent.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
        tmp = self.temp_path
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.chmod(tmp, _FILE_MODE)
            os.replace(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("token_store: wrote %s — sections=%s", self.path, sorted(data))

    # ------------------------------------------------------------------
    # Platform sections
    # ------------------------------------------------------------------

    def load_tokens(self, platform: str = "twitch") -> AuthToken | None:
        """Return the stored token for *platform*, or ``None``.

        ``None`` is returned when the section is absent or carries neither an
        access token nor a refresh token.
        """
        section = self.load().get(platform)
        if not isinstance(section, dict):
            return None
        if not section.get("accessToken") and not section.get("refreshToken"):
            return None
        return AuthToken.from_store_dict(section)

    def save_tokens(self, token: AuthToken, platform: str = "twitch") -> None:
        """Merge *token* into the *platform* section, keeping other sections.

        An empty ``refresh_token`` keeps the previously stored one.
        """
        data = self.load()
        previous = data.get(platform) if isinstance(data.get(platform), dict) else {}
        section = dict(previous)
        section.update(token.to_store_dict())
        if not token.refresh_token and previous.get("refreshToken"):
            section["refreshToken"] = previous["refreshToken"]
        if "expiresAt" not in token.to_store_dict():
            section.pop("expiresAt", None)
        section["updatedAt"] = ms_to_iso(self._clock.now_ms())
        data[platform] = section
        self.save(data)

    def clear_tokens(self, platform: str = "twitch") -> None:
        """Remove the *platform* section; a no-op when it is absent."""
        data = self.load()
        if platform in data:
            del data[platform]
            self.save(data)
            logger.info("token_store: cleared %s tokens", platform)
