"""HTTP client for provisioning short-lived video rooms."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

DEFAULT_DAILY_API_URL = "https://api.daily.co/v1"
ROOM_TTL = timedelta(hours=1)

logger = logging.getLogger("auralynk.rooms")


class RoomProvisioningError(RuntimeError):
    """Raised when the video API cannot mint a room."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class Room:
    name: Optional[str]
    url: str
    expires_at: datetime


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Video API base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("info", "error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


class RoomProvisioner:
    """Create rooms through the Daily.co REST API."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_DAILY_API_URL,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._base_url = _normalize_base_url(base_url)
        self._timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def create_room(self, *, now: Optional[datetime] = None) -> Room:
        """Mint a room that expires one hour after creation."""

        if not self._api_key:
            raise RoomProvisioningError("Video API key is not configured")

        created = now or datetime.now(timezone.utc)
        expires_at = created + ROOM_TTL
        payload = {
            "properties": {
                "enable_chat": True,
                "start_video_off": True,
                "start_audio_off": True,
                "exp": int(expires_at.timestamp()),
            }
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        url = f"{self._base_url}/rooms"

        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, headers=headers, timeout=self._timeout)
            else:
                response = httpx.post(url, json=payload, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise RoomProvisioningError(f"Failed to contact video API: {exc}") from exc

        if not response.is_success:
            try:
                parsed: object = response.json()
            except ValueError:
                parsed = None
            message = _extract_error_message(
                parsed,
                f"Video API request failed with status {response.status_code}",
            )
            raise RoomProvisioningError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise RoomProvisioningError("Video API returned an invalid response") from exc

        room_url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(room_url, str) or not room_url.strip():
            raise RoomProvisioningError("Video API response did not include a room URL")

        name = data.get("name")
        logger.info("Provisioned video room %s expiring at %s", name or room_url, expires_at.isoformat())
        return Room(
            name=str(name) if name else None,
            url=room_url.strip(),
            expires_at=expires_at,
        )


__all__ = ["DEFAULT_DAILY_API_URL", "ROOM_TTL", "Room", "RoomProvisioner", "RoomProvisioningError"]
