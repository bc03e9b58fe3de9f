"""Session-token providers for video consultations.

``create_room(consultation_id)`` returns the provider room id and the join url.
Every failure surfaces as ``ProviderUnavailable`` so callers can keep the
consultation pending and retry later.
"""
import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from telecare.core.config import settings
from telecare.core.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Room:
    room_id: str
    join_url: str


class RoomProvider(Protocol):
    async def create_room(self, consultation_id: str, *, start_time_iso: str | None = None,
                          duration_min: int | None = None) -> Room: ...


class StaticRoomProvider:
    """Deterministic rooms on a self-hosted meeting domain (dev / on-prem)."""

    def __init__(self, base_url: str | None = None):
        self.base_url = (base_url or settings.STATIC_MEETING_BASE_URL).rstrip("/")

    async def create_room(self, consultation_id: str, *, start_time_iso: str | None = None,
                          duration_min: int | None = None) -> Room:
        room_id = f"tc-{consultation_id}"
        return Room(room_id=room_id, join_url=f"{self.base_url}/{room_id}")


class ZoomRoomProvider:
    """Zoom meetings through a server-to-server OAuth app."""

    def __init__(
        self,
        account_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_id = account_id or settings.ZOOM_ACCOUNT_ID
        self.client_id = client_id or settings.ZOOM_CLIENT_ID
        self.client_secret = client_secret or settings.ZOOM_CLIENT_SECRET
        self.timeout = timeout or settings.VIDEO_PROVIDER_TIMEOUT_SECONDS
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _access_token(self) -> str:
        # reuse the token while more than 5 minutes remain
        if self._token and self._token_expires_at > time.monotonic() + 300:
            return self._token

        if not (self.account_id and self.client_id and self.client_secret):
            raise ProviderUnavailable("Zoom credentials are not configured")

        async with self._client() as client:
            resp = await client.post(
                settings.ZOOM_TOKEN_URL,
                params={"grant_type": "account_credentials", "account_id": self.account_id},
                auth=(self.client_id, self.client_secret),
            )
        if resp.status_code != 200:
            raise ProviderUnavailable(f"Zoom token error: {resp.status_code} {resp.text}")
        try:
            data = resp.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderUnavailable(f"Malformed Zoom token response: {exc!r}") from exc
        self._token = token
        self._token_expires_at = time.monotonic() + expires_in
        logger.info("Zoom access token refreshed")
        return self._token

    async def create_room(self, consultation_id: str, *, start_time_iso: str | None = None,
                          duration_min: int | None = None) -> Room:
        try:
            token = await self._access_token()
            payload = {
                "topic": f"{settings.APP_NAME} consultation {consultation_id}",
                "type": 2,  # scheduled
                "start_time": start_time_iso,
                "duration": duration_min or settings.SLOT_DURATION_MINUTES,
                "settings": {
                    "host_video": True,
                    "participant_video": True,
                    "waiting_room": True,
                    "join_before_host": False,
                    "mute_upon_entry": True,
                    "approval_type": 0,
                },
            }
            async with self._client() as client:
                resp = await client.post(
                    f"{settings.ZOOM_API}/users/{settings.ZOOM_HOST_USER}/meetings",
                    headers={"Authorization": f"Bearer {token}"},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Zoom unreachable: {exc}") from exc

        if resp.status_code not in (200, 201):
            raise ProviderUnavailable(f"Create meeting error: {resp.status_code} {resp.text}")
        try:
            data = resp.json()
            return Room(room_id=str(data["id"]), join_url=data["join_url"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderUnavailable(f"Malformed create meeting response: {exc!r}") from exc


def default_provider() -> RoomProvider:
    if settings.VIDEO_PROVIDER == "zoom":
        return ZoomRoomProvider()
    return StaticRoomProvider()
