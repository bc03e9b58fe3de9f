import httpx
import pytest

from telecare.core.errors import ProviderUnavailable
from telecare.services.video import StaticRoomProvider, ZoomRoomProvider


def _zoom(handler) -> ZoomRoomProvider:
    return ZoomRoomProvider(
        account_id="acc", client_id="cid", client_secret="secret",
        timeout=2, transport=httpx.MockTransport(handler),
    )


async def test_static_provider_is_deterministic():
    provider = StaticRoomProvider("https://meet.example.org/rooms/")
    room = await provider.create_room("c-1")
    assert room.room_id == "tc-c-1"
    assert room.join_url == "https://meet.example.org/rooms/tc-c-1"


async def test_zoom_creates_a_meeting_and_caches_the_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(201, json={"id": 987654321, "join_url": "https://zoom.us/j/987654321"})

    provider = _zoom(handler)
    room = await provider.create_room("c-1", start_time_iso="2025-06-10T14:30:00.000Z", duration_min=30)
    await provider.create_room("c-2")

    assert room.room_id == "987654321"
    assert room.join_url == "https://zoom.us/j/987654321"
    assert seen.count("/oauth/token") == 1


async def test_zoom_errors_are_provider_unavailable():
    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable) as exc:
        await _zoom(refused).create_room("c-1")
    assert exc.value.retryable

    def rejected(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(429, json={"message": "Too many requests"})

    with pytest.raises(ProviderUnavailable):
        await _zoom(rejected).create_room("c-1")


async def test_zoom_without_credentials_fails_cleanly():
    provider = ZoomRoomProvider(account_id="", client_id="", client_secret="",
                                transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    provider.account_id = provider.client_id = provider.client_secret = None
    with pytest.raises(ProviderUnavailable):
        await provider.create_room("c-1")


async def test_zoom_malformed_success_body_is_provider_unavailable():
    def truncated(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(201, json={"uuid": "abc=="})

    with pytest.raises(ProviderUnavailable) as exc:
        await _zoom(truncated).create_room("c-1")
    assert exc.value.retryable

    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(ProviderUnavailable):
        await _zoom(not_json).create_room("c-1")
