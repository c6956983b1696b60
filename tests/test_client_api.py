"""预占 API 客户端测试（httpx.MockTransport）"""
import json

import httpx
import pytest

from storefront.client.api import ReservationApiClient
from storefront.core.exceptions import (
    ProductLockedByOther,
    ReservationError,
    ReservationNotHeld,
    TransientFailure,
)
from storefront.services.reservation_service import Availability


def _client(handler) -> ReservationApiClient:
    transport = httpx.MockTransport(handler)
    return ReservationApiClient(
        client=httpx.AsyncClient(transport=transport, base_url="http://shop.test/api/v1")
    )


@pytest.mark.asyncio
async def test_reserve_returns_server_expiry():
    """预占成功时使用服务端返回的到期时间"""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "success": True,
            "message": "Item reserved",
            "data": {
                "reservation_id": 7,
                "product_id": 3,
                "actor_id": "alice",
                "expires_at": "2026-01-05T10:15:00Z",
                "created": True,
            },
        })

    async with _client(handler) as api:
        grant = await api.reserve(3, "alice")

    assert seen == {"path": "/api/v1/reservations", "body": {"product_id": 3, "actor_id": "alice"}}
    assert grant.reservation_id == 7
    assert grant.expires_at.isoformat() == "2026-01-05T10:15:00+00:00"


@pytest.mark.asyncio
async def test_reserve_conflict_maps_to_locked_by_other():
    """409 冲突还原为 ProductLockedByOther"""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={
            "success": False,
            "message": "This item is currently reserved by another customer",
            "error_code": "PRODUCT_LOCKED_BY_OTHER",
            "retryable": False,
        })

    api = _client(handler)
    with pytest.raises(ProductLockedByOther) as exc_info:
        await api.reserve(3, "bob")
    await api.close()

    assert exc_info.value.retryable is False
    assert "another customer" in exc_info.value.message


@pytest.mark.asyncio
async def test_network_error_is_transient():
    """网络错误视为可重试的临时故障"""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api = _client(handler)
    with pytest.raises(TransientFailure) as exc_info:
        await api.reserve(3, "alice")
    await api.close()

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_server_error_without_code_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"success": False, "message": "Internal server error"})

    api = _client(handler)
    with pytest.raises(TransientFailure):
        await api.reserve(3, "alice")
    await api.close()


@pytest.mark.asyncio
async def test_client_error_without_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, text="not json")

    api = _client(handler)
    with pytest.raises(ReservationError) as exc_info:
        await api.reserve(3, "alice")
    await api.close()

    assert exc_info.value.error_code == "RESERVATION_ERROR"


@pytest.mark.asyncio
async def test_release_sends_actor_and_never_raises():
    """释放是尽力而为：失败时返回 False"""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path, request.url.params["actor_id"]))
        if len(calls) == 1:
            return httpx.Response(200, json={"success": True, "data": True})
        raise httpx.ReadTimeout("timed out", request=request)

    api = _client(handler)
    assert await api.release(3, "alice") is True
    assert await api.release(3, "alice") is False
    await api.close()

    assert calls[0] == ("DELETE", "/api/v1/reservations/3", "alice")


@pytest.mark.asyncio
async def test_release_after_close_returns_false():
    """客户端关闭后释放不抛异常"""
    api = _client(lambda request: httpx.Response(200, json={"success": True, "data": True}))
    await api.close()

    assert await api.release(1, "alice") is False


@pytest.mark.asyncio
async def test_release_with_non_json_body_returns_false():
    api = _client(lambda request: httpx.Response(200, text="<html>proxy page</html>"))

    assert await api.release(1, "alice") is False
    await api.close()


@pytest.mark.asyncio
async def test_release_deferred_sets_query_flag():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json={"success": True, "data": False, "task_id": "task-1"})

    api = _client(handler)
    assert await api.release(1, "alice", deferred=True) is False
    await api.close()

    assert seen == {"actor_id": "alice", "deferred": "true"}


@pytest.mark.asyncio
async def test_consume_not_held():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={
            "success": False,
            "message": "Your reservation for this item is no longer held",
            "error_code": "RESERVATION_NOT_HELD",
            "retryable": False,
            "product_id": 4,
        })

    api = _client(handler)
    with pytest.raises(ReservationNotHeld) as exc_info:
        await api.consume("alice", [3, 4])
    await api.close()

    assert exc_info.value.product_id == 4


@pytest.mark.asyncio
async def test_list_reservations_and_availability():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/reservations/actor/alice":
            return httpx.Response(200, json={
                "success": True,
                "actor_id": "alice",
                "data": [{
                    "id": 7,
                    "actor_id": "alice",
                    "product_id": 3,
                    "created_at": "2026-01-05T10:00:00",
                    "expires_at": "2026-01-05T10:15:00",
                    "expired": False,
                }],
            })
        if request.url.path == "/api/v1/products/3/availability":
            return httpx.Response(200, json={"success": True, "product_id": 3, "status": "reserved"})
        assert request.url.params["sweep"] == "true"
        return httpx.Response(200, json={"success": True, "data": {"3": "reserved", "4": "sold"}})

    async with _client(handler) as api:
        reservations = await api.list_reservations("alice")
        status = await api.get_availability(3)
        statuses = await api.batch_availability([3, 4], sweep=True)

    assert [r.product_id for r in reservations] == [3]
    assert status == Availability.RESERVED
    assert statuses == {3: Availability.RESERVED, 4: Availability.SOLD}
