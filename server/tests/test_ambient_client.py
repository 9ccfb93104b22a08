"""
AmbientClient ユニットテスト
"""

import json
from datetime import date

import httpx
import pytest

import fakes  # noqa: F401  (serverディレクトリをパスに追加)

from ambient_client import AmbientClient, create_ambient_client


def make_client(handler) -> tuple[AmbientClient, list]:
    requests = []

    def record(request: httpx.Request):
        requests.append(request)
        return handler(request)

    client = AmbientClient(12345, "writekey", "readkey",
                           transport=httpx.MockTransport(record))
    return client, requests


@pytest.mark.asyncio
async def test_send():
    """d1〜dNとして送信し、Noneは省く"""
    client, requests = make_client(lambda r: httpx.Response(200))

    ok = await client.send(1500.0, 7.5, None, 0.3)

    assert ok is True
    assert requests[0].method == "POST"
    assert requests[0].url.path == "/api/v2/channels/12345/dataarray"
    body = json.loads(requests[0].content)
    assert body == {"writeKey": "writekey", "data": [{"d1": 1500.0, "d2": 7.5, "d4": 0.3}]}


@pytest.mark.asyncio
async def test_send_failure_status():
    client, requests = make_client(lambda r: httpx.Response(403))
    assert await client.send(1.0) is False


@pytest.mark.asyncio
async def test_send_network_error():
    def fail(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, requests = make_client(fail)
    assert await client.send(1.0) is False


@pytest.mark.asyncio
async def test_send_all_none():
    client, requests = make_client(lambda r: httpx.Response(200))
    assert await client.send(None, None) is False
    assert requests == []


@pytest.mark.asyncio
async def test_send_too_many_values():
    client, requests = make_client(lambda r: httpx.Response(200))
    with pytest.raises(ValueError):
        await client.send(*range(9))


@pytest.mark.asyncio
async def test_read_by_date():
    data = [{"created": "2024-10-19T05:00:00.000Z", "d1": 1200}]
    client, requests = make_client(lambda r: httpx.Response(200, json=data))

    result = await client.read(day=date(2024, 10, 19))

    assert result == data
    assert requests[0].url.path == "/api/v2/channels/12345/data"
    assert requests[0].url.params["readKey"] == "readkey"
    assert requests[0].url.params["date"] == "2024-10-19"


@pytest.mark.asyncio
async def test_read_latest_n():
    client, requests = make_client(lambda r: httpx.Response(200, json=[]))

    await client.read(n=10)

    assert requests[0].url.params["n"] == "10"


@pytest.mark.asyncio
async def test_read_failure():
    client, requests = make_client(lambda r: httpx.Response(500))
    assert await client.read(n=1) == []


@pytest.mark.asyncio
async def test_read_requires_range():
    client, requests = make_client(lambda r: httpx.Response(200, json=[]))
    with pytest.raises(ValueError):
        await client.read()


def test_create_ambient_client():
    assert create_ambient_client(None, "key") is None
    assert create_ambient_client(123, "") is None
    assert create_ambient_client(123, "key").channel_id == 123
