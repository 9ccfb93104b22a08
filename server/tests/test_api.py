"""
API ユニットテスト

REST API と WebSocket のテスト
"""

import pytest
from httpx import AsyncClient, ASGITransport

import fakes  # noqa: F401  (serverディレクトリをパスに追加)

from api import (
    app,
    update_power_data,
    update_connection_info,
    history,
    current_data,
    connected_clients,
    set_mock_mode,
    set_meter_client,
)
from errors import ReadTimeout
from models import CurrentPowerReading
from power_buffer import PowerSampleBuffer


@pytest.fixture(autouse=True)
def reset_state():
    """各テスト前に状態をリセット"""
    for key in current_data:
        current_data[key] = None
    current_data["sample_count"] = 0
    history.clear()
    connected_clients.clear()
    set_mock_mode(False)
    set_meter_client(None)
    yield


@pytest.fixture
def transport():
    """ASGITransportを作成"""
    return ASGITransport(app=app)


def summary(power, r=50, t=40):
    buffer = PowerSampleBuffer()
    buffer.add(CurrentPowerReading(instant_power=power, instant_current_r=r, instant_current_t=t))
    return buffer.drain()


# --- REST API Tests ---


@pytest.mark.asyncio
async def test_get_power_initial(transport):
    """初期状態では全てNone"""
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/power")

    assert response.status_code == 200
    data = response.json()
    assert data["instant_power"] is None
    assert data["instant_current_r"] is None
    assert data["timestamp"] is None


@pytest.mark.asyncio
async def test_get_power_after_update(transport):
    """update_power_data後は値が取得できる"""
    update_power_data(summary(1500, 85, 72))

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/power")

    assert response.status_code == 200
    data = response.json()
    assert data["instant_power"] == 1500
    assert data["instant_current_r"] == 8.5
    assert data["instant_current_t"] == 7.2
    assert data["sample_count"] == 1
    assert data["timestamp"] is not None


@pytest.mark.asyncio
async def test_get_history_with_limit(transport):
    """limitパラメータで件数制限"""
    for i in range(5):
        update_power_data(summary(1000 + i * 100))

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        all_items = (await client.get("/api/history")).json()
        limited = (await client.get("/api/history?limit=3")).json()

    assert len(all_items) == 5
    assert [d["instant_power"] for d in limited] == [1200, 1300, 1400]


@pytest.mark.asyncio
async def test_get_status(transport):
    """ステータス情報の確認"""
    set_mock_mode(True)

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/status")

    data = response.json()
    assert data["status"] == "running"
    assert data["mock_mode"] is True
    assert data["meter_connected"] is False
    assert data["history_count"] == 0
    assert data["last_update"] is None


@pytest.mark.asyncio
async def test_get_connection(transport):
    update_connection_info({"channel": "21", "pan_id": "8888", "rssi": -62})

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/connection")

    data = response.json()
    assert data["channel"] == "21"
    assert data["pan_id"] == "8888"
    assert data["rssi"] == -62


# --- 積算履歴 ---


@pytest.mark.asyncio
async def test_meter_history_not_connected(transport):
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/meter/history/1")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_meter_history_mock(transport):
    """MockWiSUNClientから48コマの履歴を取得"""
    from mock_client import MockWiSUNClient

    set_meter_client(MockWiSUNClient())

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/meter/history/2")

    assert response.status_code == 200
    data = response.json()
    assert len(data["accumu30_powers"]) == 48
    assert data["date"].endswith("T00:00:00+09:00")


@pytest.mark.asyncio
async def test_meter_history_errors(transport):
    class TimeoutClient:
        def query_history_power(self, days_back):
            if days_back > 99:
                raise ValueError("days_back must be 0..99")
            raise ReadTimeout("no response")

    set_meter_client(TimeoutClient())

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        timeout = await client.get("/api/meter/history/1")
        invalid = await client.get("/api/meter/history/100")

    assert timeout.status_code == 504
    assert invalid.status_code == 400


# --- WebSocket Tests ---


def test_websocket_connection():
    """WebSocket接続と初期データ受信"""
    from starlette.testclient import TestClient

    update_power_data(summary(1500, 85, 72))

    with TestClient(app) as client:
        with client.websocket_connect("/ws/power") as websocket:
            data = websocket.receive_json()
            assert data["instant_power"] == 1500
            assert data["instant_current_r"] == 8.5


# --- MockWiSUNClient Tests ---


def test_mock_client_connect():
    from mock_client import MockWiSUNClient

    client = MockWiSUNClient()
    assert client.connect() is True


def test_mock_client_query_current_power():
    """MockWiSUNClientのデータ生成"""
    from mock_client import MockWiSUNClient

    client = MockWiSUNClient()
    client.connect()

    first = client.query_current_power()
    second = client.query_current_power()

    assert first.instant_power > 0
    assert first.instant_current_r + first.instant_current_t == first.instant_power // 10
    # 同じ30分枠の積算値は1回だけ
    assert first.accumulated_30min is not None
    assert second.accumulated_30min is None or second.accumulated_30min.timestamp != first.accumulated_30min.timestamp


def test_mock_client_connection_info():
    from mock_client import MockWiSUNClient

    info = MockWiSUNClient().get_connection_info()
    assert info["channel"] == "33"
    assert info["rssi_quality"] in ("excellent", "good", "fair")
