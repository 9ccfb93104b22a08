"""
REST API / WebSocket サーバー

集計済み電力データと接続情報をJSON APIとWebSocketで配信する
"""

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from collections import deque
import asyncio
import json
import logging

from errors import ReadTimeout, SmartMeterError
from power_buffer import PowerSummary

# アプリケーション
app = FastAPI(title="Smart Meter B-route API")

# 最新データ
current_data: dict = {
    "sample_count": 0,
    "instant_power": None,
    "instant_current_r": None,
    "instant_current_t": None,
    "accumulated_30min": None,
    "delta_wh": None,
    "timestamp": None,
}

# 接続情報
connection_info: dict = {
    "channel": None,
    "pan_id": None,
    "mac_addr": None,
    "ipv6_addr": None,
    "rssi": None,
    "rssi_quality": None,
}

# 履歴データ
history: deque = deque(maxlen=100)

# WebSocket接続管理
connected_clients: list[WebSocket] = []

# Mockモードフラグ
_mock_mode: bool = False

# スマートメータークライアント（main.pyで設定）
meter_client = None


def set_mock_mode(mock: bool):
    """mockモードを設定"""
    global _mock_mode
    _mock_mode = mock


def set_meter_client(client):
    """履歴取得に使うクライアントを設定"""
    global meter_client
    meter_client = client


def update_power_data(summary: PowerSummary):
    """集計データを更新"""
    current_data.update(summary.to_dict())

    # 履歴に追加
    history.append(current_data.copy())


def update_connection_info(info: dict):
    """接続情報を更新"""
    connection_info.update(info)


async def broadcast_power_data():
    """全WebSocketクライアントにデータを送信"""
    if not connected_clients:
        return

    data = json.dumps(current_data)
    disconnected = []

    for client in connected_clients:
        try:
            await client.send_text(data)
        except Exception:
            disconnected.append(client)

    # 切断されたクライアントを削除
    for client in disconnected:
        connected_clients.remove(client)


# --- REST API ---


@app.get("/api/power")
async def get_power():
    """最新の集計値を取得"""
    return current_data


@app.get("/api/history")
async def get_history(limit: int = 0):
    """
    集計履歴を取得

    Args:
        limit: 取得件数（0=全件）
    """
    if limit > 0:
        return list(history)[-limit:]
    return list(history)


@app.get("/api/status")
async def get_status():
    """サーバーステータス"""
    return {
        "status": "running",
        "mock_mode": _mock_mode,
        "meter_connected": meter_client is not None,
        "history_count": len(history),
        "connected_clients": len(connected_clients),
        "last_update": current_data.get("timestamp"),
    }


@app.get("/api/connection")
async def get_connection():
    """接続情報を取得"""
    return connection_info


@app.get("/api/meter/history/{days_back}")
async def get_meter_history(days_back: int):
    """
    スマートメーターから指定日の30分積算履歴を取得

    ポーリング中でもクライアント側で排他されるため、ワーカースレッドで実行する
    """
    client = meter_client
    if client is None:
        raise HTTPException(status_code=503, detail="Smart meter not connected")

    try:
        reading = await asyncio.to_thread(client.query_history_power, days_back)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ReadTimeout as e:
        logging.warning(f"History query timeout: {e}")
        raise HTTPException(status_code=504, detail="Smart meter did not respond")
    except SmartMeterError as e:
        logging.error(f"History query failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return reading.to_dict()


# --- WebSocket ---


@app.websocket("/ws/power")
async def websocket_power(websocket: WebSocket):
    """WebSocket: 集計データ配信"""
    await websocket.accept()
    connected_clients.append(websocket)

    try:
        # 接続直後に現在値を送信
        await websocket.send_json(current_data)

        # 切断まで待機
        while True:
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=30)
            except asyncio.TimeoutError:
                # タイムアウトでもOK、接続は維持
                pass
    except WebSocketDisconnect:
        pass
    finally:
        if websocket in connected_clients:
            connected_clients.remove(websocket)
