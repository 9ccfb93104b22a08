"""
Ambient（IoTデータ可視化サービス）クライアント

電力データをチャネルに送信し、蓄積データを読み出す
"""

import logging
from datetime import date, datetime
from typing import Optional

import httpx

AMBIENT_BASE_URL = "http://ambidata.io"

# 1レコードあたりのデータ数（d1〜d8）
MAX_DATA_FIELDS = 8


class AmbientClient:
    """Ambient チャネルクライアント"""

    def __init__(self, channel_id: int, write_key: str, read_key: str = "",
                 base_url: str = AMBIENT_BASE_URL,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            channel_id: チャネルID
            write_key: ライトキー
            read_key: リードキー
            base_url: APIのベースURL
            transport: httpxトランスポート（テスト用）
        """
        self.channel_id = channel_id
        self.write_key = write_key
        self.read_key = read_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self, read_timeout: float = 10.0) -> httpx.AsyncClient:
        timeout = httpx.Timeout(10.0, read=read_timeout)
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout,
                                 transport=self._transport)

    async def send(self, *values: Optional[float]) -> bool:
        """
        チャネルにデータ送信

        Args:
            values: d1〜d8 に順に割り当てる値（Noneは送信しない）

        Returns:
            送信成功ならTrue
        """
        if len(values) > MAX_DATA_FIELDS:
            raise ValueError(f"Ambient accepts at most {MAX_DATA_FIELDS} values")

        record = {f"d{i}": v for i, v in enumerate(values, start=1) if v is not None}
        if not record:
            return False

        payload = {"writeKey": self.write_key, "data": [record]}
        url = f"/api/v2/channels/{self.channel_id}/dataarray"
        logging.debug(f"Ambient request > {url} {record}")

        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logging.error(f"Ambient send error: {e}")
            return False

        if response.status_code != 200:
            logging.warning(f"Ambient send failed: {response.status_code}")
            return False
        return True

    async def read(self, n: Optional[int] = None, day: Optional[date] = None,
                   start: Optional[datetime] = None,
                   end: Optional[datetime] = None) -> list[dict]:
        """
        チャネルのデータを取得

        Args:
            n: 直近n件
            day: 1日分
            start/end: 期間指定

        Returns:
            [{"created": ..., "d1": ..., ...}, ...]。失敗時は空リスト
        """
        params: dict = {"readKey": self.read_key}
        if n is not None:
            params["n"] = n
        elif day is not None:
            params["date"] = day.isoformat()
        elif start is not None and end is not None:
            params["start"] = start.isoformat()
            params["end"] = end.isoformat()
        else:
            raise ValueError("Specify n, day, or start/end")

        url = f"/api/v2/channels/{self.channel_id}/data"
        logging.debug(f"Ambient request > {url} {params}")

        try:
            async with self._client(read_timeout=20.0) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            logging.error(f"Ambient read error: {e}")
            return []

        if response.status_code != 200:
            logging.warning(f"Ambient read failed: {response.status_code}")
            return []
        return response.json()


def create_ambient_client(channel_id: Optional[int], write_key: str,
                          read_key: str = "") -> Optional[AmbientClient]:
    """設定が揃っていればAmbientClientを作成"""
    if not channel_id or not write_key:
        logging.info("Ambient channel not configured")
        return None
    return AmbientClient(channel_id, write_key, read_key)
