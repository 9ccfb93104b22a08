"""
Mock Wi-SUN クライアント

Wi-SUNアダプタなしでテスト可能なモックデータ生成
"""

import random
from datetime import datetime, timedelta
from typing import Optional

from echonet_lite import JST
from models import Accumulated30Min, CurrentPowerReading, HistoryPowerReading
from wisun_client import rssi_quality


def base_power(hour: int, month: int) -> int:
    """時間帯・季節別のベース電力(W)"""
    if 6 <= hour < 9:  # 朝（起床・朝食準備）
        base = 1500
    elif 9 <= hour < 12:  # 午前
        base = 800
    elif 12 <= hour < 14:  # 昼
        base = 1200
    elif 14 <= hour < 18:  # 午後
        base = 600
    elif 18 <= hour < 22:  # 夜（夕食・入浴・エアコンなど）
        base = 2000
    elif 22 <= hour < 24:  # 深夜前
        base = 1000
    else:  # 深夜（待機電力中心）
        base = 300

    if month in [7, 8]:  # 夏（エアコン）
        base = int(base * 1.3)
    elif month in [1, 2, 12]:  # 冬（暖房）
        base = int(base * 1.4)
    return base


class MockWiSUNClient:
    """Mock Wi-SUN クライアント（テスト用）"""

    def __init__(
        self,
        port: str = "",
        broute_id: str = "",
        broute_pwd: str = "",
        baud_rate: int = 115200,
        **kwargs,
    ):
        """
        WiSUNClientと同じシグネチャを持つが、引数は無視される
        """
        self._connected = False
        self._last_accumu30_time: Optional[datetime] = None
        self._cumulative_wh = 12_345_600

    def connect(self) -> bool:
        """接続（常に成功）"""
        self._connected = True
        return True

    def reconnect(self) -> bool:
        return self.connect()

    def close(self):
        """切断"""
        self._connected = False

    def query_current_power(self) -> CurrentPowerReading:
        """
        リアルな電力データを生成

        - 時間帯による変動
        - ランダムなノイズ（±20%）
        - たまに発生する高負荷スパイク
        - 30分ごとに積算値を更新
        """
        now = datetime.now(JST)
        power = int(base_power(now.hour, now.month) * (1 + random.uniform(-0.2, 0.2)))

        # 10%の確率で高負荷スパイク（電子レンジ、ドライヤーなど）
        if random.random() < 0.1:
            power += random.choice([800, 1000, 1200, 1500])

        # 単相3線式: 電力 = 100V × 電流 として R相・T相に分散（0.1A単位）
        total_deci_amp = power // 10
        r_ratio = random.uniform(0.4, 0.6)
        current_r = int(total_deci_amp * r_ratio)
        current_t = total_deci_amp - current_r

        reading = CurrentPowerReading(
            instant_power=power,
            instant_current_r=current_r,
            instant_current_t=current_t,
        )

        slot = now.replace(minute=(now.minute // 30) * 30, second=0, microsecond=0)
        if slot != self._last_accumu30_time:
            delta = 0
            if self._last_accumu30_time is not None:
                delta = power // 2
                self._cumulative_wh += delta
            self._last_accumu30_time = slot
            reading.accumulated_30min = Accumulated30Min(
                timestamp=slot, cumulative_wh=self._cumulative_wh, delta_wh=delta
            )
        return reading

    def query_history_power(self, days_back: int) -> HistoryPowerReading:
        """Mock積算履歴（48コマ）"""
        day = (datetime.now(JST) - timedelta(days=days_back)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        total = self._cumulative_wh - days_back * 15_000
        values = []
        for slot in range(48):
            values.append(total)
            total += base_power(slot // 2, day.month) // 2
        return HistoryPowerReading(date=day, accumu30_powers=values)

    def get_connection_info(self) -> dict:
        """
        Mock接続情報を返す
        """
        # RSSIはランダムに変動（-50〜-80 dBm）
        rssi = random.randint(-80, -50)

        return {
            "channel": "33",
            "pan_id": "MOCK",
            "mac_addr": "MOCK00000001",
            "ipv6_addr": "FE80:0000:0000:0000:MOCK:MOCK:MOCK:0001",
            "rssi": rssi,
            "rssi_quality": rssi_quality(rssi),
        }
