"""
スマートメーターのデータモデル
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ConnectionParameters:
    """接続パラメータ（ドライバの生存期間中は不変）"""
    port: str
    broute_id: str
    broute_pwd: str
    baud_rate: int = 115200


@dataclass
class PeerInfo:
    """
    スキャン結果（EPANDESCのキー:値）

    アダプタが返すキー名（Channel, Pan ID, Addr, LQI ...）をそのまま保持する
    """
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def channel(self) -> Optional[str]:
        return self.fields.get("Channel")

    @property
    def pan_id(self) -> Optional[str]:
        return self.fields.get("Pan ID")

    @property
    def addr(self) -> Optional[str]:
        return self.fields.get("Addr")

    @property
    def lqi(self) -> Optional[str]:
        return self.fields.get("LQI")


@dataclass
class ConnectionState:
    """接続状態（ドライバ内部でのみ更新）"""
    peer_info: Optional[PeerInfo] = None
    address: Optional[str] = None
    # 最後に採用した30分積算値の時刻と値（重複抑止用）
    last_accumu30_time: Optional[datetime] = None
    last_accumu30_wh: Optional[int] = None


@dataclass
class Accumulated30Min:
    """30分積算電力量"""
    timestamp: datetime
    cumulative_wh: int
    delta_wh: int

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "cumulative_wh": self.cumulative_wh,
            "delta_wh": self.delta_wh,
        }


@dataclass
class CurrentPowerReading:
    """
    現在の電力情報

    instant_power: 瞬時電力(W)
    instant_current_r / instant_current_t: R相/T相電流(0.1A単位)
    accumulated_30min: 新しい30分積算値を受信した場合のみ設定
    """
    instant_power: Optional[int] = None
    instant_current_r: Optional[int] = None
    instant_current_t: Optional[int] = None
    accumulated_30min: Optional[Accumulated30Min] = None

    def to_dict(self) -> dict:
        return {
            "instant_power": self.instant_power,
            "instant_current_r": self.instant_current_r,
            "instant_current_t": self.instant_current_t,
            "accumulated_30min": (
                self.accumulated_30min.to_dict() if self.accumulated_30min else None
            ),
        }


@dataclass
class HistoryPowerReading:
    """1日分の30分積算電力量履歴(Wh)"""
    date: datetime
    accumu30_powers: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "accumu30_powers": list(self.accumu30_powers),
        }
