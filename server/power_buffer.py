"""
電力サンプルバッファ

ポーリングタスクが追加したサンプルを、送信タスクが一定間隔で平均して取り出す
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models import Accumulated30Min, CurrentPowerReading


@dataclass
class PowerSummary:
    """送信間隔ごとの集計"""
    sample_count: int
    average_power: Optional[float]
    average_current_r: Optional[float]  # A
    average_current_t: Optional[float]  # A
    accumulated_30min: Optional[Accumulated30Min]
    delta_wh: Optional[int]
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "sample_count": self.sample_count,
            "instant_power": self.average_power,
            "instant_current_r": self.average_current_r,
            "instant_current_t": self.average_current_t,
            "accumulated_30min": (
                self.accumulated_30min.to_dict() if self.accumulated_30min else None
            ),
            "delta_wh": self.delta_wh,
            "timestamp": self.timestamp,
        }


def _mean(values: list[int]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


class PowerSampleBuffer:
    """スレッドセーフなサンプルバッファ"""

    def __init__(self, maxlen: int = 1000):
        self.maxlen = maxlen
        self._samples: deque = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add(self, reading: CurrentPowerReading):
        with self._lock:
            # 上限を超えたら古いサンプルから捨てる
            self._samples.append(reading)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def drain(self) -> Optional[PowerSummary]:
        """
        バッファを空にして集計を返す

        Returns:
            集計結果。サンプルがなければNone
        """
        with self._lock:
            samples = list(self._samples)
            self._samples.clear()

        if not samples:
            return None

        powers = [s.instant_power for s in samples if s.instant_power is not None]
        currents_r = [s.instant_current_r for s in samples if s.instant_current_r is not None]
        currents_t = [s.instant_current_t for s in samples if s.instant_current_t is not None]
        accumulated = [s.accumulated_30min for s in samples if s.accumulated_30min is not None]

        # 電流は0.1A単位 → A
        mean_r = _mean(currents_r)
        mean_t = _mean(currents_t)

        return PowerSummary(
            sample_count=len(samples),
            average_power=_mean(powers),
            average_current_r=mean_r / 10 if mean_r is not None else None,
            average_current_t=mean_t / 10 if mean_t is not None else None,
            accumulated_30min=accumulated[-1] if accumulated else None,
            delta_wh=sum(a.delta_wh for a in accumulated) if accumulated else None,
            timestamp=datetime.now().isoformat(),
        )
