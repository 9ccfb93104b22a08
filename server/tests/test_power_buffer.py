"""
PowerSampleBuffer ユニットテスト
"""

import threading
from datetime import datetime

import fakes  # noqa: F401  (serverディレクトリをパスに追加)

from echonet_lite import JST
from models import Accumulated30Min, CurrentPowerReading
from power_buffer import PowerSampleBuffer


def reading(power, r=None, t=None, accumulated=None):
    return CurrentPowerReading(
        instant_power=power, instant_current_r=r, instant_current_t=t,
        accumulated_30min=accumulated,
    )


def test_drain_empty():
    assert PowerSampleBuffer().drain() is None


def test_drain_averages():
    buffer = PowerSampleBuffer()
    buffer.add(reading(1000, 50, 40))
    buffer.add(reading(2000, 100, 60))
    buffer.add(reading(None))

    summary = buffer.drain()

    assert summary.sample_count == 3
    assert summary.average_power == 1500
    assert summary.average_current_r == 7.5
    assert summary.average_current_t == 5.0
    assert summary.accumulated_30min is None
    assert summary.delta_wh is None
    # 取り出したら空になる
    assert len(buffer) == 0
    assert buffer.drain() is None


def test_drain_accumulated():
    """最新の30分積算値と差分の合計"""
    first = Accumulated30Min(datetime(2024, 10, 19, 14, 0, tzinfo=JST), 100000, 200)
    second = Accumulated30Min(datetime(2024, 10, 19, 14, 30, tzinfo=JST), 100300, 300)

    buffer = PowerSampleBuffer()
    buffer.add(reading(100, accumulated=first))
    buffer.add(reading(100))
    buffer.add(reading(100, accumulated=second))

    summary = buffer.drain()

    assert summary.accumulated_30min is second
    assert summary.delta_wh == 500
    assert summary.to_dict()["accumulated_30min"]["cumulative_wh"] == 100300


def test_maxlen():
    buffer = PowerSampleBuffer(maxlen=3)
    for power in range(5):
        buffer.add(reading(power))

    assert len(buffer) == 3
    assert buffer.drain().average_power == 3


def test_concurrent_add():
    buffer = PowerSampleBuffer()

    def producer():
        for _ in range(200):
            buffer.add(reading(100))

    threads = [threading.Thread(target=producer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert buffer.drain().sample_count == 800
