"""
スマートメーター通信の例外定義
"""

from typing import Optional


class SmartMeterError(Exception):
    """スマートメーター通信エラーの基底クラス"""


class PortUnavailable(SmartMeterError):
    """シリアルポートを開けない"""

    def __init__(self, port: str, reason: str = ""):
        self.port = port
        message = f"Cannot open serial port {port}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ReadTimeout(SmartMeterError, TimeoutError):
    """タイムアウト時間内に1行も受信できなかった"""


class SerialIOError(SmartMeterError):
    """送受信中のシリアルI/Oエラー（USB抜けなど）"""

    def __init__(self, port: str, reason: str = ""):
        self.port = port
        message = f"Serial I/O error on {port}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class JoinFailed(SmartMeterError):
    """
    接続シーケンスの失敗

    Attributes:
        step: 失敗したステップ名（password, route-id, scan, address,
              channel, pan-id, join）
        detail: アダプタの応答など
    """

    def __init__(self, step: str, detail: Optional[str] = None):
        self.step = step
        self.detail = detail
        message = f"Join failed at step '{step}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CommandRejected(JoinFailed):
    """アダプタがOK以外（FAIL等）を返した"""


class JoinTimeout(JoinFailed):
    """接続シーケンスの途中で応答がなかった（ReadTimeoutを原因として保持）"""


class NoPeerFound(JoinFailed):
    """スキャンでスマートメーターが見つからなかった"""

    def __init__(self, detail: Optional[str] = None):
        super().__init__("scan", detail or "no smart meter found")


class PanaAuthFailed(JoinFailed):
    """PANA認証失敗（EVENT 24）"""

    def __init__(self, detail: Optional[str] = None):
        super().__init__("join", detail or "PANA authentication rejected (EVENT 24)")


class MalformedFrame(SmartMeterError, ValueError):
    """ECHONET Liteプロパティの内容が想定外"""
