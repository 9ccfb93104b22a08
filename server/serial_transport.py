"""
Wi-SUNアダプタとのシリアル行転送

SKコマンド（ASCII + CRLF）の送信と応答行の受信を行う
"""

import enum
import logging
from typing import Optional

import serial

from errors import PortUnavailable, ReadTimeout, SerialIOError


class TimeoutMode(enum.Enum):
    """受信タイムアウトモード"""
    # コマンド応答用: 数秒データが来なければ応答終了とみなす
    SEMI_BLOCKING = "semi-blocking"
    # イベント待ち用（スキャン完了、PANA接続）
    BLOCKING = "blocking"


class SerialTransport:
    """Wi-SUNアダプタのシリアル行転送"""

    def __init__(self, port: str, baud_rate: int = 115200,
                 short_timeout: float = 3.0, long_timeout: float = 20.0):
        """
        Args:
            port: シリアルポート（例: /dev/ttyUSB0）
            baud_rate: ボーレート（デフォルト: 115200）
            short_timeout: SEMI_BLOCKINGモードの受信タイムアウト（秒）
            long_timeout: BLOCKINGモードの受信タイムアウト（秒）
        """
        self.port = port
        self.baud_rate = baud_rate
        self.short_timeout = short_timeout
        self.long_timeout = long_timeout
        self.mode = TimeoutMode.SEMI_BLOCKING

        self.ser: Optional[serial.Serial] = None

    def open(self):
        """シリアルポートを開く"""
        try:
            self.ser = serial.Serial(
                self.port,
                self.baud_rate,
                timeout=self.short_timeout
            )
        except serial.SerialException as e:
            logging.error(f"Serial open error: {e}")
            raise PortUnavailable(self.port, str(e)) from e
        self.mode = TimeoutMode.SEMI_BLOCKING
        logging.info(f"Opened serial port {self.port} ({self.baud_rate} bps)")

    def close(self):
        """シリアルポートを閉じる（何度呼んでもよい）"""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logging.info(f"Closed serial port {self.port}")
        self.ser = None

    @property
    def is_open(self) -> bool:
        return self.ser is not None and self.ser.is_open

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise PortUnavailable(self.port, "port is not open")
        return self.ser

    def _io_error(self, e: Exception) -> SerialIOError:
        logging.error(f"Serial I/O error: {e}")
        return SerialIOError(self.port, str(e))

    def set_timeout_mode(self, mode: TimeoutMode):
        """受信タイムアウトモードを切り替える"""
        ser = self._require_open()
        try:
            if mode is TimeoutMode.BLOCKING:
                ser.timeout = self.long_timeout
            else:
                ser.timeout = self.short_timeout
        except (serial.SerialException, OSError) as e:
            raise self._io_error(e) from e
        self.mode = mode
        logging.debug(f"Timeout mode: {mode.value} ({ser.timeout}s)")

    def write_line(self, text: str):
        """コマンドを送信（CRLFを付加）"""
        ser = self._require_open()
        logging.debug(f"Send: {text}")
        try:
            ser.write((text + "\r\n").encode("latin-1"))
        except (serial.SerialException, OSError) as e:
            raise self._io_error(e) from e

    def write_frame(self, prefix: str, payload: bytes):
        """
        コマンドヘッダの直後にバイナリデータを続けて送信

        SKSENDTOはヘッダとデータの間に区切りを置かず、データの後にCRLFも付けない
        """
        ser = self._require_open()
        logging.debug(f"Send: {prefix}{payload.hex().upper()}")
        try:
            ser.write(prefix.encode("latin-1") + payload)
        except (serial.SerialException, OSError) as e:
            raise self._io_error(e) from e

    def read_line(self) -> str:
        """
        1行受信

        Returns:
            行末のCRLFを除いた文字列（先頭の空白は保持）

        Raises:
            ReadTimeout: 現在のタイムアウト時間内に何も受信できなかった
            SerialIOError: 受信中にI/Oエラーが発生した（USB抜けなど）
        """
        ser = self._require_open()
        try:
            raw = ser.readline()
        except (serial.SerialException, OSError) as e:
            raise self._io_error(e) from e
        if not raw:
            raise ReadTimeout(
                f"No data from {self.port} within {ser.timeout}s ({self.mode.value})"
            )
        line = raw.decode("latin-1").rstrip("\r\n")
        logging.debug(f"Recv: {line}")
        return line

    def has_buffered_data(self) -> bool:
        """受信済みで未読のデータがあればTrue（ブロックしない）"""
        ser = self._require_open()
        try:
            return ser.in_waiting > 0
        except (serial.SerialException, OSError) as e:
            raise self._io_error(e) from e

    def discard_input(self) -> int:
        """未読の受信データを読み捨てる"""
        ser = self._require_open()
        discarded = 0
        try:
            while ser.in_waiting > 0:
                discarded += len(ser.read(ser.in_waiting))
        except (serial.SerialException, OSError) as e:
            raise self._io_error(e) from e
        if discarded:
            logging.debug(f"Discarded {discarded} bytes")
        return discarded
