"""
Wi-SUN Bルート通信クライアント

SKSTACK系 Wi-SUN アダプタ（BP35A1 等）のSKコマンドでスマートメーターに接続し、
ECHONET Liteで瞬時電力・瞬時電流・30分積算電力量・積算履歴を取得する
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import echonet_lite as el
from errors import (
    CommandRejected,
    JoinFailed,
    JoinTimeout,
    MalformedFrame,
    NoPeerFound,
    PanaAuthFailed,
    ReadTimeout,
    SmartMeterError,
)
from models import (
    Accumulated30Min,
    ConnectionParameters,
    ConnectionState,
    CurrentPowerReading,
    HistoryPowerReading,
    PeerInfo,
)
from serial_transport import SerialTransport, TimeoutMode

# 積算履歴収集日の最大値
MAX_HISTORY_DAYS = 99


class WiSUNClient:
    """Wi-SUN Bルート通信クライアント"""

    # UDPポート（ECHONET Lite）
    ECHONET_PORT = "0E1A"

    def __init__(self, port: str, broute_id: str, broute_pwd: str,
                 baud_rate: int = 115200, scan_duration: int = 6,
                 erxudp_format: el.ErxudpFormat = el.ERXUDP_SKSTACK,
                 transport: Optional[SerialTransport] = None):
        """
        初期化

        Args:
            port: シリアルポート（例: /dev/ttyUSB0）
            broute_id: BルートID（32文字）
            broute_pwd: Bルートパスワード（12文字）
            baud_rate: ボーレート（デフォルト: 115200）
            scan_duration: SKSCANのDuration（デフォルト: 6）
            erxudp_format: ERXUDP行のトークン配置
            transport: シリアル転送（テスト用に差し替え可能）
        """
        self.params = ConnectionParameters(
            port=port, broute_id=broute_id, broute_pwd=broute_pwd, baud_rate=baud_rate
        )
        self.scan_duration = scan_duration
        self.erxudp_format = erxudp_format
        self.transport = transport or SerialTransport(port, baud_rate)

        self.state = ConnectionState()
        self.last_rssi: Optional[int] = None  # 最後に受信したRSSI (dBm)
        self._needs_reconnect: bool = False   # 次回クエリ前に再接続が必要か
        # アダプタとのやりとりは常に1つだけ
        self._lock = threading.Lock()

    @classmethod
    def from_params(cls, params: ConnectionParameters, **kwargs) -> "WiSUNClient":
        return cls(params.port, params.broute_id, params.broute_pwd,
                   baud_rate=params.baud_rate, **kwargs)

    @property
    def address(self) -> Optional[str]:
        return self.state.address

    @property
    def peer_info(self) -> Optional[PeerInfo]:
        return self.state.peer_info

    def close(self):
        """
        シリアルポートを閉じる（接続状態も破棄）

        実行中の通信があれば、それが終わるまで待つ
        """
        with self._lock:
            self.transport.close()
            self.state = ConnectionState()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # --- 接続シーケンス ---

    def connect(self) -> bool:
        """
        スマートメーターに接続

        パスワード設定 → BルートID設定 → スキャン → アドレス変換 →
        チャンネル/PAN ID設定 → PANA接続 を順に実行する。
        失敗時はシリアルポートを閉じて例外を送出する

        Returns:
            接続成功したらTrue
        """
        with self._lock:
            try:
                if not self.transport.is_open:
                    self.transport.open()
                self._setup_credentials()
                self._join()
            except BaseException:
                self.transport.close()
                self.state = ConnectionState()
                raise
        return True

    def reconnect(self) -> bool:
        """
        再接続（スキャンからPANA接続まで）

        既存のシリアルポートをそのまま使う
        """
        with self._lock:
            self._join()
        return True

    def _setup_credentials(self):
        logging.info("Setting B-route password...")
        self._expect_ok(f"SKSETPWD C {self.params.broute_pwd}", "password")

        logging.info("Setting B-route ID...")
        self._expect_ok(f"SKSETRBID {self.params.broute_id}", "route-id")

    def _join(self):
        """スキャン〜PANA接続（接続シーケンスの後半）"""
        peer = self._scan()
        self.state.peer_info = peer

        address = self._resolve_address(peer.addr)
        self.state.address = address

        self._expect_ok(f"SKSREG S2 {peer.channel}", "channel")
        self._expect_ok(f"SKSREG S3 {peer.pan_id}", "pan-id")

        self._pana_join(address)
        self._needs_reconnect = False

    def _scan(self) -> PeerInfo:
        """アクティブスキャンでスマートメーターを探す"""
        logging.info(f"Scanning for smart meter (duration={self.scan_duration})...")
        self.transport.set_timeout_mode(TimeoutMode.BLOCKING)
        try:
            self.transport.write_line(f"SKSCAN 2 FFFFFFFF {self.scan_duration:X}")
            lines = self._await_response("scan", "EVENT 22", "FAIL")
        finally:
            self.transport.set_timeout_mode(TimeoutMode.SEMI_BLOCKING)

        if lines[-1].startswith("FAIL"):
            logging.error(f"SKSCAN rejected: {lines[-1]}")
            raise CommandRejected("scan", f"SKSCAN: {lines[-1]}")

        peer = parse_scan_result(lines)
        if peer is None:
            logging.error("Smart meter not found")
            raise NoPeerFound(f"no Channel in {len(lines)} scan lines")

        logging.info(f"Found: CH={peer.channel}, PAN={peer.pan_id}, Addr={peer.addr}")
        if peer.lqi:
            logging.info(f"Scan LQI: {peer.lqi} (signal quality)")
        return peer

    def _resolve_address(self, mac_addr: Optional[str]) -> str:
        """MACアドレスからIPv6リンクローカルアドレスを取得"""
        if not mac_addr:
            raise JoinFailed("address", "scan result has no Addr")

        self.transport.write_line(f"SKLL64 {mac_addr}")
        lines = self._await_response("address", "FE80:", "FAIL")
        if lines[-1].startswith("FAIL"):
            logging.error(f"SKLL64 rejected: {lines[-1]}")
            raise CommandRejected("address", f"SKLL64: {lines[-1]}")
        # 続けて届いている行も確認し、最後のFE80:行を採用
        while self.transport.has_buffered_data():
            lines.append(self.transport.read_line())

        candidates = [l.strip() for l in lines if l.strip().startswith("FE80:")]
        if not candidates:
            raise JoinFailed("address", f"SKLL64 {mac_addr} returned no link-local address")

        address = candidates[-1]
        logging.info(f"IPv6 address: {address}")
        return address

    def _pana_join(self, address: str):
        """PANA接続"""
        logging.info("Connecting (SKJOIN)...")
        self.transport.set_timeout_mode(TimeoutMode.BLOCKING)
        try:
            self.transport.write_line(f"SKJOIN {address}")
            lines = self._await_response("join", "EVENT 24", "EVENT 25", "FAIL")
        finally:
            self.transport.set_timeout_mode(TimeoutMode.SEMI_BLOCKING)

        last = lines[-1]
        if last.startswith("FAIL"):
            logging.error(f"SKJOIN rejected: {last}")
            raise CommandRejected("join", f"SKJOIN: {last}")
        if last.startswith("EVENT 24"):
            logging.error("Connection failed (EVENT 24)")
            raise PanaAuthFailed()

        logging.info("Connected successfully!")
        # 接続後バッファクリア
        self.transport.discard_input()

    def _expect_ok(self, command: str, step: str):
        """コマンドを送信し、OK応答を確認する"""
        self.transport.write_line(command)
        lines = self._await_response(step, "OK", "FAIL")
        if lines[-1].strip() != "OK":
            logging.error(f"Command rejected at step '{step}': {lines[-1]}")
            raise CommandRejected(step, f"{command.split()[0]}: {lines[-1]}")

    def _await_response(self, step: str, *prefixes: str) -> list[str]:
        """
        いずれかの文字列で始まる行が来るまで受信する

        Raises:
            JoinTimeout: 途中でタイムアウトした（stepに失敗したステップ名）
        """
        lines = []
        while True:
            try:
                line = self.transport.read_line()
            except ReadTimeout as e:
                logging.error(f"No response at step '{step}': {e}")
                raise JoinTimeout(step, str(e)) from e
            lines.append(line)
            if any(line.startswith(p) for p in prefixes):
                return lines

    # --- ECHONET Lite 通信 ---

    def _send_echonet(self, esv: int, properties: list[tuple[int, Optional[bytes]]]):
        """ECHONET Lite電文をSKSENDTOで送信"""
        if not self.state.address:
            raise JoinFailed("address", "not connected")

        frame = el.build_frame(esv, properties)
        # 注意: ヘッダとデータの間に区切りなし、データの後にCRLFを付けない
        prefix = f"SKSENDTO 1 {self.state.address} {self.ECHONET_PORT} 1 {len(frame):04X} "
        self.transport.write_frame(prefix, frame)

    def _ensure_session(self):
        """PANAセッション切断を検知していればクエリ前に再接続"""
        if self._needs_reconnect:
            logging.warning("PANA session lost, reconnecting before query...")
            self._join()

    def _recover_session(self):
        """応答がなかった場合の再接続（失敗しても例外は送出しない）"""
        logging.warning("No response from smart meter, attempting reconnect...")
        try:
            self._join()
        except SmartMeterError as e:
            logging.error(f"Reconnect failed: {e}")
            self._needs_reconnect = True

    def _match_response(self, line: str, esv: int, epcs: set[int]) -> Optional[el.EchonetFrame]:
        """受信行が期待する応答ならデコード済み電文を返す"""
        if line.startswith("EVENT 29"):
            # PANAセッションのライフタイム切れ
            logging.warning("PANA session expired (EVENT 29)")
            self._needs_reconnect = True
            return None
        if line.startswith("EVENT 21"):
            parts = line.split()
            if len(parts) >= 4 and parts[-1] != "00":
                logging.warning(f"Send failed: EVENT 21 result={parts[-1]}")
            return None

        notification = el.decode_notification(line, esv, self.erxudp_format)
        if notification is None:
            return None
        if not any(notification.frame.get(epc) for epc in epcs):
            logging.debug(f"ERXUDP ignored: EPC mismatch ({line[-40:]})")
            return None
        if notification.rssi is not None:
            self.last_rssi = notification.rssi
        return notification.frame

    def _process_response(self, matcher: Callable[[str], Optional[el.EchonetFrame]]
                          ) -> el.EchonetFrame:
        """
        応答を受信する

        対象の応答を受け取るまで、またはアダプタからの後続行が残っている間は
        読み続ける。応答を受け取る前にタイムアウトした場合は再接続してから
        ReadTimeoutを送出する
        """
        result: Optional[el.EchonetFrame] = None
        while True:
            try:
                line = self.transport.read_line()
            except ReadTimeout:
                if result is None:
                    self._recover_session()
                    raise
                break

            frame = matcher(line)
            if frame is not None:
                if result is None:
                    result = frame
                else:
                    logging.debug("Duplicate response ignored")

            if not (self.transport.has_buffered_data() or result is None):
                break

        logging.debug(f"Response: {result}")
        return result

    def query_current_power(self) -> CurrentPowerReading:
        """
        瞬時電力・瞬時電流・30分積算電力量を取得

        Raises:
            ReadTimeout: 応答なし（内部で再接続済み。呼び出し側で再試行する）
        """
        epcs = [el.EPC_INSTANT_POWER, el.EPC_INSTANT_CURRENT, el.EPC_ACCUMULATED_30MIN]
        with self._lock:
            self._ensure_session()
            self._send_echonet(el.ESV_GET, [(epc, None) for epc in epcs])
            frame = self._process_response(
                lambda line: self._match_response(line, el.ESV_GET_RES, set(epcs))
            )
            return self._build_current_power(frame)

    def _build_current_power(self, frame: el.EchonetFrame) -> CurrentPowerReading:
        reading = CurrentPowerReading()
        for prop in frame.properties:
            try:
                if prop.epc == el.EPC_INSTANT_POWER:
                    reading.instant_power = el.decode_instant_power(prop.edt)
                elif prop.epc == el.EPC_INSTANT_CURRENT:
                    r, t = el.decode_instant_current(prop.edt)
                    reading.instant_current_r = r
                    reading.instant_current_t = t
                elif prop.epc == el.EPC_ACCUMULATED_30MIN:
                    timestamp, energy = el.decode_accumulated_30min(prop.edt)
                    reading.accumulated_30min = self._accept_accumulated(timestamp, energy)
            except MalformedFrame as e:
                logging.warning(f"Property skipped: {e}")
        return reading

    def _accept_accumulated(self, timestamp: datetime, energy: int) -> Optional[Accumulated30Min]:
        """前回と同じ時刻の30分積算値は採用しない"""
        if timestamp == self.state.last_accumu30_time:
            return None

        last = self.state.last_accumu30_wh
        delta = energy - last if last is not None else 0
        self.state.last_accumu30_time = timestamp
        self.state.last_accumu30_wh = energy
        logging.info(f"30-min energy: {timestamp:%Y-%m-%d %H:%M} {energy}Wh (+{delta}Wh)")
        return Accumulated30Min(timestamp=timestamp, cumulative_wh=energy, delta_wh=delta)

    def query_history_power(self, days_back: int) -> HistoryPowerReading:
        """
        指定日の30分積算電力量履歴を取得

        Args:
            days_back: 遡る日数（0=今日, 最大99）

        Raises:
            ValueError: days_backが範囲外
            ReadTimeout: 応答なし（内部で再接続済み）
        """
        if not 0 <= days_back <= MAX_HISTORY_DAYS:
            raise ValueError(f"days_back must be 0..{MAX_HISTORY_DAYS}: {days_back}")

        with self._lock:
            self._ensure_session()

            # 収集日を設定し、書き込み応答を待ってから履歴を読み出す
            self._send_echonet(el.ESV_SET_C, [(el.EPC_HISTORY_DAY, bytes([days_back]))])
            self._process_response(
                lambda line: self._match_response(line, el.ESV_SET_RES, {el.EPC_HISTORY_DAY})
            )

            self._send_echonet(el.ESV_GET, [(el.EPC_HISTORY_LOG, None)])
            frame = self._process_response(
                lambda line: self._match_response(line, el.ESV_GET_RES, {el.EPC_HISTORY_LOG})
            )

        date = (datetime.now(el.JST) - timedelta(days=days_back)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        history = HistoryPowerReading(date=date)
        prop = frame.get(el.EPC_HISTORY_LOG)
        try:
            _, history.accumu30_powers = el.decode_history_log(prop.edt)
        except MalformedFrame as e:
            logging.warning(f"History log skipped: {e}")
        return history

    def get_connection_info(self) -> dict:
        """
        接続情報を取得

        Returns:
            {
                "channel": チャンネル番号,
                "pan_id": PAN ID,
                "mac_addr": MACアドレス,
                "ipv6_addr": IPv6アドレス,
                "rssi": 電波強度(dBm),
                "rssi_quality": 電波品質("excellent"/"good"/"fair"/"poor")
            }
        """
        info = {
            "channel": None,
            "pan_id": None,
            "mac_addr": None,
            "ipv6_addr": self.state.address,
            "rssi": self.last_rssi,
            "rssi_quality": rssi_quality(self.last_rssi),
        }

        if self.state.peer_info:
            info["channel"] = self.state.peer_info.channel
            info["pan_id"] = self.state.peer_info.pan_id
            info["mac_addr"] = self.state.peer_info.addr

        return info


def parse_scan_result(lines: list[str]) -> Optional[PeerInfo]:
    """
    SKSCANの応答からスマートメーター情報を取り出す

    EPANDESCごとのインデント行（"  Key:Value"）を集め、
    Channelを含む最初の結果を返す
    """
    results: list[dict[str, str]] = []
    current: Optional[dict[str, str]] = None

    for line in lines:
        if line.startswith("EPANDESC"):
            current = {}
            results.append(current)
        elif line.startswith("  ") and ":" in line:
            if current is None:
                current = {}
                results.append(current)
            key, value = line.strip().split(":", 1)
            current[key.strip()] = value.strip()

    for fields in results:
        if "Channel" in fields:
            return PeerInfo(fields=fields)
    return None


def rssi_quality(rssi: Optional[int]) -> Optional[str]:
    """RSSI品質判定"""
    if rssi is None:
        return None
    if rssi >= -60:
        return "excellent"
    elif rssi >= -70:
        return "good"
    elif rssi >= -80:
        return "fair"
    return "poor"


# テスト用
if __name__ == "__main__":
    import config

    logging.basicConfig(level=logging.DEBUG)

    client = WiSUNClient(
        port=config.SERIAL_PORT,
        broute_id=config.BROUTE_ID,
        broute_pwd=config.BROUTE_PASSWORD
    )

    with client:
        client.connect()
        print("\n--- Getting power data ---")
        for i in range(10):
            try:
                reading = client.query_current_power()
                print(f"Power: {reading.instant_power}W")
            except ReadTimeout as e:
                print(f"Timeout: {e}")
            time.sleep(10)
