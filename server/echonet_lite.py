"""
ECHONET Lite 電文のエンコード/デコード

低圧スマート電力量メータ（0x028801）との通信に必要な範囲のみ扱う
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional, Sequence

from errors import MalformedFrame

JST = timezone(timedelta(hours=9), "JST")

# ヘッダ
EHD = 0x1081
DEFAULT_TID = 0x0000

# オブジェクト
CONTROLLER_EOJ = 0x05FF01    # コントローラー（送信元）
SMART_METER_EOJ = 0x028801   # 低圧スマート電力量メータ

# ESV（サービスコード）
ESV_SET_C = 0x61      # プロパティ値書き込み要求（応答要）
ESV_GET = 0x62        # プロパティ値読み出し要求
ESV_SET_RES = 0x71    # プロパティ値書き込み応答
ESV_GET_RES = 0x72    # プロパティ値読み出し応答
ESV_SET_C_SNA = 0x51  # プロパティ値書き込み不可応答
ESV_GET_SNA = 0x52    # プロパティ値読み出し不可応答

# EPC（プロパティコード）
EPC_HISTORY_LOG = 0xE2        # 積算電力量計測値履歴1（正方向）
EPC_HISTORY_DAY = 0xE5        # 積算履歴収集日1
EPC_INSTANT_POWER = 0xE7      # 瞬時電力計測値
EPC_INSTANT_CURRENT = 0xE8    # 瞬時電流計測値
EPC_ACCUMULATED_30MIN = 0xEA  # 定時積算電力量計測値（正方向）

# 固定ヘッダ長（EHD+TID+SEOJ+DEOJ+ESV+OPC）
HEADER_SIZE = 12

# 積算電力量の単位（0.1kWh）をWhに換算
ENERGY_SCALE_WH = 100


class ErxudpFormat(NamedTuple):
    """
    ERXUDP通知行のトークン配置

    ファームウェアや SA2 レジスタ設定によってフィールド数が変わるため、
    使用するアダプタに合わせて選択する
    """
    name: str
    data_index: int
    rssi_index: Optional[int] = None


# ERXUDP SENDER DEST RPORT LPORT SENDERLLA SECURED DATALEN DATA
ERXUDP_SKSTACK = ErxudpFormat("skstack", 8)
# ERXUDP SENDER DEST RPORT LPORT SENDERLLA SECURED SIDE DATALEN DATA
ERXUDP_SKSTACK_SIDE = ErxudpFormat("skstack-side", 9)
# ERXUDP SENDER DEST RPORT LPORT SENDERLLA RSSI SECURED SIDE DATALEN DATA (SA2=1)
ERXUDP_SKSTACK_SIDE_RSSI = ErxudpFormat("skstack-side-rssi", 10, rssi_index=6)

ERXUDP_FORMATS = {
    f.name: f for f in (ERXUDP_SKSTACK, ERXUDP_SKSTACK_SIDE, ERXUDP_SKSTACK_SIDE_RSSI)
}


@dataclass(frozen=True)
class RawFrameField:
    """ECHONET Liteプロパティ（EPC, PDC, EDT）"""
    epc: int
    pdc: int
    edt: bytes


@dataclass(frozen=True)
class EchonetFrame:
    """デコード済みECHONET Lite電文"""
    tid: int
    seoj: int
    deoj: int
    esv: int
    properties: tuple[RawFrameField, ...]

    def get(self, epc: int) -> Optional[RawFrameField]:
        for prop in self.properties:
            if prop.epc == epc:
                return prop
        return None


@dataclass(frozen=True)
class Notification:
    """ERXUDP通知から取り出した応答"""
    frame: EchonetFrame
    rssi: Optional[int] = None


def build_frame(esv: int, properties: Sequence[tuple[int, Optional[bytes]]],
                deoj: int = SMART_METER_EOJ, tid: int = DEFAULT_TID) -> bytes:
    """
    ECHONET Lite電文を組み立てる

    Args:
        esv: サービスコード（ESV_GET / ESV_SET_C）
        properties: (EPC, EDT) のリスト。読み出し要求ではEDTにNoneを指定
        deoj: 宛先オブジェクト
        tid: トランザクションID

    Returns:
        電文のバイト列
    """
    if not 0 < len(properties) <= 0xFF:
        raise ValueError(f"Invalid property count: {len(properties)}")

    frame = bytearray()
    frame += EHD.to_bytes(2, "big")
    frame += tid.to_bytes(2, "big")
    frame += CONTROLLER_EOJ.to_bytes(3, "big")
    frame += deoj.to_bytes(3, "big")
    frame.append(esv)
    frame.append(len(properties))
    for epc, edt in properties:
        edt = edt or b""
        if len(edt) > 0xFF:
            raise ValueError(f"EDT too long for EPC {epc:02X}: {len(edt)} bytes")
        frame.append(epc)
        frame.append(len(edt))
        frame += edt
    return bytes(frame)


def to_hex(frame: bytes) -> str:
    """電文を大文字16進文字列にする"""
    return frame.hex().upper()


def parse_frame(payload: str) -> Optional[EchonetFrame]:
    """
    16進文字列のECHONET Lite電文をデコード

    ECHONET Liteとして解釈できない場合はNoneを返す（例外は送出しない）
    """
    try:
        data = bytes.fromhex(payload)
    except (TypeError, ValueError):
        return None

    if len(data) < HEADER_SIZE:
        return None
    if int.from_bytes(data[0:2], "big") != EHD:
        return None

    tid = int.from_bytes(data[2:4], "big")
    seoj = int.from_bytes(data[4:7], "big")
    deoj = int.from_bytes(data[7:10], "big")
    esv = data[10]
    opc = data[11]

    properties = []
    pos = HEADER_SIZE
    for _ in range(opc):
        if pos >= len(data):
            break
        if pos + 2 > len(data):
            return None
        epc = data[pos]
        pdc = data[pos + 1]
        edt = data[pos + 2:pos + 2 + pdc]
        if len(edt) != pdc:
            return None
        properties.append(RawFrameField(epc=epc, pdc=pdc, edt=edt))
        pos += 2 + pdc

    return EchonetFrame(tid=tid, seoj=seoj, deoj=deoj, esv=esv,
                        properties=tuple(properties))


def decode_notification(line: str, expected_esv: int = ESV_GET_RES,
                        erxudp_format: ErxudpFormat = ERXUDP_SKSTACK
                        ) -> Optional[Notification]:
    """
    ERXUDP通知行からスマートメーターの応答を取り出す

    ERXUDP以外の行、スマートメーター以外からの電文、ESVが異なる電文は
    すべてNone（対象外）として扱う

    Args:
        line: アダプタからの受信行
        expected_esv: 期待するESV（デフォルト: Get_Res）
        erxudp_format: ERXUDP行のトークン配置
    """
    if not line or not line.startswith("ERXUDP"):
        return None

    parts = line.split()
    if len(parts) <= erxudp_format.data_index:
        return None

    frame = parse_frame(parts[erxudp_format.data_index])
    if frame is None:
        return None
    if frame.seoj != SMART_METER_EOJ or frame.esv != expected_esv:
        return None

    rssi = None
    if erxudp_format.rssi_index is not None and len(parts) > erxudp_format.rssi_index:
        try:
            # RSSI(dBm) = 値 - 107
            rssi = int(parts[erxudp_format.rssi_index], 16) - 107
        except ValueError:
            rssi = None

    return Notification(frame=frame, rssi=rssi)


# --- プロパティ値のデコード ---


def _require_length(epc: int, edt: bytes, length: int):
    if len(edt) != length:
        raise MalformedFrame(
            f"EPC {epc:02X}: expected {length} bytes, got {len(edt)} ({edt.hex().upper()})"
        )


def decode_instant_power(edt: bytes) -> int:
    """
    瞬時電力(W)

    先頭バイトが0xFFの値（逆潮流時に稀に返る負値）は0とする
    """
    _require_length(EPC_INSTANT_POWER, edt, 4)
    if edt[0] == 0xFF:
        return 0
    return int.from_bytes(edt, "big")


def decode_instant_current(edt: bytes) -> tuple[int, int]:
    """瞬時電流 (R相, T相)（0.1A単位）"""
    _require_length(EPC_INSTANT_CURRENT, edt, 4)
    return int.from_bytes(edt[0:2], "big"), int.from_bytes(edt[2:4], "big")


def decode_accumulated_30min(edt: bytes) -> tuple[datetime, int]:
    """
    定時積算電力量

    年(2) 月(1) 日(1) 時(1) 分(1) 秒(1) 積算電力量(4, 0.1kWh)

    Returns:
        (計測日時(JST), 積算電力量(Wh))
    """
    _require_length(EPC_ACCUMULATED_30MIN, edt, 11)
    year = int.from_bytes(edt[0:2], "big")
    month, day, hour, minute, second = edt[2], edt[3], edt[4], edt[5], edt[6]
    try:
        timestamp = datetime(year, month, day, hour, minute, second, tzinfo=JST)
    except ValueError as e:
        raise MalformedFrame(f"EPC EA: invalid timestamp ({edt[0:7].hex().upper()})") from e
    energy = int.from_bytes(edt[7:11], "big") * ENERGY_SCALE_WH
    return timestamp, energy


def decode_history_log(edt: bytes) -> tuple[Optional[int], list[int]]:
    """
    積算電力量計測値履歴1

    先頭に収集日(2バイト)が付いている場合は取り除く。
    未計測のコマ（0xFFFFFFFE等）もそのまま×100して返す

    Returns:
        (収集日 or None, 30分ごとの積算電力量(Wh)のリスト)
    """
    day = None
    body = edt
    if len(edt) % 4 == 2:
        day = int.from_bytes(edt[0:2], "big")
        body = edt[2:]
    elif len(edt) % 4 != 0:
        raise MalformedFrame(f"EPC E2: unexpected length {len(edt)}")

    values = [
        int.from_bytes(body[i:i + 4], "big") * ENERGY_SCALE_WH
        for i in range(0, len(body), 4)
    ]
    return day, values
