#!/usr/bin/env python3
"""
スマートメーター Bルート モニター

Wi-SUN Bルートでスマートメーターから電力データを取得し、
一定間隔で平均してAmbientへ送信、REST API / WebSocket で配信する
"""

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path

import uvicorn


def setup_logging():
    """ロギング設定（コンソール + ファイル）"""
    log_dir = Path(__file__).parent / "logs"
    log_dir.mkdir(exist_ok=True)

    log_file = log_dir / "server.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # 既存のハンドラをクリア（重複防止）
    logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # ファイルハンドラ（ローテーション: 1MB x 5世代）
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger, log_file


# ローカルモジュール
try:
    import config
except ImportError:
    print("Error: config.py が見つかりません")
    print("config.py.example をコピーして config.py を作成し、")
    print("BルートID/パスワードを設定してください")
    sys.exit(1)

import api
from ambient_client import create_ambient_client
from discord_notifier import create_discord_notifier
from echonet_lite import ERXUDP_FORMATS
from errors import ReadTimeout, SmartMeterError
from models import ConnectionParameters
from power_buffer import PowerSampleBuffer


def parse_args():
    """コマンドライン引数をパース"""
    parser = argparse.ArgumentParser(description="スマートメーター Bルート モニター")
    parser.add_argument(
        "--mock",
        "-m",
        action="store_true",
        help="Mockモードで起動（Wi-SUNアダプタ不要）",
    )
    return parser.parse_args()


def is_mock_mode(args) -> bool:
    """Mockモードかどうかを判定（優先順位: コマンドライン > 環境変数 > config）"""
    if args.mock:
        return True

    env_mock = os.environ.get("MOCK_MODE", "").lower()
    if env_mock in ("true", "1", "yes"):
        return True

    return bool(getattr(config, "MOCK_MODE", False))


def connection_params() -> ConnectionParameters:
    return ConnectionParameters(
        port=config.SERIAL_PORT,
        broute_id=config.BROUTE_ID,
        broute_pwd=config.BROUTE_PASSWORD,
        baud_rate=getattr(config, "BAUD_RATE", 115200),
    )


def create_client(mock_mode: bool):
    """クライアントを作成"""
    if mock_mode:
        from mock_client import MockWiSUNClient

        return MockWiSUNClient()

    from wisun_client import WiSUNClient

    erxudp_format = ERXUDP_FORMATS[getattr(config, "ERXUDP_FORMAT", "skstack")]
    return WiSUNClient.from_params(
        connection_params(),
        scan_duration=getattr(config, "SCAN_DURATION", 6),
        erxudp_format=erxudp_format,
    )


# グローバル変数
wisun_client = None
sample_buffer = PowerSampleBuffer()
running = True


async def power_loop():
    """電力データ取得ループ（POLL_INTERVAL秒ごと）"""
    interval = getattr(config, "POLL_INTERVAL", 10)

    while running:
        try:
            reading = await asyncio.to_thread(wisun_client.query_current_power)
            sample_buffer.add(reading)
            api.update_connection_info(wisun_client.get_connection_info())
            logging.debug(f"Power: {reading.instant_power}W")
        except ReadTimeout as e:
            # クライアント内で再接続済み、次回ポーリングで再試行
            logging.warning(f"Power query timeout: {e}")
        except SmartMeterError as e:
            logging.error(f"Power query failed: {e}")
        except Exception as e:
            logging.error(f"Error in power loop: {e}", exc_info=True)

        await asyncio.sleep(interval)


async def upload_loop(ambient, notifier):
    """集計・送信ループ（UPLOAD_INTERVAL秒ごと）"""
    interval = getattr(config, "UPLOAD_INTERVAL", 60)
    threshold = getattr(config, "ALERT_THRESHOLD", 4000)

    while running:
        await asyncio.sleep(interval)

        summary = sample_buffer.drain()
        if summary is None:
            logging.warning("No power samples in this interval")
            continue

        api.update_power_data(summary)
        await api.broadcast_power_data()
        logging.info(
            f"Power: {summary.average_power}W "
            f"(R={summary.average_current_r}A, T={summary.average_current_t}A, "
            f"n={summary.sample_count})"
        )

        if ambient is not None:
            delta_kwh = summary.delta_wh / 1000 if summary.delta_wh is not None else None
            await ambient.send(
                summary.average_power,
                summary.average_current_r,
                summary.average_current_t,
                delta_kwh,
            )

        if notifier is not None and summary.average_power is not None:
            await notifier.notify_power(summary.average_power, threshold)


async def connect_with_retry(mock_mode: bool, notifier, max_retries: int = 20,
                             retry_delay: int = 10) -> bool:
    """スマートメーターに接続（失敗したらクライアントを作り直して再試行）"""
    global wisun_client

    wisun_client = create_client(mock_mode)
    for attempt in range(max_retries):
        try:
            await asyncio.to_thread(wisun_client.connect)
            return True
        except SmartMeterError as e:
            logging.error(f"Failed to connect to smart meter "
                          f"(attempt {attempt + 1}/{max_retries}): {e}")

        if attempt < max_retries - 1:
            logging.info(f"Retrying in {retry_delay} seconds...")
            await asyncio.sleep(retry_delay)
            wisun_client.close()
            wisun_client = create_client(mock_mode)

    logging.error("All connection attempts failed")
    logging.error("Please check:")
    logging.error("  1. Wi-SUN adapter is connected")
    logging.error("  2. B-route ID/password is correct")
    logging.error("  3. Smart meter is in range")
    if notifier is not None:
        await notifier.notify_connection_failure(
            f"{max_retries}回の接続に失敗しました ({config.SERIAL_PORT})"
        )
    return False


async def main():
    """メイン関数"""
    global running

    logger, log_file = setup_logging()

    args = parse_args()
    mock_mode = is_mock_mode(args)
    api.set_mock_mode(mock_mode)

    notifier = create_discord_notifier(
        getattr(config, "DISCORD_WEBHOOK_URL", ""),
        cooldown_minutes=getattr(config, "NOTIFY_COOLDOWN_MINUTES", 5),
    )
    ambient = create_ambient_client(
        getattr(config, "AMBIENT_CHANNEL_ID", None),
        getattr(config, "AMBIENT_WRITE_KEY", ""),
        getattr(config, "AMBIENT_READ_KEY", ""),
    )

    logging.info("=" * 50)
    logging.info("スマートメーター Bルート モニター")
    if mock_mode:
        logging.info("*** MOCK MODE ***")
    logging.info(f"Ambient: {'Enabled' if ambient else 'Disabled'}")
    logging.info(f"Discord: {'Enabled' if notifier else 'Disabled'}")
    logging.info(f"Log file: {log_file}")
    logging.info("=" * 50)

    if not mock_mode:
        logging.info(f"Connecting to Wi-SUN adapter ({config.SERIAL_PORT})...")

    if not await connect_with_retry(mock_mode, notifier):
        # 急速な再起動ループを防ぐため待機
        logging.info("Waiting 10 minutes before exit to prevent rapid restart loop...")
        await asyncio.sleep(600)
        sys.exit(1)

    api.set_meter_client(wisun_client)
    api.update_connection_info(wisun_client.get_connection_info())

    api_host = getattr(config, "API_HOST", "0.0.0.0")
    api_port = getattr(config, "API_PORT", 8000)
    logging.info(f"Starting API server on http://{api_host}:{api_port}")
    logging.info("Press Ctrl+C to stop")

    power_task = asyncio.create_task(power_loop())
    upload_task = asyncio.create_task(upload_loop(ambient, notifier))

    server_config = uvicorn.Config(
        api.app, host=api_host, port=api_port, log_level="warning"
    )
    server = uvicorn.Server(server_config)

    try:
        await server.serve()
    except asyncio.CancelledError:
        pass
    finally:
        running = False
        power_task.cancel()
        upload_task.cancel()

        if wisun_client:
            wisun_client.close()

        logging.info("Server stopped")


def signal_handler(sig, frame):
    """シグナルハンドラ"""
    global running
    logging.info("Shutting down...")
    running = False
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    asyncio.run(main())
