"""
積算電力量履歴ダンプスクリプト

スマートメーターに接続し、過去N日分の30分積算電力量履歴を取得して表示する
"""

import argparse
import logging
import sys
import time

import config
from errors import ReadTimeout, SmartMeterError
from wisun_client import WiSUNClient


def parse_args():
    parser = argparse.ArgumentParser(description="過去の積算電力量履歴を取得")
    parser.add_argument("--days", type=int, default=45, help="遡る日数（最大99）")
    parser.add_argument("--interval", type=float, default=5, help="リクエスト間隔（秒）")
    return parser.parse_args()


def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    client = WiSUNClient(
        port=config.SERIAL_PORT,
        broute_id=config.BROUTE_ID,
        broute_pwd=config.BROUTE_PASSWORD,
        baud_rate=getattr(config, "BAUD_RATE", 115200),
    )

    with client:
        try:
            client.connect()
        except SmartMeterError as e:
            logging.error(f"Connection failed: {e}")
            return 1

        for days_back in range(min(args.days, 100)):
            try:
                history = client.query_history_power(days_back)
            except ReadTimeout:
                logging.warning(f"{days_back} days back: no response, skipped")
                time.sleep(args.interval)
                continue

            if history.accumu30_powers:
                logging.info(f"{history.date:%Y-%m-%d}: {history.accumu30_powers[0]}Wh")
            else:
                logging.warning(f"{history.date:%Y-%m-%d}: empty history")
            time.sleep(args.interval)

    return 0


if __name__ == "__main__":
    sys.exit(main())
