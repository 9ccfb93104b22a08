"""
Discord Webhook通知クライアント

電力しきい値超過やスマートメーター接続失敗を通知する
"""

import asyncio
import logging
import time
from typing import Optional

import aiohttp

# Embedの色
COLOR_WARNING = 0xFF6600
COLOR_ERROR = 0xCC0000


class DiscordNotifier:
    """Discord Webhookで通知を送信するクライアント"""

    def __init__(self, webhook_url: str, cooldown_minutes: int = 5):
        """
        Args:
            webhook_url: Discord Webhook URL
            cooldown_minutes: 通知間隔（分）
        """
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_minutes * 60
        self._last_notification_time: float = 0

    def in_cooldown(self) -> bool:
        return time.time() - self._last_notification_time < self.cooldown_seconds

    async def send(self, message: str, title: str = "スマートメーター",
                   color: int = COLOR_WARNING, skip_cooldown: bool = False) -> bool:
        """
        Discord Webhookで通知を送信

        Args:
            message: 通知本文
            title: 通知タイトル
            color: Embedの色
            skip_cooldown: クールダウンを無視する（接続失敗通知など）

        Returns:
            送信成功時True
        """
        if not skip_cooldown:
            if self.in_cooldown():
                logging.debug("Discord notification suppressed (cooldown)")
                return False
            self._last_notification_time = time.time()

        payload = {"embeds": [{"title": title, "description": message, "color": color}]}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as response:
                    if response.status == 204:
                        logging.info("Discord notification sent")
                        return True
                    logging.warning(f"Discord webhook failed: {response.status}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logging.error(f"Discord webhook error: {e}")
            return False

    async def notify_power(self, power: float, threshold: int) -> bool:
        """しきい値超過通知"""
        if power < threshold:
            return False
        message = f"現在: {power:,.0f}W\nしきい値: {threshold:,}W"
        return await self.send(message, title="電力使用量アラート")

    async def notify_connection_failure(self, reason: str) -> bool:
        """スマートメーター接続失敗通知"""
        return await self.send(reason, title="スマートメーター接続失敗",
                               color=COLOR_ERROR, skip_cooldown=True)


def create_discord_notifier(webhook_url: Optional[str],
                            cooldown_minutes: int = 5) -> Optional[DiscordNotifier]:
    """
    DiscordNotifierインスタンスを作成

    Returns:
        DiscordNotifier インスタンス、URL未設定時はNone
    """
    if not webhook_url:
        logging.info("Discord webhook URL not configured")
        return None
    return DiscordNotifier(webhook_url=webhook_url, cooldown_minutes=cooldown_minutes)
