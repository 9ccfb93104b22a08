"""
Discord 通知のユニットテスト
"""

import pytest

import fakes  # noqa: F401  (serverディレクトリをパスに追加)

import discord_notifier as dn
from discord_notifier import DiscordNotifier, create_discord_notifier


class FakeResponse:
    def __init__(self, status=204):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, status=204):
        self.status = status
        self.posts = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        return FakeResponse(status=self.status)


class FakeTimeout:
    def __init__(self, total=10):
        self.total = total


@pytest.fixture
def session(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(dn.aiohttp, "ClientSession", lambda *args, **kwargs: session)
    monkeypatch.setattr(dn.aiohttp, "ClientTimeout", FakeTimeout)
    return session


@pytest.mark.asyncio
async def test_send(session):
    notifier = DiscordNotifier("https://discord.example/webhook")

    ok = await notifier.send("本文", title="タイトル")

    assert ok is True
    url, payload = session.posts[0]
    assert url == "https://discord.example/webhook"
    assert payload["embeds"][0]["title"] == "タイトル"
    assert payload["embeds"][0]["description"] == "本文"


@pytest.mark.asyncio
async def test_send_cooldown(session, monkeypatch):
    monkeypatch.setattr(dn.time, "time", lambda: 1000)
    notifier = DiscordNotifier("https://discord.example/webhook", cooldown_minutes=5)

    first = await notifier.send("1")
    second = await notifier.send("2")
    forced = await notifier.send("3", skip_cooldown=True)

    assert (first, second, forced) == (True, False, True)
    assert len(session.posts) == 2


@pytest.mark.asyncio
async def test_send_failure_status(monkeypatch):
    monkeypatch.setattr(dn.aiohttp, "ClientSession", lambda *args, **kwargs: FakeSession(status=400))
    monkeypatch.setattr(dn.aiohttp, "ClientTimeout", FakeTimeout)

    notifier = DiscordNotifier("https://discord.example/webhook")
    assert await notifier.send("x") is False


@pytest.mark.asyncio
async def test_notify_power_threshold(session):
    notifier = DiscordNotifier("https://discord.example/webhook")

    assert await notifier.notify_power(3999, 4000) is False
    assert await notifier.notify_power(4500, 4000) is True
    assert "4,500W" in session.posts[0][1]["embeds"][0]["description"]


@pytest.mark.asyncio
async def test_notify_connection_failure_ignores_cooldown(session):
    notifier = DiscordNotifier("https://discord.example/webhook")

    await notifier.send("first")
    ok = await notifier.notify_connection_failure("scan failed")

    assert ok is True
    assert session.posts[-1][1]["embeds"][0]["color"] == dn.COLOR_ERROR


def test_create_discord_notifier():
    assert create_discord_notifier("") is None
    assert create_discord_notifier(None) is None
    assert create_discord_notifier("https://discord.example/webhook") is not None
