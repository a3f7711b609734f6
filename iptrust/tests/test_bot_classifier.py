import asyncio
import time

import httpx
import pytest

from iptrust.security.bot_classifier import RemoteBotClassifier, parse_remote_response
from iptrust.tests.conftest import BOT_HOST

CHROME = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"


def _classifier(upstream, **kw):
    return RemoteBotClassifier(endpoint=f"https://{BOT_HOST}", transport=upstream.transport, **kw)


async def test_local_hit_skips_remote(upstream):
    c = _classifier(upstream)
    d = await c.classify("curl/8.0.1")
    assert d.is_bot
    assert upstream.calls[BOT_HOST] == 0


async def test_negative_result_is_cached(upstream):
    c = _classifier(upstream)
    first = await c.classify(CHROME)
    second = await c.classify(CHROME)
    assert first.is_bot is False and second.is_bot is False
    assert upstream.calls[BOT_HOST] == 1
    assert len(c.cache) == 1


async def test_remote_positive(upstream):
    upstream.set(BOT_HOST, {"category": "Search bot", "name": "Yeti", "producer": {"name": "Naver"}})
    c = _classifier(upstream)
    d = await c.classify("Mozilla/5.0 (compatible; Yeti/1.1)")
    assert d.is_bot is True
    assert d.reason == "API: Search bot · Yeti · Naver"
    assert (await c.classify("Mozilla/5.0 (compatible; Yeti/1.1)")).is_bot
    assert upstream.calls[BOT_HOST] == 1


async def test_query_carries_user_agent(upstream):
    seen = {}

    def handler(request: httpx.Request):
        seen["ua"] = request.url.params.get("ua")
        return httpx.Response(200, json={"category": "Browser"})

    upstream.set(BOT_HOST, handler)
    await _classifier(upstream).classify(CHROME)
    assert seen["ua"] == CHROME


@pytest.mark.parametrize(
    "failure",
    [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        httpx.Response(503, json={}),
        httpx.Response(200, content=b"<html>not json</html>"),
    ],
)
async def test_failure_fails_open_and_is_not_cached(upstream, failure):
    upstream.set(BOT_HOST, failure)
    c = _classifier(upstream)
    d = await c.classify(CHROME)
    assert d.is_bot is False
    assert d.user_agent == CHROME
    assert len(c.cache) == 0
    await c.classify(CHROME)
    assert upstream.calls[BOT_HOST] == 2


async def test_disabled_or_skip_remote(upstream):
    c = _classifier(upstream, enabled=False)
    assert (await c.classify(CHROME)).is_bot is False
    c2 = _classifier(upstream)
    assert (await c2.classify(CHROME, skip_remote=True)).is_bot is False
    assert upstream.calls[BOT_HOST] == 0


async def test_cache_never_exceeds_bound(upstream):
    c = _classifier(upstream, cache_max_size=5)
    for i in range(40):
        await c.classify(f"{CHROME} build/{i}")
        assert len(c.cache) <= 5
    c.clear()
    assert len(c.cache) == 0


def test_timeout_floor():
    assert RemoteBotClassifier(timeout=0.1).timeout == 0.5


async def test_bounded_cache_evicts_oldest_inserted(upstream):
    c = _classifier(upstream, cache_max_size=3)
    agents = [f"{CHROME} build/{i}" for i in range(4)]
    for ua in agents[:3]:
        await c.classify(ua)
    await c.classify(agents[0])  # cache hit does not refresh position
    assert upstream.calls[BOT_HOST] == 3
    await c.classify(agents[3])
    assert agents[0] not in c.cache
    assert all(ua in c.cache for ua in agents[1:])
    assert len(c.cache) == 3


async def test_slow_remote_is_cut_off_and_fails_open(upstream):
    async def slow(request):
        await asyncio.sleep(2)
        return httpx.Response(200, json={"category": "bot", "name": "SlowBot"})

    upstream.set(BOT_HOST, slow)
    c = _classifier(upstream, timeout=0.5)
    started = time.perf_counter()
    d = await c.classify(CHROME)
    assert time.perf_counter() - started < 1.5
    assert d.is_bot is False
    assert len(c.cache) == 0


def test_parse_remote_response():
    assert parse_remote_response({"category": "Browser", "name": "Firefox"}) == (False, None)
    assert parse_remote_response({"client": {"type": "crawler"}}) == (True, "API: bot detected")
    assert parse_remote_response("nope") == (False, None)
