# iptrust/tests/conftest.py
import os
from collections import Counter
from typing import Dict, Optional

# must be set before iptrust.db.session builds its module-level engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENV"] = "test"
os.environ.setdefault("IP_PROFILE_SALT", "test-salt")

import httpx
import pytest
from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from iptrust.core.settings import Settings
from iptrust.db.session import init_models
from iptrust.services.engine import TrustEngine

load_dotenv()

IPAPI_HOST = "api.ipapi.is"
SFS_HOST = "api.stopforumspam.com"
GEO_HOST = "ipwho.is"
BOT_HOST = "api.apicagent.com"

CLEAN_IPAPI = {
    "ip": "203.0.113.7",
    "is_vpn": False,
    "is_proxy": False,
    "is_tor": False,
    "is_datacenter": False,
    "is_abuser": False,
    "company": {"name": "Example Telecom", "type": "isp"},
    "connection_type": "isp",
    "location": {"city": "Lyon", "region": "Auvergne-Rhone-Alpes", "country": "France", "time_zone": "Europe/Paris"},
    "asn": {"asn": 64500, "name": "EXAMPLE-AS"},
}
CLEAN_SFS = {"success": 1, "ip": {"appears": 0, "frequency": 0}}
CLEAN_GEO = {
    "success": True,
    "country": "France",
    "region": "Auvergne-Rhone-Alpes",
    "city": "Lyon",
    "connection": {"isp": "Example Telecom", "org": "Example", "asn": 64500},
    "timezone": {"id": "Europe/Paris"},
}
BROWSER_VERDICT = {"category": "Browser", "name": "Chrome", "client": {"type": "browser"}}


class FakeUpstream:
    """
    httpx.MockTransport standing in for every external service, keyed by host.
    Each host answers with a JSON body, or with an exception / callable when a
    test needs a failure. Calls are counted per host.
    """

    def __init__(self):
        self.calls: Counter = Counter()
        self.responses: Dict[str, object] = {
            IPAPI_HOST: CLEAN_IPAPI,
            SFS_HOST: CLEAN_SFS,
            GEO_HOST: CLEAN_GEO,
            BOT_HOST: BROWSER_VERDICT,
        }
        self.transport = httpx.MockTransport(self._handle)

    def set(self, host: str, response) -> None:
        self.responses[host] = response

    def fail(self, host: str, exc: Optional[Exception] = None) -> None:
        self.responses[host] = exc or httpx.ConnectError("connection refused")

    def _handle(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.calls[host] += 1
        answer = self.responses.get(host)
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(request)
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)

    def reputation_rounds(self) -> int:
        return self.calls[IPAPI_HOST]


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'iptrust.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def settings():
    return Settings(IP_PROFILE_SALT="test-salt", BOT_DETECTION_REMOTE_ENABLED=True)


@pytest.fixture
async def trust_engine(session_factory, settings, upstream):
    engine = TrustEngine.from_settings(
        session_factory,
        settings,
        bot_transport=upstream.transport,
        reputation_transport=upstream.transport,
    )
    yield engine
    await engine.drain()
    engine.reset()
