import httpx
import pytest

from relay_console.core.settings import ConsoleSettings
from relay_console.models import Identity
from relay_console.services.orchestrator import Console

from .fake_authority import FakeAuthority

API_URL = "http://authority.test/api"


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def settings(tmp_path):
    return ConsoleSettings(
        api_url=API_URL,
        public_url="https://panel.example.com",
        state_dir=str(tmp_path / "state"),
    )


def open_console(authority, settings, *, signed_in=True):
    console = Console.open(settings, transport=httpx.ASGITransport(app=authority.app))
    if signed_in:
        console.session.establish(authority.issue_token(), Identity(id=1, username="admin"))
    return console


@pytest.fixture
async def console(authority, settings):
    c = open_console(authority, settings)
    yield c
    await c.drain()
    await c.close()


@pytest.fixture
async def anon_console(authority, settings):
    c = open_console(authority, settings, signed_in=False)
    yield c
    await c.close()
