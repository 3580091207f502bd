"""
Shared fixtures.
"""
import pytest

from config.settings import Settings

from tests.fakes import SECRET, UPSTREAM, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        api_base_url=UPSTREAM,
        api_internal_secret=SECRET,
        reportmate_passphrase=None,
        database_url=None,
        auth_bypass_localhost=False,
        fanout_batch_pause=0,
    )


@pytest.fixture
def auth_headers():
    return {"X-Internal-Secret": SECRET}
