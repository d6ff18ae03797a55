import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tests.helpers import FakeClock, RecordingSleeper  # noqa: E402

_ENV_VARS = (
    "REHOST_CONFIG",
    "REHOST_FORCE_PLAIN",
    "AIRTABLE_API_KEY",
    "AIRTABLE_BASE_ID",
    "AIRTABLE_TABLE_NAME",
    "AIRTABLE_ARTICLES_TABLE",
    "IMGBB_API_KEY",
    "IMGUR_CLIENT_ID",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Point XDG roots at tmp_path and drop credentials leaking in from the shell."""
    import os

    for name in list(os.environ):
        if name.startswith("REHOST_"):
            monkeypatch.delenv(name, raising=False)
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleeper(clock)
