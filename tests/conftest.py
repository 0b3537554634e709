import os
import sys
import tempfile
from pathlib import Path

import pytest

TMP_DIR = Path(__file__).resolve().parents[1] / ".pytest-tmp"
TMP_DIR.mkdir(exist_ok=True)
os.environ.setdefault("TMPDIR", str(TMP_DIR))
tempfile.tempdir = str(TMP_DIR)

# Ensure handlers package and registration module (under src/) are importable
SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import registration  # noqa: E402  (import after sys.path tweak)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Records outbound calls and replays queued responses."""

    def __init__(self, get_responses=None, patch_responses=None):
        self.get_responses = list(get_responses or [])
        self.patch_responses = list(patch_responses or [])
        self.get_calls = []
        self.patch_calls = []

    def _next(self, queue):
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, **kwargs):
        self.get_calls.append({"url": url, **kwargs})
        return self._next(self.get_responses)

    def patch(self, url, **kwargs):
        self.patch_calls.append({"url": url, **kwargs})
        return self._next(self.patch_responses)


@pytest.fixture
def config():
    return registration.RegistrationConfig(
        api_host="https://registration.test",
        event_id="evt-42",
        token="secret-token",
    )


@pytest.fixture
def make_api(config):
    def _make(get_responses=None, patch_responses=None):
        session = FakeSession(get_responses, patch_responses)
        return registration.RegistrationApi(config, session=session), session

    return _make
