from __future__ import annotations

import time

import pytest

from conceptsim.logger import EventLogger
from conceptsim.session import Session


@pytest.fixture
def event_logger(tmp_path) -> EventLogger:
    return EventLogger(logs_dir=tmp_path / "logs", run_id="test_run")


@pytest.fixture
def make_session():
    def _make(identity: str = "user-1", ttl_seconds: float = 3600.0, token: str = "token-1") -> Session:
        return Session(
            identity=identity,
            access_token=token,
            expires_at=time.time() + ttl_seconds,
            refresh_token=f"refresh-{token}",
            email=f"{identity}@example.com",
        )

    return _make
