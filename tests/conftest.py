from __future__ import annotations

import pytest

from helpers import FakePeerEngine
from sfubridge.config import BridgeConfig


@pytest.fixture
def peer() -> FakePeerEngine:
    return FakePeerEngine()


@pytest.fixture
def bridge_config(tmp_path) -> BridgeConfig:
    config = BridgeConfig()
    config.http.ws_ping_interval = 0.0
    config.media.bind_plain_sockets = False
    config.session.engine_fatal_grace = 0.0
    config.session.transport_connect_timeout = 0.0
    config.recording.output_dir = str(tmp_path / "recording")
    config.recording.settle_delay = 0.0
    config.recording.ready_timeout = 10.0
    config.recording.stop_timeout = 5.0
    config.recording.external_countdown = 0
    return config
