from __future__ import annotations

import json

import pytest


class FakeWebSocket:
    """Stands in for a Starlette WebSocket session."""

    def __init__(self, fail_on_send: bool = False) -> None:
        self.accepted = False
        self.fail_on_send = fail_on_send
        self.sent: list[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail_on_send:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(text))

    def events(self) -> list[str]:
        return [message["event"] for message in self.sent]


class RecordingPublisher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    async def broadcast(self, event: str, payload: dict) -> int:
        self.calls.append((event, payload))
        return 1

    def remember(self, event: str, payload: dict) -> None:
        pass

    def latest(self, event: str):
        return None


def make_config(data_dir, **overrides) -> dict:
    config = {
        "server": {"host": "127.0.0.1", "port": 3000, "cors_origins": ["*"]},
        "paths": {"data_dir": str(data_dir)},
        "watcher": {"enabled": False, "debounce_ms": 20, "io_timeout_s": 2},
        "telemetry": {"drone_id": "team-drone-1", "drone_name": "Team Drone 1", "file_poll_enabled": False},
        "mqtt": {"broker": ""},
        "cameras": [{"id": "cam-default", "lat": 13.75, "lng": 100.5}],
        "logging": {"level": "WARNING"},
    }
    for key, value in overrides.items():
        config[key] = {**config.get(key, {}), **value} if isinstance(value, dict) else value
    return config


@pytest.fixture
def data_dir(tmp_path):
    for name in ("csv", "image", "detected"):
        (tmp_path / name).mkdir()
    return tmp_path
