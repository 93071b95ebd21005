"""Tests for main.py -- application wiring and lifespan."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from api.websocket import CLOSE_NOT_FOUND
from conftest import FakeProvisioner


@pytest.fixture()
def fake_provisioner(monkeypatch: pytest.MonkeyPatch) -> FakeProvisioner:
    provisioner = FakeProvisioner()
    monkeypatch.setattr(main, "DockerProvisioner", lambda **kwargs: provisioner)
    return provisioner


class TestLifespan:
    def test_startup_and_shutdown(self, fake_provisioner: FakeProvisioner) -> None:
        with TestClient(main.create_app()) as client:
            health = client.get("/health").json()
            landing = client.get("/")

            assert health["docker_available"] is True
            assert landing.status_code == 200
            assert len(fake_provisioner.allocated) == 1

        # Orphans reaped on startup, every session torn down on shutdown.
        assert fake_provisioner.reaped_with == [set()]
        assert fake_provisioner.terminated == ["container_1"]

    def test_explicit_routes_win_over_catch_alls(
        self, fake_provisioner: FakeProvisioner
    ) -> None:
        with TestClient(main.create_app()) as client:
            set_cookie = client.get("/").headers["set-cookie"]
            session_id = set_cookie.split(";", 1)[0].split("=", 1)[1]

            status_response = client.get(f"/status/{session_id}")
            health = client.get("/health")
            with client.websocket_connect("/proxy/sess_unknown/primary/") as ws:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_text()

        # With the session cookie set, these would reach the backend if the
        # cookie fallback routes were matched first.
        assert status_response.json()["status"] == "running"
        assert health.json()["docker_available"] is True
        assert exc_info.value.code == CLOSE_NOT_FOUND
