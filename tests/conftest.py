from __future__ import annotations

import base64
from typing import Any

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

import kbmapi_client
from errors import SigningUnavailable


class SoftPiv:
    """PivBackend with software EC keys standing in for the hardware token."""

    def __init__(self, guid: str = "A0B1C2D3E4F5A6B7C8D9E0F1A2B3C4D5") -> None:
        self._guid = guid
        self.keys = {slot: ec.generate_private_key(ec.SECP256R1()) for slot in ("9a", "9d", "9e")}
        self.locked = False
        self.sign_calls = 0

    def guid(self) -> str:
        return self._guid

    def pubkey(self, slot: str) -> str:
        if self.locked:
            raise SigningUnavailable("PIV token is locked")
        try:
            key = self.keys[slot]
        except KeyError:
            raise SigningUnavailable(f"slot {slot} is empty") from None
        line = key.public_key().public_bytes(Encoding.OpenSSH, PublicFormat.OpenSSH)
        return line.decode("ascii") + f" PIV_slot_{slot.upper()}"

    def sign(self, slot: str, data: bytes) -> bytes:
        if self.locked:
            raise SigningUnavailable("PIV token is locked")
        self.sign_calls += 1
        return self.keys[slot].sign(data, ec.ECDSA(hashes.SHA256()))


FIXED_DATE = "Tue, 01 Jan 2019 00:00:00 GMT"
RECOVERY_TOKEN = base64.b64encode(b"deadbeef").decode("ascii")


@pytest.fixture
def piv() -> SoftPiv:
    return SoftPiv()


class _Response:
    """requests.Response look-alike built from an httpx response."""

    def __init__(self, resp: Any) -> None:
        self.status_code = resp.status_code
        self.ok = resp.status_code < 400
        self.text = resp.text
        self._resp = resp

    def json(self) -> Any:
        return self._resp.json()


@pytest.fixture
def mock_kbmapi(monkeypatch: pytest.MonkeyPatch):
    """Route kbmapi_client's HTTP calls into the mock KBMAPI app."""
    from fastapi.testclient import TestClient

    import main as mock_service

    mock_service.reset()
    client = TestClient(mock_service.app)
    calls: list[dict[str, Any]] = []

    def fake_request(method: str, url: str, headers=None, json=None, timeout=None):
        path = url.split("://", 1)[-1]
        path = path[path.index("/"):] if "/" in path else "/"
        calls.append({"method": method, "path": path, "headers": dict(headers or {}), "json": json})
        return _Response(client.request(method, path, headers=headers, json=json))

    monkeypatch.setattr(kbmapi_client.requests, "request", fake_request)
    yield calls
    mock_service.reset()
