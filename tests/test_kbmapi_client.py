import pytest
import requests

import kbmapi_client
from conftest import FIXED_DATE, RECOVERY_TOKEN, SoftPiv
from errors import InvalidToken, KbmapiError, SigningUnavailable
from kbmapi_client import KbmapiClient
from signer import SigningEngine


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON")
        return self._payload


@pytest.fixture
def recorded(monkeypatch: pytest.MonkeyPatch):
    calls = []
    responses = []

    def fake_request(method, url, headers=None, json=None, timeout=None):
        calls.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        return responses.pop(0) if responses else FakeResponse(payload={})

    monkeypatch.setattr(kbmapi_client.requests, "request", fake_request)
    return calls, responses


def _client(piv: SoftPiv) -> KbmapiClient:
    engine = SigningEngine(piv, clock=lambda: FIXED_DATE)
    return KbmapiClient("http://kbmapi.test/", engine, timeout=4)


def test_get_pin_sends_signed_headers(piv: SoftPiv, recorded) -> None:
    calls, responses = recorded
    responses.append(FakeResponse(payload={"pin": "123456"}))

    assert _client(piv).get_pin("GUID1") == {"pin": "123456"}
    call = calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "http://kbmapi.test/pivtokens/GUID1/pin"
    assert call["timeout"] == 4
    assert call["headers"]["Date"] == FIXED_DATE
    assert call["headers"]["Authorization"].startswith('Signature keyId="')
    assert 'algorithm="ecdsa-sha256"' in call["headers"]["Authorization"]


def test_replace_uses_hmac_and_old_guid(piv: SoftPiv, recorded) -> None:
    calls, _ = recorded
    _client(piv).replace_pivtoken("OLDGUID", RECOVERY_TOKEN, {"guid": "NEWGUID"})
    call = calls[0]
    assert call["url"] == "http://kbmapi.test/pivtokens/OLDGUID/replace"
    assert call["json"] == {"guid": "NEWGUID"}
    assert call["headers"]["Authorization"].startswith(
        'Signature keyId="OLDGUID",algorithm="hmac-sha256",headers="date",signature="'
    )


def test_new_recovery_token_path(piv: SoftPiv, recorded) -> None:
    calls, _ = recorded
    _client(piv).new_recovery_token("GUID1")
    assert (calls[0]["method"], calls[0]["url"]) == (
        "POST", "http://kbmapi.test/pivtokens/GUID1/recovery-tokens"
    )


def test_signing_failure_short_circuits_request(piv: SoftPiv, recorded) -> None:
    calls, _ = recorded
    piv.locked = True
    with pytest.raises(SigningUnavailable):
        _client(piv).get_pin("GUID1")
    assert calls == []


def test_invalid_token_short_circuits_request(piv: SoftPiv, recorded) -> None:
    calls, _ = recorded
    with pytest.raises(InvalidToken):
        _client(piv).replace_pivtoken("OLDGUID", "", {"guid": "NEWGUID"})
    assert calls == []


def test_error_status_raises(piv: SoftPiv, recorded) -> None:
    _, responses = recorded
    responses.append(FakeResponse(status_code=401, text='{"error":"Unauthorized"}'))
    with pytest.raises(KbmapiError) as info:
        _client(piv).get_pin("GUID1")
    assert info.value.status_code == 401
    assert "Unauthorized" in info.value.body


def test_non_json_body_raises(piv: SoftPiv, recorded) -> None:
    _, responses = recorded
    responses.append(FakeResponse(status_code=200, payload=None, text="<html>"))
    with pytest.raises(KbmapiError):
        _client(piv).get_pin("GUID1")


def test_transport_failure_is_not_retried(piv: SoftPiv, monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = []

    def fake_request(*args, **kwargs):
        attempts.append(1)
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(kbmapi_client.requests, "request", fake_request)
    with pytest.raises(KbmapiError, match="connection refused"):
        _client(piv).get_pin("GUID1")
    assert len(attempts) == 1
