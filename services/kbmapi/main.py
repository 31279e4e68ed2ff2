"""
kbmctl — Mock KBMAPI
Simulates the Key Backup and Management API that kbmctl talks to, and
verifies its HTTP Signature authentication the way the real service does.

Supported endpoints:
  POST   /pivtokens                         register a token        (ecdsa-sha256)
  GET    /pivtokens/{guid}/pin              fetch the token's PIN   (ecdsa-sha256)
  POST   /pivtokens/{guid}/replace          replace a token         (hmac-sha256)
  POST   /pivtokens/{guid}/recovery-tokens  issue a recovery token  (ecdsa-sha256)

ecdsa-sha256 requests are keyed by the MD5 fingerprint of the token's 9e
public key; hmac-sha256 requests by the GUID of the token being replaced,
with any of its recovery tokens as the key.

Tokens live in memory only.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from threading import Lock
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_ssh_public_key,
)
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

app = FastAPI(title="kbmctl Mock KBMAPI", version="1.0.0")

MAX_CLOCK_SKEW_SECONDS = 300

# ── In-memory store ───────────────────────────────────────────────────────────
_store: dict[str, dict[str, Any]] = {}
_lock = Lock()


def _now_str() -> str:
    return datetime.now(timezone.utc).isoformat()


def reset() -> None:
    with _lock:
        _store.clear()


# ── Request models ────────────────────────────────────────────────────────────

class PivTokenCreate(BaseModel):
    guid: str = Field(min_length=1)
    cn_uuid: str = Field(min_length=1)
    pubkeys: dict[str, str]
    model_config = {"extra": "allow"}


# ── Signature verification ────────────────────────────────────────────────────

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"error": "Unauthorized", "reason": reason})


def _parse_signature(authorization: str | None) -> dict[str, str]:
    if not authorization or not authorization.startswith("Signature "):
        raise _unauthorized("missing Signature authorization")
    params = dict(_PARAM_RE.findall(authorization[len("Signature "):]))
    for name in ("keyId", "algorithm", "headers", "signature"):
        if not params.get(name):
            raise _unauthorized(f"missing {name}")
    if params["headers"] != "date":
        raise _unauthorized("only the date header may be signed")
    return params


def _check_date(date: str | None) -> str:
    if not date:
        raise _unauthorized("missing Date header")
    try:
        when = parsedate_to_datetime(date)
    except (TypeError, ValueError):
        raise _unauthorized("unparseable Date header") from None
    if when.tzinfo is None:
        raise _unauthorized("Date header must be GMT")
    skew = abs((datetime.now(timezone.utc) - when).total_seconds())
    if skew > MAX_CLOCK_SKEW_SECONDS:
        raise _unauthorized("Date header outside allowed clock skew")
    return date


def _decode_b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise _unauthorized("signature is not base64") from None


def _load_ec_key(line: str) -> ec.EllipticCurvePublicKey:
    try:
        key = load_ssh_public_key(line.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm):
        raise HTTPException(status_code=422, detail={"error": "invalid public key"}) from None
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise HTTPException(status_code=422, detail={"error": "9e key must be ECDSA"})
    return key


def fingerprint(line: str) -> str:
    blob = _load_ec_key(line).public_bytes(Encoding.OpenSSH, PublicFormat.OpenSSH).split()[1]
    return hashlib.md5(base64.b64decode(blob), usedforsecurity=False).hexdigest()


def verify_ecdsa(authorization: str | None, date: str | None, pubkey: str) -> None:
    params = _parse_signature(authorization)
    if params["algorithm"] != "ecdsa-sha256":
        raise _unauthorized("expected ecdsa-sha256")
    if params["keyId"] != fingerprint(pubkey):
        raise _unauthorized("keyId does not match the token's 9e key")
    signed = f"date: {_check_date(date)}".encode("utf-8")
    try:
        _load_ec_key(pubkey).verify(
            _decode_b64(params["signature"]), signed, ec.ECDSA(hashes.SHA256())
        )
    except InvalidSignature:
        raise _unauthorized("signature verification failed") from None


def verify_hmac(authorization: str | None, date: str | None, guid: str,
                recovery_tokens: list[dict[str, str]]) -> None:
    params = _parse_signature(authorization)
    if params["algorithm"] != "hmac-sha256":
        raise _unauthorized("expected hmac-sha256")
    if params["keyId"] != guid:
        raise _unauthorized("keyId does not match the token GUID")
    signed = f"date: {_check_date(date)}".encode("utf-8")
    given = _decode_b64(params["signature"])
    for rt in recovery_tokens:
        key = base64.b64decode(rt["token"])
        if hmac.compare_digest(hmac.new(key, signed, hashlib.sha256).digest(), given):
            return
    raise _unauthorized("signature verification failed")


# ── Helpers ───────────────────────────────────────────────────────────────────

def _new_recovery_token() -> dict[str, str]:
    return {"token": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
            "created": _now_str()}


def _build_record(body: PivTokenCreate) -> dict[str, Any]:
    if "9e" not in body.pubkeys:
        raise HTTPException(status_code=422, detail={"error": "pubkeys must include 9e"})
    return {
        "guid":            body.guid,
        "cn_uuid":         body.cn_uuid,
        "pubkeys":         body.pubkeys,
        "pin":             f"{secrets.randbelow(10**6):06d}",
        "recovery_tokens": [_new_recovery_token()],
        "created":         _now_str(),
    }


def _get_or_404(guid: str) -> dict[str, Any]:
    record = _store.get(guid)
    if record is None:
        raise HTTPException(status_code=404, detail={"error": "No such token", "guid": guid})
    return record


# ── Routes ────────────────────────────────────────────────────────────────────

@app.post("/pivtokens", status_code=201)
def register_pivtoken(
    body: PivTokenCreate,
    authorization: str | None = Header(default=None),
    date: str | None = Header(default=None),
) -> JSONResponse:
    record = _build_record(body)
    verify_ecdsa(authorization, date, body.pubkeys["9e"])
    with _lock:
        if body.guid in _store:
            raise HTTPException(status_code=409, detail={"error": "Token already registered"})
        _store[body.guid] = record
    return JSONResponse(status_code=201, content=record)


@app.get("/pivtokens/{guid}/pin")
def get_pin(
    guid: str,
    authorization: str | None = Header(default=None),
    date: str | None = Header(default=None),
) -> dict[str, Any]:
    with _lock:
        record = _get_or_404(guid)
    verify_ecdsa(authorization, date, record["pubkeys"]["9e"])
    return {"guid": guid, "pin": record["pin"]}


@app.post("/pivtokens/{guid}/replace", status_code=201)
def replace_pivtoken(
    guid: str,
    body: PivTokenCreate,
    authorization: str | None = Header(default=None),
    date: str | None = Header(default=None),
) -> JSONResponse:
    with _lock:
        old = _get_or_404(guid)
    verify_hmac(authorization, date, guid, old["recovery_tokens"])
    record = _build_record(body)
    with _lock:
        if body.guid != guid and body.guid in _store:
            raise HTTPException(status_code=409, detail={"error": "Token already registered"})
        _store.pop(guid, None)
        _store[body.guid] = record
    return JSONResponse(status_code=201, content=record)


@app.post("/pivtokens/{guid}/recovery-tokens", status_code=201)
def new_recovery_token(
    guid: str,
    authorization: str | None = Header(default=None),
    date: str | None = Header(default=None),
) -> JSONResponse:
    with _lock:
        record = _get_or_404(guid)
    verify_ecdsa(authorization, date, record["pubkeys"]["9e"])
    rt = _new_recovery_token()
    with _lock:
        record["recovery_tokens"].append(rt)
    return JSONResponse(status_code=201, content=rt)


# ── Health ────────────────────────────────────────────────────────────────────

@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "kbmctl-mock-kbmapi"}


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "kbmctl Mock KBMAPI",
        "token_count": len(_store),
        "docs": "/docs",
    }
