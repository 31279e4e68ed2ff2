"""
HTTP Signature header primitives for KBMAPI.

Only one header is ever signed:

  signable string:  "date: <Date header value>"
  Authorization:    Signature keyId="<id>",algorithm="<alg>",headers="date",signature="<b64>"

The header text must match the remote verifier byte for byte (field
order, quoting, the literal headers="date").
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from email.utils import formatdate
from enum import Enum

from errors import ClockUnavailable, FormatPrecondition

SIGNED_HEADERS = "date"


class SigningScheme(str, Enum):
    ASYMMETRIC = "ecdsa-sha256"
    SYMMETRIC  = "hmac-sha256"

    @property
    def algorithm(self) -> str:
        return self.value


@dataclass(frozen=True)
class AuthorizationHeader:
    key_id:    str
    algorithm: str
    headers:   str
    signature: str


# ── Clock ─────────────────────────────────────────────────────────────────────

def http_date(now: float | None = None) -> str:
    """Return `now` (default: the current time) as an RFC 1123 GMT timestamp."""
    if now is None:
        try:
            now = time.time()
        except OSError as exc:
            raise ClockUnavailable(str(exc)) from exc
    return formatdate(now, usegmt=True)


def signable_string(date: str) -> str:
    return f"{SIGNED_HEADERS}: {date}"


# ── Authorization header ──────────────────────────────────────────────────────

def format_authorization(scheme: SigningScheme, key_id: str, signature: str) -> str:
    if not key_id:
        raise FormatPrecondition("keyId must not be empty")
    if not signature:
        raise FormatPrecondition("signature must not be empty")
    return (
        f'Signature keyId="{key_id}",'
        f'algorithm="{scheme.algorithm}",'
        f'headers="{SIGNED_HEADERS}",'
        f'signature="{signature}"'
    )


_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def parse_authorization(value: str) -> AuthorizationHeader:
    """
    Parse an Authorization header produced by format_authorization().

    Raises ValueError if the value is not a Signature header or is missing
    one of the four fields.
    """
    prefix, _, params = value.partition(" ")
    if prefix != "Signature" or not params:
        raise ValueError("not a Signature authorization header")
    fields = dict(_PARAM_RE.findall(params))
    try:
        return AuthorizationHeader(
            key_id    = fields["keyId"],
            algorithm = fields["algorithm"],
            headers   = fields["headers"],
            signature = fields["signature"],
        )
    except KeyError as exc:
        raise ValueError(f"Signature header missing {exc.args[0]}") from exc
