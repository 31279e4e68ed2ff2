"""
Request signing for KBMAPI.

Two schemes, chosen by operation:

  ASYMMETRIC  ECDSA-SHA256 by the PIV token's signing slot (default 9e);
              keyId is the MD5 fingerprint of that slot's public key.
  SYMMETRIC   HMAC-SHA256 keyed with a recovery token issued by KBMAPI;
              keyId is the GUID of the token being replaced.

Signatures always travel base64 encoded on a single line.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from enum import Enum
from typing import Callable

from errors import InvalidToken, SigningUnavailable
from httpsig import SigningScheme, format_authorization, http_date, signable_string
from keys import PivBackend, resolve_key_id

log = logging.getLogger(__name__)


class Operation(str, Enum):
    GET_PIN           = "get-pin"
    REGISTER_PIVTOKEN = "register-pivtoken"
    REPLACE_PIVTOKEN  = "replace-pivtoken"
    NEW_RTOKEN        = "new-rtoken"

    @property
    def scheme(self) -> SigningScheme:
        if self is Operation.REPLACE_PIVTOKEN:
            return SigningScheme.SYMMETRIC
        return SigningScheme.ASYMMETRIC


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


# ── Signers ───────────────────────────────────────────────────────────────────

def sign_asymmetric(backend: PivBackend, slot: str, message: str) -> str:
    """Sign `message` with the hardware key in `slot`; base64 result."""
    raw = backend.sign(slot, message.encode("utf-8"))
    if not raw:
        raise SigningUnavailable(f"PIV slot {slot} returned an empty signature")
    return _b64(raw)


def decode_recovery_token(token: str) -> bytes:
    if not token or not token.strip():
        raise InvalidToken("recovery token is empty")
    try:
        key = base64.b64decode(token.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidToken("recovery token is not valid base64") from exc
    if not key:
        raise InvalidToken("recovery token decodes to nothing")
    return key


def sign_symmetric(recovery_token: str, message: str) -> str:
    """HMAC-SHA256 of `message` keyed with the decoded recovery token; base64 result."""
    key = decode_recovery_token(recovery_token)
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return _b64(digest)


# ── Engine ────────────────────────────────────────────────────────────────────

class SigningEngine:
    """
    Produces the (Date, Authorization) header pair for one KBMAPI request.

    Holds configuration only; every call reads the clock, signs and
    resolves the key identity afresh.
    """

    def __init__(
        self,
        backend: PivBackend,
        slot: str = "9e",
        clock: Callable[[], str] = http_date,
    ) -> None:
        self.backend = backend
        self.slot = slot
        self.clock = clock

    def headers(
        self,
        operation: Operation,
        guid: str | None = None,
        recovery_token: str | None = None,
    ) -> dict[str, str]:
        operation = Operation(operation)
        scheme = operation.scheme

        # Validate symmetric key material before touching the clock or device
        if scheme is SigningScheme.SYMMETRIC:
            decode_recovery_token(recovery_token or "")

        date = self.clock()
        message = signable_string(date)

        if scheme is SigningScheme.ASYMMETRIC:
            signature = sign_asymmetric(self.backend, self.slot, message)
            key_id = resolve_key_id(self.backend, self.slot)
        elif scheme is SigningScheme.SYMMETRIC:
            signature = sign_symmetric(recovery_token or "", message)
            key_id = guid or ""
        else:  # pragma: no cover
            raise AssertionError(f"unhandled signing scheme {scheme!r}")

        log.debug("Signed %s request with %s (keyId=%s)", operation.value, scheme.value, key_id)
        return {
            "Date":          date,
            "Authorization": format_authorization(scheme, key_id, signature),
        }
