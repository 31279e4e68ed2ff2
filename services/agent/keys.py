"""
Hardware key access through pivy-tool.

The PIV token's private keys never leave the device: signing happens
inside the token and only the signature comes back. Public keys are read
as OpenSSH lines and parsed with `cryptography`, so the key identity is
derived from the key itself rather than from the text layout of some
fingerprint tool.

Slots used by KBMAPI:
  9a  PIV authentication
  9d  key management (encryption)
  9e  card authentication (request signing, no PIN required)
"""

from __future__ import annotations

import base64
import hashlib
import logging
import subprocess
from typing import Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePublicKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_ssh_public_key,
)

from errors import SigningUnavailable

log = logging.getLogger(__name__)

REGISTRATION_SLOTS = ("9a", "9d", "9e")


class PivBackend(Protocol):
    def guid(self) -> str: ...

    def pubkey(self, slot: str) -> str:
        """Return the slot's public key as an OpenSSH line."""
        ...

    def sign(self, slot: str, data: bytes) -> bytes:
        """Return the raw signature over `data` made by the slot's key."""
        ...


class PivyTool:
    """PivBackend that shells out to the pivy-tool executable."""

    def __init__(self, executable: str = "pivy-tool", timeout: float = 30) -> None:
        self.executable = executable
        self.timeout = timeout

    def _run(self, *args: str, stdin: bytes | None = None) -> bytes:
        cmd = [self.executable, *args]
        log.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SigningUnavailable(f"{self.executable} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise SigningUnavailable(f"{self.executable} {args[0]} timed out") from exc

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", "replace").strip()
            raise SigningUnavailable(
                f"{self.executable} {' '.join(args)} exited {proc.returncode}: {stderr}"
            )
        if not proc.stdout:
            raise SigningUnavailable(f"{self.executable} {' '.join(args)} produced no output")
        return proc.stdout

    def guid(self) -> str:
        # `list -p` prints one colon-separated record per token, GUID first
        out = self._run("list", "-p").decode("utf-8", "replace")
        for line in out.splitlines():
            if line.strip():
                return line.split(":", 1)[0].strip()
        raise SigningUnavailable("no PIV token present")

    def pubkey(self, slot: str) -> str:
        return self._run("pubkey", slot).decode("utf-8", "replace").strip()

    def sign(self, slot: str, data: bytes) -> bytes:
        return self._run("sign", slot, stdin=data)


# ── Key identity ──────────────────────────────────────────────────────────────

def load_pubkey(line: str) -> EllipticCurvePublicKey:
    try:
        key = load_ssh_public_key(line.encode("utf-8"))
    except (ValueError, UnicodeEncodeError, UnsupportedAlgorithm) as exc:
        raise SigningUnavailable(f"unreadable public key from PIV token: {exc}") from exc
    if not isinstance(key, EllipticCurvePublicKey):
        raise SigningUnavailable(f"expected an ECDSA key, got {type(key).__name__}")
    return key


def md5_fingerprint(line: str) -> str:
    """
    MD5 digest of the OpenSSH wire encoding of the key, as bare hex.

    Same digest `ssh-keygen -l -E md5` prints, without the "MD5:" prefix
    and without the colons.
    """
    key = load_pubkey(line)
    openssh = key.public_bytes(Encoding.OpenSSH, PublicFormat.OpenSSH)
    blob = base64.b64decode(openssh.split()[1])
    return hashlib.md5(blob, usedforsecurity=False).hexdigest()


def resolve_key_id(backend: PivBackend, slot: str) -> str:
    """Fingerprint of the signing slot's public key. Not cached."""
    return md5_fingerprint(backend.pubkey(slot))


def registration_pubkeys(backend: PivBackend) -> dict[str, str]:
    return {slot: backend.pubkey(slot) for slot in REGISTRATION_SLOTS}
