"""
Exception taxonomy for the KBMAPI agent.

Library code raises; only the CLI layer (kbmctl.py) catches KbmError,
logs it and turns it into a non-zero exit status.
"""

from __future__ import annotations


class KbmError(Exception):
    """Root of every error the agent raises on purpose."""


class ClockUnavailable(KbmError):
    pass


class SigningUnavailable(KbmError):
    """Hardware module absent, locked, or the slot is inaccessible."""


class InvalidToken(KbmError):
    """Recovery token missing or not valid base64."""


class FormatPrecondition(KbmError):
    """Empty keyId or signature reached the header formatter (a defect)."""


class ConfigError(KbmError):
    pass


class QueryError(KbmError):
    """A requested field is absent from a KBMAPI response."""


class KbmapiError(KbmError):
    """Transport failure or non-2xx response from KBMAPI."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
