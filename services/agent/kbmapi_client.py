"""
KBMAPI REST client.

Every request is signed by the SigningEngine before it is sent; if
signing fails no request is made. Transport failures and non-2xx
responses raise KbmapiError. Nothing is retried.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from errors import KbmapiError
from signer import Operation, SigningEngine

log = logging.getLogger(__name__)


class KbmapiClient:
    def __init__(self, base_url: str, engine: SigningEngine, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.engine = engine
        self.timeout = timeout

    # ── Transport ─────────────────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        operation: Operation,
        body: dict | None = None,
        guid: str | None = None,
        recovery_token: str | None = None,
    ) -> dict[str, Any]:
        headers = self.engine.headers(operation, guid=guid, recovery_token=recovery_token)
        headers["Accept"] = "application/json"
        url = f"{self.base_url}{path}"

        log.debug("%s %s", method, url)
        try:
            resp = requests.request(
                method, url, headers=headers, json=body, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise KbmapiError(f"{method} {url} failed: {exc}") from exc

        if not resp.ok:
            raise KbmapiError(
                f"{method} {url} returned {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise KbmapiError(
                f"{method} {url} returned a non-JSON body",
                status_code=resp.status_code,
                body=resp.text,
            ) from exc

    # ── Operations ────────────────────────────────────────────────────────────

    def get_pin(self, guid: str) -> dict[str, Any]:
        return self._request("GET", f"/pivtokens/{guid}/pin", Operation.GET_PIN)

    def register_pivtoken(self, body: dict[str, Any]) -> dict[str, Any]:
        result = self._request("POST", "/pivtokens", Operation.REGISTER_PIVTOKEN, body=body)
        log.info("Registered PIV token %s", body.get("guid"))
        return result

    def replace_pivtoken(
        self, guid: str, recovery_token: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace token `guid` with the one described by `body`, authorised by a recovery token."""
        result = self._request(
            "POST",
            f"/pivtokens/{guid}/replace",
            Operation.REPLACE_PIVTOKEN,
            body=body,
            guid=guid,
            recovery_token=recovery_token,
        )
        log.info("Replaced PIV token %s with %s", guid, body.get("guid"))
        return result

    def new_recovery_token(self, guid: str) -> dict[str, Any]:
        result = self._request(
            "POST", f"/pivtokens/{guid}/recovery-tokens", Operation.NEW_RTOKEN, body={}
        )
        log.info("Issued new recovery token for %s", guid)
        return result
