"""
kbmctl — enroll, recover and rotate this node's PIV token with KBMAPI.

  kbmctl get-pin [--guid GUID]
  kbmctl register-pivtoken --cn-uuid UUID
  kbmctl replace-pivtoken --guid OLD_GUID --recovery-token TOKEN --cn-uuid UUID
  kbmctl new-rtoken [--guid GUID]

Each command prints the interesting response field on stdout. Any
failure is logged on stderr and exits with status 1.
"""

from __future__ import annotations

import functools
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable

import click

from config import Settings, load_settings
from errors import KbmError
from host import resolve_kbmapi_url
from jsonquery import extract
from kbmapi_client import KbmapiClient
from keys import PivBackend, PivyTool, registration_pubkeys
from signer import SigningEngine

log = logging.getLogger("kbmctl")


@dataclass
class Context:
    settings: Settings
    backend:  PivBackend

    def client(self) -> KbmapiClient:
        url = resolve_kbmapi_url(
            self.settings.kbmapi_url,
            self.settings.bootparams,
            self.settings.sdc_config,
            self.settings.node_config,
        )
        engine = SigningEngine(self.backend, slot=self.settings.piv_slot)
        return KbmapiClient(url, engine, timeout=self.settings.timeout)


def _fails_cleanly(fn: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except KbmError as exc:
            log.error("%s failed: %s", fn.__name__.replace("_", "-"), exc)
            sys.exit(1)
    return wrapper


def _registration_body(backend: PivBackend, cn_uuid: str) -> dict[str, Any]:
    return {
        "guid":    backend.guid(),
        "cn_uuid": cn_uuid,
        "pubkeys": registration_pubkeys(backend),
    }


# ── Commands ──────────────────────────────────────────────────────────────────

@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="YAML settings file (default: $KBMCTL_CONFIG or /etc/kbmctl.yaml).")
@click.option("--url", default=None, help="KBMAPI base URL; skips datacenter lookup.")
@click.option("--slot", default=None, help="PIV slot used for request signing (default 9e).")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, url: str | None,
        slot: str | None, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )
    if ctx.obj is not None:
        return  # injected (tests)
    try:
        settings = load_settings(config_path, kbmapi_url=url, piv_slot=slot)
    except KbmError as exc:
        log.error("configuration: %s", exc)
        sys.exit(1)
    ctx.obj = Context(settings, PivyTool(settings.pivy_tool))


@cli.command("get-pin")
@click.option("--guid", default=None, help="Token GUID (default: the attached token).")
@click.pass_obj
@_fails_cleanly
def get_pin(obj: Context, guid: str | None) -> None:
    """Fetch the PIN of this node's PIV token."""
    guid = guid or obj.backend.guid()
    click.echo(extract(obj.client().get_pin(guid), "pin"))


@cli.command("register-pivtoken")
@click.option("--cn-uuid", required=True, help="UUID of this compute node.")
@click.pass_obj
@_fails_cleanly
def register_pivtoken(obj: Context, cn_uuid: str) -> None:
    """Enroll the attached PIV token; prints its first recovery token."""
    body = _registration_body(obj.backend, cn_uuid)
    resp = obj.client().register_pivtoken(body)
    click.echo(extract(resp, "recovery_tokens[0].token"))


@cli.command("replace-pivtoken")
@click.option("--guid", required=True, help="GUID of the token being replaced.")
@click.option("--recovery-token", envvar="KBMCTL_RECOVERY_TOKEN", required=True,
              help="Base64 recovery token of the old token ($KBMCTL_RECOVERY_TOKEN).")
@click.option("--cn-uuid", required=True, help="UUID of this compute node.")
@click.pass_obj
@_fails_cleanly
def replace_pivtoken(obj: Context, guid: str, recovery_token: str, cn_uuid: str) -> None:
    """Replace a lost or retired token with the attached one."""
    client = obj.client()
    body = _registration_body(obj.backend, cn_uuid)
    resp = client.replace_pivtoken(guid, recovery_token, body)
    click.echo(extract(resp, "recovery_tokens[0].token"))


@cli.command("new-rtoken")
@click.option("--guid", default=None, help="Token GUID (default: the attached token).")
@click.pass_obj
@_fails_cleanly
def new_rtoken(obj: Context, guid: str | None) -> None:
    """Ask KBMAPI for a fresh recovery token."""
    guid = guid or obj.backend.guid()
    click.echo(extract(obj.client().new_recovery_token(guid), "token"))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
