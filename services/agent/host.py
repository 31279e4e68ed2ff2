"""
Host identity glue: which role this node plays and where KBMAPI lives.

Headnodes keep datacenter settings in /usbkey/config (key=value lines);
compute nodes get a JSON copy of the same settings from the headnode.
KBMAPI is reachable as kbmapi.<datacenter_name>.<dns_domain>.
"""

from __future__ import annotations

import json
import logging
import subprocess
from enum import Enum

from errors import ConfigError

log = logging.getLogger(__name__)


class Role(str, Enum):
    HEADNODE = "headnode"
    COMPUTE  = "compute"


def parse_kv(text: str) -> dict[str, str]:
    """Parse key=value lines, ignoring blanks and # comments. Values may be quoted."""
    out: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        out[key.strip()] = value
    return out


def read_bootparams(command: str) -> str:
    try:
        proc = subprocess.run([command], capture_output=True, check=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as exc:
        raise ConfigError(f"cannot read boot parameters via {command}: {exc}") from exc
    return proc.stdout.decode("utf-8", "replace")


def detect_role(bootparams: str) -> Role:
    params = parse_kv(bootparams)
    if params.get("headnode", "").lower() == "true":
        return Role.HEADNODE
    return Role.COMPUTE


def load_datacenter_config(role: Role, sdc_config: str, node_config: str) -> dict[str, str]:
    path = sdc_config if role is Role.HEADNODE else node_config
    try:
        with open(path) as fh:
            text = fh.read()
    except OSError as exc:
        raise ConfigError(f"cannot read datacenter config {path}: {exc}") from exc

    if role is Role.HEADNODE:
        return parse_kv(text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    return {k: str(v) for k, v in data.items()}


def kbmapi_url(dc_config: dict[str, str]) -> str:
    try:
        dc_name = dc_config["datacenter_name"]
        domain = dc_config["dns_domain"]
    except KeyError as exc:
        raise ConfigError(f"datacenter config missing {exc.args[0]}") from exc
    if not dc_name or not domain:
        raise ConfigError("datacenter_name and dns_domain must not be empty")
    return f"http://kbmapi.{dc_name}.{domain}"


def resolve_kbmapi_url(configured: str, bootparams_cmd: str, sdc_config: str, node_config: str) -> str:
    """Use the configured URL if any, else synthesise it from datacenter config."""
    if configured:
        return configured.rstrip("/")
    role = detect_role(read_bootparams(bootparams_cmd))
    url = kbmapi_url(load_datacenter_config(role, sdc_config, node_config))
    log.info("Running on %s; KBMAPI at %s", role.value, url)
    return url
