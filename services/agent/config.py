"""
Agent configuration.

Defaults come from environment variables; a YAML file named by
KBMCTL_CONFIG (if present) overrides them key by key.

Environment variables:
  KBMAPI_URL          unset (synthesised from datacenter config)
  KBMCTL_PIV_SLOT     9e
  KBMCTL_PIVY_TOOL    pivy-tool
  KBMCTL_TIMEOUT      10
  KBMCTL_CONFIG       /etc/kbmctl.yaml
  KBMCTL_BOOTPARAMS   /usr/bin/bootparams
  KBMCTL_SDC_CONFIG   /usbkey/config
  KBMCTL_NODE_CONFIG  /lib/sdc/config.json
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace

import yaml

from errors import ConfigError

log = logging.getLogger(__name__)

# ── Defaults ──────────────────────────────────────────────────────────────────

KBMAPI_URL   = os.getenv("KBMAPI_URL",         "")
PIV_SLOT     = os.getenv("KBMCTL_PIV_SLOT",    "9e")
PIVY_TOOL    = os.getenv("KBMCTL_PIVY_TOOL",   "pivy-tool")
TIMEOUT      = os.getenv("KBMCTL_TIMEOUT",     "10")
CONFIG_PATH  = os.getenv("KBMCTL_CONFIG",      "/etc/kbmctl.yaml")
BOOTPARAMS   = os.getenv("KBMCTL_BOOTPARAMS",  "/usr/bin/bootparams")
SDC_CONFIG   = os.getenv("KBMCTL_SDC_CONFIG",  "/usbkey/config")
NODE_CONFIG  = os.getenv("KBMCTL_NODE_CONFIG", "/lib/sdc/config.json")


@dataclass(frozen=True)
class Settings:
    kbmapi_url:  str
    piv_slot:    str
    pivy_tool:   str
    timeout:     float
    bootparams:  str
    sdc_config:  str
    node_config: str


def _coerce_timeout(value: object) -> float:
    try:
        timeout = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"timeout must be a number, got {value!r}") from exc
    if timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {timeout}")
    return timeout


def load_file(path: str) -> dict:
    try:
        with open(path) as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def load_settings(path: str | None = None, **overrides: object) -> Settings:
    """Build Settings from env defaults, the YAML file, then explicit overrides."""
    settings = Settings(
        kbmapi_url  = KBMAPI_URL,
        piv_slot    = PIV_SLOT,
        pivy_tool   = PIVY_TOOL,
        timeout     = _coerce_timeout(TIMEOUT),
        bootparams  = BOOTPARAMS,
        sdc_config  = SDC_CONFIG,
        node_config = NODE_CONFIG,
    )

    path = path or CONFIG_PATH
    file_values = load_file(path)
    known = {f.name for f in fields(Settings)}
    unknown = set(file_values) - known
    if unknown:
        raise ConfigError(f"{path}: unknown keys {sorted(unknown)}")
    if file_values:
        log.debug("Loaded %d setting(s) from %s", len(file_values), path)

    merged = {**file_values, **{k: v for k, v in overrides.items() if v is not None}}
    if "timeout" in merged:
        merged["timeout"] = _coerce_timeout(merged["timeout"])
    if "piv_slot" in merged:
        merged["piv_slot"] = str(merged["piv_slot"])
    settings = replace(settings, **merged)

    if not settings.piv_slot:
        raise ConfigError("piv_slot must not be empty")
    return settings
