from __future__ import annotations

import argparse
import os
import random
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import machineid

from .errors import ConfigError

DEFAULT_STORE_PATH = "diskv-data"
MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")

_ADJECTIVES = (
    "amber", "brave", "calm", "clever", "crimson", "daring", "eager", "fancy",
    "gentle", "golden", "happy", "jolly", "keen", "lively", "lucky", "mellow",
    "nimble", "polite", "proud", "quiet", "rapid", "silent", "steady", "swift",
)
_NOUNS = (
    "badger", "beacon", "canyon", "comet", "falcon", "fjord", "harbor", "heron",
    "lantern", "maple", "meadow", "otter", "pebble", "raven", "river", "summit",
    "thistle", "tundra", "walrus", "willow",
)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class Settings:
    agent_url: str
    cloud_url: str
    project_token: str
    interval_s: float
    hostname: str
    machine_id: str
    config_file: Optional[str]
    store_path: str
    dialect: str
    error_buffer: int
    max_in_flight: Optional[int]
    log_level: str
    log_format: str
    hostname_generated: bool = False
    machine_id_generated: bool = False


def parse_duration_s(value: str) -> float:
    """Parse ``500ms``, ``5s``, ``1m``, ``1h`` or bare seconds."""

    m = _DURATION_RE.match(value or "")
    if not m:
        raise ConfigError(f"invalid duration {value!r}")
    seconds = float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]
    if seconds <= 0:
        raise ConfigError(f"duration must be positive, got {value!r}")
    return seconds


def _positive_int(name: str, value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    try:
        n = int(value.strip())
    except ValueError:
        raise ConfigError(f"invalid {name}={value!r}; expected an integer") from None
    if n <= 0:
        raise ConfigError(f"invalid {name}={value!r}; must be positive")
    return n


def generate_hostname(rng: Optional[random.Random] = None) -> str:
    r = rng or random.SystemRandom()
    suffix = "".join(r.choice("abcdefghijklmnopqrstuvwxyz0123456789") for _ in range(4))
    return f"{r.choice(_ADJECTIVES)}-{r.choice(_NOUNS)}-{suffix}"


def system_machine_id(paths: Sequence[str] = MACHINE_ID_PATHS) -> str:
    """Platform machine id (dbus id, IOPlatformUUID or MachineGuid).

    Falls back to reading ``paths`` when the platform lookup fails.
    """

    try:
        value = (machineid.id() or "").strip()
    except Exception:
        value = ""
    return value or read_machine_id(paths)


def read_machine_id(paths: Sequence[str] = MACHINE_ID_PATHS) -> str:
    for p in paths:
        try:
            value = Path(p).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if value:
            return value
    return ""


def read_raw_config(path: Optional[str]) -> str:
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"could not read config file {path!r}: {exc}") from exc


def build_parser() -> argparse.ArgumentParser:
    env = os.getenv
    parser = argparse.ArgumentParser(
        prog="cloud-forwarder",
        description=(
            "Forwards metrics from a Fluent Bit agent to the cloud. "
            "Cloud registration is persisted under the --store-path directory."
        ),
    )
    parser.add_argument("--agent", default=env("FORWARDER_AGENT_URL", "http://localhost:2020"), help="Fluent Bit agent URL")
    parser.add_argument("--cloud", default=env("FORWARDER_CLOUD_URL", "http://localhost:5000"), help="Cloud API URL")
    parser.add_argument(
        "--project-token",
        default=env("FORWARDER_PROJECT_TOKEN", ""),
        help="Project token used to register the agent",
    )
    parser.add_argument(
        "--interval",
        default=env("FORWARDER_INTERVAL", "5s"),
        help="Interval to pull the Fluent Bit agent and forward metrics (e.g. 500ms, 5s, 1m)",
    )
    parser.add_argument(
        "--hostname",
        default=env("FORWARDER_HOSTNAME") or env("HOSTNAME", ""),
        help="Agent display name. If empty, a random one will be generated",
    )
    parser.add_argument(
        "--machine-id",
        default=env("FORWARDER_MACHINE_ID", ""),
        help="Machine ID. Defaults to the platform machine id, else a random one will be generated",
    )
    parser.add_argument("--config", default=env("FORWARDER_CONFIG_FILE"), help="Fluent Bit config file")
    parser.add_argument("--store-path", default=env("FORWARDER_STORE_PATH", DEFAULT_STORE_PATH))
    parser.add_argument("--dialect", default=env("FORWARDER_CLOUD_DIALECT", "v1"), help="Cloud API variant (v1, legacy)")
    parser.add_argument("--error-buffer", default=env("FORWARDER_ERROR_BUFFER", "100"))
    parser.add_argument(
        "--max-in-flight",
        default=env("FORWARDER_MAX_IN_FLIGHT"),
        help="Skip a tick when this many are still running (default: unbounded)",
    )
    parser.add_argument("--log-level", default=env("FORWARDER_LOG_LEVEL", "INFO"))
    parser.add_argument("--log-format", default=env("FORWARDER_LOG_FORMAT", "text"), choices=("text", "json"))
    return parser


def load_settings(
    argv: Optional[Sequence[str]] = None,
    *,
    machine_id_fn: Callable[[], str] = system_machine_id,
) -> Settings:
    args = build_parser().parse_args(argv)

    machine_id = (args.machine_id or "").strip() or machine_id_fn()
    machine_id_generated = not machine_id
    if machine_id_generated:
        machine_id = str(uuid.uuid4())

    hostname = (args.hostname or "").strip()
    hostname_generated = not hostname
    if hostname_generated:
        hostname = generate_hostname()

    return Settings(
        agent_url=args.agent,
        cloud_url=args.cloud,
        project_token=args.project_token or "",
        interval_s=parse_duration_s(args.interval),
        hostname=hostname,
        machine_id=machine_id,
        config_file=args.config or None,
        store_path=args.store_path or DEFAULT_STORE_PATH,
        dialect=args.dialect,
        error_buffer=_positive_int("error-buffer", args.error_buffer) or 100,
        max_in_flight=_positive_int("max-in-flight", args.max_in_flight),
        log_level=args.log_level,
        log_format=args.log_format,
        hostname_generated=hostname_generated,
        machine_id_generated=machine_id_generated,
    )
