from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import click

from geodesic_cli.args import ParsedArgs, normalize_option_key
from geodesic_cli.platforms import Platform


DEFAULT_REPOSITORY = "cloudposse/dev.yttrium.cc"
DEFAULT_TAG = "dev"
DEFAULT_DNS = "8.8.8.8"
DEFAULT_CONFIG_DIR_NAME = ".geodesic"
DEFAULT_CONFIG_FILE_NAME = "config.toml"
DEFAULT_ENV_FILE_NAME = "env"
PORT_RANGE_START = 30000
PORT_RANGE_SIZE = 30000
NESTED_SESSION_FLAG = "GEODESIC_SHELL"

# Keys the launcher itself understands. Anything else given as `--key=value`
# or `key=value` is forwarded into the container environment untouched.
CONFIG_KEYS = frozenset({"IMAGE", "NAME", "TAG", "PORT", "DNS", "ENV_FILE", "LOCAL_HOME", "VERBOSE"})

LOGGER = logging.getLogger("geodesic.config")


@dataclass
class SessionConfig:
    image: str
    tag: str
    name: str
    port: int
    dns: str = DEFAULT_DNS
    env_file: str | None = None
    default_env_file: Path = field(default_factory=lambda: Path.home() / DEFAULT_CONFIG_DIR_NAME / DEFAULT_ENV_FILE_NAME)
    local_home: str | None = None
    verbose: bool = False
    passthrough_env: dict[str, str] = field(default_factory=dict)


def default_port(pid: int | None = None) -> int:
    process_id = os.getpid() if pid is None else pid
    return PORT_RANGE_START + process_id % PORT_RANGE_SIZE


def container_name_for_image(image: str) -> str:
    repository = image.rsplit("/", 1)[-1]
    return repository.split("@", 1)[0].split(":", 1)[0]


def _config_value_to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _default_config_file(environ: Mapping[str, str]) -> Path:
    override = str(environ.get("GEODESIC_CONFIG_FILE", "")).strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_CONFIG_DIR_NAME / DEFAULT_CONFIG_FILE_NAME


def load_config_file(config_path: Path) -> tuple[dict[str, str], dict[str, str]]:
    """Read launcher settings and container variables from a TOML file.

    Top-level keys use the same names as the command line flags (`image`,
    `env-file` or `env_file`, ...); the optional `[env]` table is forwarded into
    the container. A missing file is not an error; an unreadable or malformed
    one is reported and ignored.
    """
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}, {}
    except (OSError, UnicodeError) as exc:
        click.echo(f"Warning: unable to read {config_path}: {exc}", err=True)
        return {}, {}

    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        click.echo(f"Warning: unable to parse {config_path}: {exc}", err=True)
        return {}, {}

    settings: dict[str, str] = {}
    container_env: dict[str, str] = {}
    for raw_key, value in parsed.items():
        if raw_key == "env" and isinstance(value, dict):
            container_env.update({str(k): _config_value_to_str(v) for k, v in value.items()})
            continue
        key = normalize_option_key(str(raw_key))
        if key not in CONFIG_KEYS or isinstance(value, (dict, list)):
            click.echo(f"Warning: ignoring unknown setting '{raw_key}' in {config_path}", err=True)
            continue
        settings[key] = _config_value_to_str(value)

    LOGGER.debug("Loaded %d settings from %s", len(settings), config_path)
    return settings, container_env


def _parse_port(raw_value: str) -> int:
    candidate = str(raw_value).strip()
    if not candidate.isdecimal() or not 0 < int(candidate) <= 65535:
        raise click.ClickException(f"Invalid port: {raw_value!r} (expected an integer between 1 and 65535)")
    return int(candidate)


def resolve_config(
    parsed: ParsedArgs,
    environ: Mapping[str, str] | None = None,
    *,
    pid: int | None = None,
    config_file: Path | None = None,
) -> SessionConfig:
    env = os.environ if environ is None else environ

    if env.get(NESTED_SESSION_FLAG) == "true":
        raise click.ClickException("Cannot run while in a geodesic shell")

    file_settings, passthrough_env = load_config_file(config_file or _default_config_file(env))

    settings: dict[str, str] = dict(file_settings)
    for key in CONFIG_KEYS:
        if env.get(key):
            settings[key] = env[key]
    for key, value in parsed.options.items():
        if key in CONFIG_KEYS:
            settings[key] = value
        else:
            passthrough_env[key] = value

    tag = settings.get("TAG") or DEFAULT_TAG
    image = settings["IMAGE"] if "IMAGE" in settings else f"{DEFAULT_REPOSITORY}:{tag}"
    if not image.strip():
        raise click.ClickException("--image not specified (E.g. --image=cloudposse/foobar.example.com:1.0)")

    raw_name = settings.get("NAME", "").strip()
    name = os.path.basename(raw_name.rstrip("/")) if raw_name else container_name_for_image(image)

    if "PORT" in settings:
        port = _parse_port(settings["PORT"])
    elif env.get("GEODESIC_PORT"):
        port = _parse_port(env["GEODESIC_PORT"])
    else:
        port = default_port(pid)

    default_env_file = str(env.get("GEODESIC_DEFAULT_ENV_FILE", "")).strip()
    config = SessionConfig(
        image=image,
        tag=tag,
        name=name,
        port=port,
        dns=settings.get("DNS") or DEFAULT_DNS,
        env_file=settings.get("ENV_FILE") or None,
        local_home=settings.get("LOCAL_HOME") or None,
        verbose=parsed.verbose or settings.get("VERBOSE") == "true",
        passthrough_env=passthrough_env,
    )
    if default_env_file:
        config.default_env_file = Path(default_env_file).expanduser()
    LOGGER.debug("Resolved session config: %s", config)
    return config


def resolve_local_home(config: SessionConfig, platform: Platform, home: str | None = None) -> str:
    if config.local_home:
        return config.local_home
    return platform.resolve_local_home(home or str(Path.home()))
