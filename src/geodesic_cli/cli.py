from __future__ import annotations

import logging
import os
import sys
from typing import Any, Iterable

import click

from geodesic_cli import runtime
from geodesic_cli.args import parse_args
from geodesic_cli.config import SessionConfig, resolve_config, resolve_local_home
from geodesic_cli.platforms import Platform, detect_platform


TARGET_USE = "use"
TARGET_UPDATE = "update"
TARGET_UNINSTALL = "uninstall"
TARGET_STOP = "stop"
TARGET_HELP = "help"
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")

LOGGER = logging.getLogger("geodesic")
LOGGER.addHandler(logging.NullHandler())


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "warning"


def configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def usage_text(program: str) -> str:
    return "\n".join(
        [
            f"Usage: {program} [target] ARGS [-- COMMAND...]",
            "",
            "  Targets:",
            "    update     Upgrade geodesic wrapper shell",
            "    stop       Stop a running shell",
            "    uninstall  Remove geodesic image",
            "    help       Show this message",
            "    <empty>    Enter into a shell",
            "",
            "  Arguments:",
            "    --env-file=...   Pass an environment file containing key=value pairs",
            "    --image=...      Container image to run (default cloudposse/dev.yttrium.cc:dev)",
            "    --tag=...        Image tag used with the default image and by update",
            "    --name=...       Container name (default: image base name)",
            "    --port=...       Port published into the container",
            "    --dns=...        DNS server used on macOS",
            "    --local-home=... Host directory mounted at /localhost",
            "    --<key>=<value>  Any other key is exported into the container environment",
            "    -v, --verbose    Log every docker command",
            "    -h, --help       Show this message",
            "",
        ]
    )


class LauncherCommand(click.Command):
    """Hands the raw argument list to `parse_args` instead of click's option parser.

    The launcher accepts arbitrary `--key=value` flags and a `--` separated
    container command, neither of which click's parser can preserve.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.params["tokens"] = tuple(args)
        return []


def _ensure_runtime() -> None:
    runtime.require_docker()
    runtime.ensure_daemon_reachable()


def run_targets(
    targets: Iterable[str],
    config: SessionConfig,
    platform: Platform,
    *,
    command: Iterable[str] = (),
    program: str = "geodesic",
) -> int:
    for target in targets:
        LOGGER.debug("Dispatching target %s", target)
        if target == TARGET_HELP:
            click.echo(usage_text(program))
            continue
        if target == TARGET_USE:
            _ensure_runtime()
            local_home = resolve_local_home(config, platform)
            return runtime.use_session(config, platform, local_home=local_home, command=command)
        if target == TARGET_UPDATE:
            _ensure_runtime()
            return runtime.update(config)
        if target == TARGET_UNINSTALL:
            _ensure_runtime()
            return runtime.uninstall(config, program)
        if target == TARGET_STOP:
            _ensure_runtime()
            return runtime.stop_session(config)
        raise click.ClickException(f"Unknown target: {target}")
    return 0


@click.command(
    cls=LauncherCommand,
    help="Launch, attach to, or tear down the geodesic shell container.",
    add_help_option=False,
)
@click.pass_context
def main(ctx: click.Context, tokens: tuple[str, ...]) -> None:
    parsed = parse_args(tokens)
    configure_logging("debug" if parsed.verbose or os.environ.get("VERBOSE") == "true" else "warning")

    config = resolve_config(parsed)
    if config.verbose:
        configure_logging("debug")

    platform = detect_platform()
    LOGGER.debug("Detected platform %s", platform.name)
    program = os.path.basename(sys.argv[0]) or ctx.info_name or "geodesic"
    ctx.exit(run_targets(parsed.targets, config, platform, command=parsed.command, program=program))


if __name__ == "__main__":
    main()
