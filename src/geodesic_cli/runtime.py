from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from typing import Iterable, Mapping

import click

from geodesic_cli.config import SessionConfig
from geodesic_cli.platforms import Platform


DOCKER = "docker"
CONTAINER_HOME_MOUNT = "/localhost"
DEFAULT_ATTACH_COMMAND = ("/bin/bash", "-l")
PORT_ENV_NAME = "KUBERNETES_API_PORT"
TERMINAL_ENV_NAMES = ("LS_COLORS", "TERM", "TERM_COLOR", "TERM_PROGRAM")
SSH_ENV_NAMES = ("SSH_AUTH_SOCK", "SSH_CLIENT", "SSH_CONNECTION", "SSH_TTY", "USER")

LOGGER = logging.getLogger("geodesic.runtime")


def _log_command(cmd: Iterable[str]) -> None:
    LOGGER.debug("Running: %s", " ".join(shlex.quote(str(part)) for part in cmd))


def _run_foreground(cmd: list[str]) -> int:
    """Run a runtime command with inherited stdio and return its exit status."""
    _log_command(cmd)
    try:
        return subprocess.run(cmd, check=False).returncode
    except OSError as exc:
        raise click.ClickException(f"Unable to run {cmd[0]}: {exc}") from exc


def _run_quiet(cmd: list[str]) -> int:
    _log_command(cmd)
    result = subprocess.run(
        cmd,
        check=False,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return result.returncode


def require_docker() -> None:
    if shutil.which(DOCKER) is None:
        raise click.ClickException(
            f"Cannot find {DOCKER} installed on this system. Please install and try again."
        )


def ensure_daemon_reachable() -> None:
    if _run_quiet([DOCKER, "ps"]) != 0:
        raise click.ClickException(
            "Unable to communicate with docker daemon. "
            "Make sure your environment is properly configured and then try again."
        )


def session_exists(name: str) -> bool:
    cmd = [DOCKER, "ps", "--filter", f"name=^/{name}$", "--format", "{{.Names}}"]
    _log_command(cmd)
    result = subprocess.run(cmd, check=False, text=True, capture_output=True)
    if result.returncode != 0:
        message = (result.stderr or "").strip() or f"{DOCKER} ps exited with code {result.returncode}"
        raise click.ClickException(f"Unable to list running containers: {message}")
    return name in {line.strip() for line in result.stdout.splitlines()}


def build_run_args(
    config: SessionConfig,
    platform: Platform,
    *,
    local_home: str,
    interactive: bool,
    environ: Mapping[str, str] | None = None,
    uid: int | None = None,
    gid: int | None = None,
) -> list[str]:
    env = os.environ if environ is None else environ
    run_args: list[str] = []

    if interactive:
        run_args.append("-it")
        for env_name in TERMINAL_ENV_NAMES:
            run_args.extend(["--env", env_name])

    ssh_auth_sock = str(env.get("SSH_AUTH_SOCK", "")).strip()
    if ssh_auth_sock and platform.supports_ssh_agent_forwarding:
        run_args.extend(["--volume", f"{ssh_auth_sock}:{ssh_auth_sock}"])
        for env_name in SSH_ENV_NAMES:
            run_args.extend(["--env", env_name])
        run_args.extend(["--env", f"USER_ID={os.getuid() if uid is None else uid}"])
        run_args.extend(["--env", f"GROUP_ID={os.getgid() if gid is None else gid}"])

    if config.env_file:
        run_args.extend(["--env-file", config.env_file])
    if config.default_env_file.is_file():
        run_args.append(f"--env-file={config.default_env_file}")

    run_args.extend(platform.extra_run_args(dns=config.dns))

    if local_home == CONTAINER_HOME_MOUNT:
        click.echo(f"WARNING: not mounting {local_home} because it conflicts with geodesic", err=True)
    else:
        click.echo(f"# Mounting {local_home} into container")
        run_args.append(f"--volume={local_home}:{CONTAINER_HOME_MOUNT}")

    run_args.extend(
        [
            "--privileged",
            "--publish",
            f"{config.port}:{config.port}",
            "--name",
            config.name,
            "--rm",
            "--env",
            f"{PORT_ENV_NAME}={config.port}",
        ]
    )
    for key, value in config.passthrough_env.items():
        run_args.extend(["--env", f"{key}={value}"])
    return run_args


def use_session(
    config: SessionConfig,
    platform: Platform,
    *,
    local_home: str,
    command: Iterable[str] = (),
    interactive: bool | None = None,
) -> int:
    """Attach to the running session or start a new one; returns the exit status."""
    tty = sys.stdout.isatty() if interactive is None else interactive
    container_command = [str(part) for part in command]

    if session_exists(config.name):
        click.echo(f"# Attaching to existing {config.name} session")
        exec_flags = ["-it"] if tty else ["-i"]
        return _run_foreground(
            [DOCKER, "exec", *exec_flags, config.name, *(container_command or DEFAULT_ATTACH_COMMAND)]
        )

    run_args = build_run_args(config, platform, local_home=local_home, interactive=tty)
    click.echo(f"# Starting new {config.name} session from {config.image}")
    click.echo(f"# Exposing port {config.port}")
    return _run_foreground([DOCKER, "run", *run_args, config.image, "-l", *container_command])


def stop_session(config: SessionConfig) -> int:
    click.echo(f"# Stopping {config.name}...")
    return _run_quiet([DOCKER, "kill", config.name])


def uninstall(config: SessionConfig, program: str) -> int:
    click.echo(f"# Uninstalling {config.name}...")
    _run_quiet([DOCKER, "rm", "-f", config.name])
    _run_quiet([DOCKER, "rmi", "-f", config.image])
    click.echo(f"# Not deleting {program}")
    return 0


def update(config: SessionConfig) -> int:
    """Run the image's installer script through bash to replace the local wrapper."""
    click.echo(f"# Installing the latest version of {config.image}")
    installer_cmd = [DOCKER, "run", "--rm", config.image]
    shell_cmd = ["bash", "-s", config.tag]
    _log_command(installer_cmd)
    _log_command(shell_cmd)
    try:
        installer = subprocess.Popen(installer_cmd, stdout=subprocess.PIPE)
        try:
            shell_status = subprocess.run(shell_cmd, stdin=installer.stdout, check=False).returncode
        finally:
            if installer.stdout is not None:
                installer.stdout.close()
            installer_status = installer.wait()
    except OSError as exc:
        LOGGER.debug("Update failed to start: %s", exc)
        installer_status = shell_status = 1

    if installer_status == 0 and shell_status == 0:
        click.echo(f"# {config.image} has been updated.")
        return 0
    click.echo(f"Failed to update {config.image}", err=True)
    return 1
