from __future__ import annotations

import abc
import os
import subprocess
from pathlib import Path
from typing import Callable

import click


WSL_MOUNT_ROOT = Path("/mnt/c")
WSL_CMD_EXE = "/mnt/c/Windows/System32/cmd.exe"
UBUNTU_PACKAGE_GLOB = "CanonicalGroupLimited.Ubuntu*"


def _run_windows_echo(variable: str) -> str:
    try:
        result = subprocess.run(
            [WSL_CMD_EXE, "/c", f"echo %{variable}%"],
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError:
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.replace("\r", "").strip()


class Platform(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The identifier of the host platform (e.g., 'linux', 'darwin', 'wsl')."""
        pass

    @property
    def supports_ssh_agent_forwarding(self) -> bool:
        """Whether the SSH agent socket can be bind-mounted into the container."""
        return False

    def extra_run_args(self, *, dns: str) -> list[str]:
        """Returns platform specific flags appended to `docker run`."""
        return []

    def resolve_local_home(self, home: str) -> str:
        """Returns the host path mounted as the container's /localhost."""
        return home


class LinuxPlatform(Platform):
    @property
    def name(self) -> str:
        return "linux"

    @property
    def supports_ssh_agent_forwarding(self) -> bool:
        return True


class DarwinPlatform(Platform):
    @property
    def name(self) -> str:
        return "darwin"

    def extra_run_args(self, *, dns: str) -> list[str]:
        # docker/docker#24344: container DNS resolution breaks on Docker for Mac.
        return [f"--dns={dns}"]


class WslPlatform(LinuxPlatform):
    """Linux under the Windows Subsystem for Linux.

    The docker daemon runs on the Windows side, so the home directory has to be
    mounted through its Windows path rather than the Linux one.
    """

    def __init__(
        self,
        *,
        mount_root: Path = WSL_MOUNT_ROOT,
        windows_echo: Callable[[str], str] = _run_windows_echo,
    ) -> None:
        self._mount_root = mount_root
        self._windows_echo = windows_echo

    @property
    def name(self) -> str:
        return "wsl"

    def resolve_local_home(self, home: str) -> str:
        windows_user = self._windows_echo("USERNAME")
        local_app_data = self._windows_echo("LOCALAPPDATA").replace("\\", "/")
        user_local_dir = self._mount_root / "Users" / windows_user / "AppData" / "Local"

        local_home = ""
        if windows_user and (user_local_dir / "lxss").is_dir():
            local_home = f"{local_app_data}/lxss{home}"
        elif windows_user:
            packages = sorted((user_local_dir / "Packages").glob(UBUNTU_PACKAGE_GLOB))
            if packages:
                local_home = f"{local_app_data}/Packages/{packages[0].name}/LocalState/rootfs{home}"

        if not local_home:
            raise click.ClickException(
                "can't identify user home directory, you may specify path via LOCAL_HOME variable"
            )
        click.echo(f"Detected Windows Subsystem for Linux, mounting {local_home} instead of {home}")
        return local_home


class GenericPlatform(Platform):
    @property
    def name(self) -> str:
        return "generic"


def detect_platform(system: str | None = None, release: str | None = None) -> Platform:
    if system is None or release is None:
        uname = os.uname()
        system = uname.sysname if system is None else system
        release = uname.release if release is None else release

    if system == "Darwin":
        return DarwinPlatform()
    if system == "Linux":
        if "microsoft" in release.lower():
            return WslPlatform()
        return LinuxPlatform()
    return GenericPlatform()
