from __future__ import annotations

import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Iterator

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

LOCAL_TEST_IMAGE = "busybox:latest"


def _docker_daemon_available() -> bool:
    if shutil.which("docker") is None:
        return False
    result = subprocess.run(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        check=False,
        text=True,
        capture_output=True,
    )
    return result.returncode == 0 and bool(result.stdout.strip())


def _docker_image_exists(tag: str) -> bool:
    result = subprocess.run(
        ["docker", "image", "inspect", tag],
        check=False,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return result.returncode == 0


@pytest.fixture(scope="session")
def docker_daemon_available() -> bool:
    return _docker_daemon_available()


@pytest.fixture()
def require_docker_daemon(docker_daemon_available: bool) -> None:
    if not docker_daemon_available:
        pytest.skip("docker daemon is not reachable")


@pytest.fixture()
def running_container(require_docker_daemon: None) -> Iterator[str]:
    if not _docker_image_exists(LOCAL_TEST_IMAGE):
        pytest.skip(f"{LOCAL_TEST_IMAGE} is not available locally")
    name = f"geodesic-int-{uuid.uuid4().hex[:12]}"
    subprocess.run(
        ["docker", "run", "-d", "--rm", "--name", name, LOCAL_TEST_IMAGE, "sleep", "60"],
        check=True,
        stdout=subprocess.DEVNULL,
    )
    try:
        yield name
    finally:
        subprocess.run(
            ["docker", "rm", "-f", name],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
