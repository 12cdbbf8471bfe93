from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import click


DEFAULT_TARGET = "use"
HELP_FLAGS = {"-h", "--help"}
VERBOSE_FLAGS = {"-v", "--verbose"}
END_OF_OPTIONS = "--"


@dataclass(frozen=True)
class ParsedArgs:
    targets: tuple[str, ...] = (DEFAULT_TARGET,)
    options: dict[str, str] = field(default_factory=dict)
    verbose: bool = False
    command: tuple[str, ...] = ()


def normalize_option_key(raw_key: str) -> str:
    """Turn `--env-file` style names into `ENV_FILE` style configuration keys."""
    return raw_key.removeprefix("--").replace("-", "_").upper()


def _split_assignment(token: str) -> tuple[str, str]:
    key, sep, value = token.partition("=")
    return normalize_option_key(key), (value if sep else "true")


def parse_args(tokens: Iterable[str]) -> ParsedArgs:
    targets: list[str] = []
    options: dict[str, str] = {}
    verbose = False
    command: list[str] = []

    remaining = [str(token) for token in tokens]
    while remaining:
        token = remaining.pop(0)
        if token in HELP_FLAGS:
            targets.append("help")
        elif token in VERBOSE_FLAGS:
            verbose = True
        elif token == END_OF_OPTIONS:
            command = remaining
            break
        elif token.startswith("--"):
            key, value = _split_assignment(token)
            if not key:
                raise click.ClickException(f"Unknown option: {token}")
            options[key] = value
        elif token.startswith("-"):
            raise click.ClickException(f"Unknown option: {token}")
        elif "=" in token:
            key, value = _split_assignment(token)
            if not key:
                raise click.ClickException(f"Invalid assignment: {token}")
            options[key] = value
        else:
            targets.append(token)

    return ParsedArgs(
        targets=tuple(targets) or (DEFAULT_TARGET,),
        options=options,
        verbose=verbose,
        command=tuple(command),
    )
