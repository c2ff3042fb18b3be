from __future__ import annotations

import base64
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path
import secrets
import sys
from typing import TextIO

from regenflow.observability import log_event


LOGGER = logging.getLogger("regenflow.outputs")

MULTILINE_KEYS = frozenset({"cli_output"})


def random_delimiter() -> str:
    return base64.b64encode(secrets.token_bytes(15)).decode("ascii")


def target_regenerated(target: str) -> str:
    return f"{target.replace('-', '_')}_regenerated"


def target_directory(target: str) -> str:
    return f"{target.replace('-', '_')}_directory"


def target_publish(target: str) -> str:
    return f"publish_{target.replace('-', '_')}"


def target_mcp_release(target: str) -> str:
    return f"mcp_release_{target.removeprefix('mcp-').replace('-', '_')}"


def format_output(key: str, value: str, *, delimiter: Callable[[], str] = random_delimiter) -> str:
    if key in MULTILINE_KEYS:
        boundary = delimiter()
        return f"{key}<<{boundary}\n{value}\n{boundary}\n"
    return f"{key}={value}\n"


@dataclass
class OutputWriter:
    """Writes step outputs to the runner's output file and echoes them to stdout.

    Test mode only echoes.
    """

    path: Path | None
    test_mode: bool = False
    delimiter: Callable[[], str] = random_delimiter
    stdout: TextIO = field(default_factory=lambda: sys.stdout)

    def write(self, outputs: Mapping[str, str]) -> None:
        if not outputs:
            return
        lines = [
            format_output(key, outputs[key], delimiter=self.delimiter) for key in sorted(outputs)
        ]
        for line in lines:
            self.stdout.write(line)
        log_event(LOGGER, "outputs_set", count=len(lines), test_mode=self.test_mode)
        if self.test_mode or self.path is None:
            return
        with self.path.open("a", encoding="utf-8") as fh:
            fh.writelines(lines)
