"""Utilities for parsing and formatting build progress output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from ancillary import MODULE_OBJECTS

__all__ = [
    "ProgressUpdate",
    "ProgressParser",
    "KbuildProgressParser",
    "DockerPullProgressParser",
    "get_progress_parser",
    "format_progress_message",
]


@dataclass
class ProgressUpdate:
    """Structured representation of an incremental progress update."""

    label: str
    percent: float | None = None
    current: int | None = None
    total: int | None = None
    size_bytes: float | None = None
    total_size_bytes: float | None = None
    speed_bytes_per_sec: float | None = None


class ProgressParser:
    """Base class for command-specific progress parsers."""

    def prepare(self, command: list[str]) -> list[str]:
        """Return ``command`` potentially augmented for progress output."""

        return command

    def parse(self, text: str) -> list[ProgressUpdate]:
        """Return progress updates extracted from *text*."""

        raise NotImplementedError


class KbuildProgressParser(ProgressParser):
    """Count the module objects compiled by kbuild (``CC [M]`` lines)."""

    _COMPILE_RE = re.compile(r"^\s*CC \[M\]\s+(?P<path>\S+\.o)\s*$")
    _LINK_RE = re.compile(r"^\s*LD \[M\]\s+(?P<path>\S+\.ko)\s*$")

    def __init__(self, objects: Sequence[str] = MODULE_OBJECTS) -> None:
        self._expected = {Path(name).name for name in objects}
        self._seen: set[str] = set()

    def parse(self, text: str) -> list[ProgressUpdate]:
        match = self._COMPILE_RE.match(text)
        if match:
            name = Path(match.group("path")).name
            if name not in self._expected or name in self._seen:
                return []
            self._seen.add(name)
            total = len(self._expected)
            return [
                ProgressUpdate(
                    label="module objects",
                    percent=len(self._seen) * 100 / total,
                    current=len(self._seen),
                    total=total,
                )
            ]
        match = self._LINK_RE.match(text)
        if match:
            return [ProgressUpdate(label=f"linking {Path(match.group('path')).name}", percent=100.0)]
        return []


class DockerPullProgressParser(ProgressParser):
    """Track layer completion in non-interactive ``docker pull`` output."""

    _LAYER_RE = re.compile(r"^(?P<layer>[0-9a-f]{12}): (?P<status>Pulling fs layer|Already exists|Pull complete)$")

    def __init__(self) -> None:
        self._layers: dict[str, bool] = {}

    def parse(self, text: str) -> list[ProgressUpdate]:
        match = self._LAYER_RE.match(text.strip())
        if not match:
            return []
        status = match.group("status")
        self._layers[match.group("layer")] = status != "Pulling fs layer"
        if status == "Pulling fs layer":
            return []
        done = sum(1 for complete in self._layers.values() if complete)
        total = len(self._layers)
        return [ProgressUpdate(label="image layers", percent=done * 100 / total, current=done, total=total)]


def get_progress_parser(command: Sequence[str]) -> tuple[ProgressParser | None, list[str]]:
    """Return a parser suitable for *command* alongside the prepared command."""

    if not command:
        return None, list(command)

    program = Path(command[0]).name
    if program == "docker" and len(command) >= 2:
        if command[1] == "pull":
            return DockerPullProgressParser(), list(command)
        if command[1] == "exec":
            return KbuildProgressParser(), list(command)
    if program in {"bash", "make"}:
        return KbuildProgressParser(), list(command)
    return None, list(command)


def format_progress_message(update: ProgressUpdate) -> str:
    """Return a human-readable string representing *update*."""

    parts: list[str] = [update.label]
    if update.percent is not None:
        parts.append(f"{update.percent:.0f}%")
    if update.current is not None:
        if update.total is not None:
            parts.append(f"({update.current}/{update.total})")
        else:
            parts.append(f"({update.current})")
    if update.size_bytes is not None:
        size_text = _format_bytes(update.size_bytes)
        if update.total_size_bytes is not None:
            total_text = _format_bytes(update.total_size_bytes)
            parts.append(f"{size_text} / {total_text}")
        else:
            parts.append(size_text)
    if update.speed_bytes_per_sec is not None:
        parts.append(f"@ {_format_bytes(update.speed_bytes_per_sec)}/s")
    return " ".join(part for part in parts if part)


def _format_bytes(value: float) -> str:
    units = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    abs_value = abs(value)
    unit_index = 0
    while abs_value >= 1024 and unit_index < len(units) - 1:
        abs_value /= 1024
        value /= 1024
        unit_index += 1
    if abs_value >= 10 or unit_index == 0:
        formatted = f"{value:.0f}"
    else:
        formatted = f"{value:.1f}"
    return f"{formatted} {units[unit_index]}"
