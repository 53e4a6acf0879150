from __future__ import annotations

import os
import platform
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Protocol


WSL_KERNEL_MARKERS = ("microsoft", "wsl")


class Platform(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    WSL = "wsl"


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class Environment:
    """Read-only view over environment variables."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = values

    def get(self, name: str, default: str = "") -> str:
        source = os.environ if self._values is None else self._values
        return str(source.get(name, default))


def _read_proc_version() -> str:
    try:
        return Path("/proc/version").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def detect_platform(
    system: str | None = None,
    kernel_release: str | None = None,
    proc_version: Callable[[], str] = _read_proc_version,
) -> Platform:
    system_name = (system if system is not None else platform.system()).strip().lower()
    if system_name == "darwin":
        return Platform.MACOS

    if system_name == "linux":
        release = (kernel_release if kernel_release is not None else platform.release()).lower()
        if any(marker in release for marker in WSL_KERNEL_MARKERS):
            return Platform.WSL
        if any(marker in proc_version().lower() for marker in WSL_KERNEL_MARKERS):
            return Platform.WSL

    # Other hosts get the generic X11/Wayland chain and fail resolution if
    # nothing on it is installed.
    return Platform.LINUX
