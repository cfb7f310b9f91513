"""External tool providers for squadctl."""
from __future__ import annotations

from .patchelf import BinaryPatcher, PatchError
from .steamcmd import FetchError, SteamCmd
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "BinaryPatcher",
    "FetchError",
    "PatchError",
    "SteamCmd",
    "SystemdError",
    "SystemdProvider",
]
