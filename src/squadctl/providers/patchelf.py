"""Patch prebuilt server binaries so they run on the host's dynamic loader."""
from __future__ import annotations

import os
import stat
import struct
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path

ELF_MAGIC = b"\x7fELF"
PT_INTERP = 3


class PatchError(RuntimeError):
    """Raised when patchelf cannot patch an executable."""


class BinaryPatcher:
    """Set the ELF interpreter of every executable below an install directory."""

    def __init__(
        self,
        *,
        patchelf_bin: str = "patchelf",
        interpreter: str = "/lib64/ld-linux-x86-64.so.2",
    ) -> None:
        """Initialise the patcher with the tool binary and target interpreter."""
        self.patchelf_bin = patchelf_bin
        self.interpreter = interpreter

    def executables(self, root: Path) -> Iterator[Path]:
        """Yield executable files under *root* that request an ELF interpreter.

        Shell scripts and shared libraries carry execute bits too but have no
        interpreter to replace, so they are skipped.
        """
        for directory, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                path = Path(directory) / filename
                try:
                    mode = path.lstat().st_mode
                except FileNotFoundError:
                    continue
                if not stat.S_ISREG(mode):
                    continue
                if not mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
                    continue
                if has_interpreter(path):
                    yield path

    def patch_tree(self, root: Path) -> list[Path]:
        """Patch every executable under *root* and return the patched paths.

        Re-patching an already patched binary is harmless, so this always
        visits every file.
        """
        patched: list[Path] = []
        for path in self.executables(root):
            self.patch(path)
            patched.append(path)
        return patched

    def patch(self, path: Path) -> subprocess.CompletedProcess[str]:
        """Set the interpreter of a single file."""
        cmd = [self.patchelf_bin, "--set-interpreter", self.interpreter, str(path)]
        result = self._run_command(cmd)
        if result.returncode != 0:
            stderr = (getattr(result, "stderr", "") or "").strip() or "no output"
            raise PatchError(f"patchelf failed for {path} (exit {result.returncode}): {stderr}")
        return result

    def _run_command(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute patchelf (isolated for testing)."""
        try:
            return subprocess.run(  # noqa: S603
                list(cmd),
                check=False,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise PatchError(f"{cmd[0]} not found: {exc}") from exc


def has_interpreter(path: Path) -> bool:
    """Return ``True`` when *path* is an ELF file with a ``PT_INTERP`` header."""
    try:
        with path.open("rb") as handle:
            ident = handle.read(64)
            if len(ident) < 52 or ident[:4] != ELF_MAGIC:
                return False
            endian = "<" if ident[5] == 1 else ">"
            is_64bit = ident[4] == 2
            if is_64bit and len(ident) < 64:
                return False
            if is_64bit:
                (phoff,) = struct.unpack_from(f"{endian}Q", ident, 32)
                phentsize, phnum = struct.unpack_from(f"{endian}HH", ident, 54)
            else:
                (phoff,) = struct.unpack_from(f"{endian}I", ident, 28)
                phentsize, phnum = struct.unpack_from(f"{endian}HH", ident, 42)
            for index in range(phnum):
                handle.seek(phoff + index * phentsize)
                raw = handle.read(4)
                if len(raw) < 4:
                    return False
                (p_type,) = struct.unpack(f"{endian}I", raw)
                if p_type == PT_INTERP:
                    return True
    except OSError:
        return False
    return False


__all__ = ["BinaryPatcher", "PatchError", "has_interpreter"]
