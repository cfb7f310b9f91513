"""Secret references and late injection into rendered configuration files.

Passwords and the license never travel through the configuration model or
the renderer when a file reference is declared. The renderer writes the
inline (usually empty) value; afterwards the orchestrator resolves each
reference through the :class:`CredentialStore` and rewrites only the
affected line. Resolved values are never logged and never placed on a
command line.
"""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .models import ServerConfig


class SecretResolutionError(RuntimeError):
    """Raised when a secret reference cannot be resolved or injected."""


@dataclass(frozen=True, slots=True)
class SecretReference:
    """Named pointer at credential material, resolved only at injection time."""

    name: str
    credential: str
    source: Path


@dataclass(frozen=True, slots=True)
class SecretInjection:
    """Where a resolved secret goes.

    ``key`` names the ``Key=`` line to overwrite inside ``filename``; when it
    is ``None`` the whole file is replaced with the secret.
    """

    reference: SecretReference
    filename: str
    key: str | None = None


SERVER_PASSWORD = "server-password"
RCON_PASSWORD = "rcon-password"
LICENSE = "license"

CREDENTIAL_NAMES: dict[str, str] = {
    SERVER_PASSWORD: "SQUAD_SERVER_PASSWORD_FILE",
    RCON_PASSWORD: "SQUAD_RCON_PASSWORD_FILE",
    LICENSE: "SQUAD_LICENSE_FILE",
}


def secret_references(config: ServerConfig) -> list[SecretReference]:
    """Return the file-based secret references declared by *config*."""
    declared = (
        (SERVER_PASSWORD, config.server.password_file),
        (RCON_PASSWORD, config.rcon.password_file),
        (LICENSE, config.license.file),
    )
    return [
        SecretReference(name=name, credential=CREDENTIAL_NAMES[name], source=source)
        for name, source in declared
        if source is not None
    ]


def plan_injections(config: ServerConfig) -> list[SecretInjection]:
    """Return the injections needed after rendering *config*.

    Secrets without a file reference are absent from the plan; their inline
    value (possibly empty, which disables the feature) stays as rendered.
    """
    targets = {
        SERVER_PASSWORD: ("Server.cfg", "ServerPassword"),
        RCON_PASSWORD: ("Rcon.cfg", "Password"),
        LICENSE: ("License.cfg", None),
    }
    injections: list[SecretInjection] = []
    for reference in secret_references(config):
        filename, key = targets[reference.name]
        injections.append(SecretInjection(reference=reference, filename=filename, key=key))
    return injections


@dataclass(frozen=True, slots=True)
class CredentialStore:
    """Read-only, by-name lookup of secret material.

    Under systemd the unit's ``LoadCredential=`` entries expose each reference
    as ``$CREDENTIALS_DIRECTORY/<credential>``. Without a credentials
    directory the declared source path is read directly.
    """

    directory: Path | None = None

    def resolve(self, reference: SecretReference) -> str:
        """Return the secret for *reference* with trailing newlines removed."""
        path = (
            self.directory / reference.credential
            if self.directory is not None
            else reference.source
        )
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SecretResolutionError(
                f"Credential '{reference.credential}' for {reference.name} not found at {path}."
            ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise SecretResolutionError(
                f"Credential '{reference.credential}' for {reference.name} could not be read "
                f"from {path}: {exc.__class__.__name__}."
            ) from exc
        return raw.rstrip("\n")


def inject_secret(config_dir: Path, injection: SecretInjection, value: str) -> None:
    """Write *value* into the rendered file named by *injection*."""
    path = config_dir / injection.filename
    name = injection.reference.name
    if injection.key is None:
        _write_private(path, value)
        return

    if "\n" in value or "\r" in value:
        raise SecretResolutionError(f"Secret {name} must be a single line.")
    try:
        original = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SecretResolutionError(
            f"Cannot inject {name}: {path} is not readable ({exc.__class__.__name__})."
        ) from exc

    pattern = re.compile(rf"^{re.escape(injection.key)}=.*$", re.MULTILINE)
    replacement = f"{injection.key}={value}"
    updated, count = pattern.subn(lambda _match: replacement, original, count=1)
    if count == 0:
        raise SecretResolutionError(
            f"Cannot inject {name}: no '{injection.key}=' line in {injection.filename}."
        )
    _write_private(path, updated)


def _write_private(path: Path, content: str) -> None:
    """Atomically replace *path* via an owner-only temporary file."""
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise SecretResolutionError(
            f"Failed to write {path.name}: {exc.__class__.__name__}."
        ) from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CREDENTIAL_NAMES",
    "LICENSE",
    "RCON_PASSWORD",
    "SERVER_PASSWORD",
    "CredentialStore",
    "SecretInjection",
    "SecretReference",
    "SecretResolutionError",
    "inject_secret",
    "plan_injections",
    "secret_references",
]
