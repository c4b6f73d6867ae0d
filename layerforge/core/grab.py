"""Importing files into a layer, checking caller-supplied hashes.

The container runtime itself is external; this module only needs the
narrow :class:`ContainerRuntime` protocol to bind a host directory into the
build container and run commands there.
"""

from __future__ import annotations

import logging
import shlex
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from layerforge.core.context import BuildContext, check
from layerforge.core.errors import HashMismatchError, LayerforgeError
from layerforge.core.hasher import hash_file, parse_digest

logger = logging.getLogger(__name__)

GRAB_MOUNTPOINT = "/stacker"


class CommandFailedError(LayerforgeError):
    """Raised by a runtime when a command exits non-zero."""

    def __init__(self, command: str, returncode: int) -> None:
        super().__init__(f"command failed with exit code {returncode}: {command}")
        self.command = command
        self.returncode = returncode


class ContainerRuntime(Protocol):
    """What the import step needs from a container runtime."""

    def bind_mount(self, source: Path, target: str) -> None: ...

    def unmount(self, target: str) -> None: ...

    def execute(self, command: str, env: Mapping[str, str] | None = None) -> None: ...


def _normalize_hash(value: str) -> str:
    """Reduce an expected hash to bare sha256 hex; InvalidDigestError if malformed."""
    _, encoded = parse_digest("sha256:" + value.strip().lower().removeprefix("sha256:"))
    return encoded


def verify_import_hash(path: Path, expected: str) -> str:
    """Check a local file against an expected sha256; return the actual digest.

    Raises HashMismatchError when they differ. An empty ``expected`` skips
    the comparison.
    """
    actual = hash_file(Path(path))
    if expected and _normalize_hash(expected) != _normalize_hash(actual):
        raise HashMismatchError(str(path), expected, actual)
    return actual


def import_local(
    source: Path, target_dir: Path, expected_hash: str = "", *, ctx: BuildContext | None = None
) -> Path:
    """Copy a host file or directory into ``target_dir``, verifying files first."""
    check(ctx, f"import {source}")
    source = Path(source)
    if expected_hash:
        verify_import_hash(source, expected_hash)
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    dest = target_dir / source.name
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(source, dest, follow_symlinks=False)
    logger.debug("Imported %s into %s", source, target_dir)
    return dest


def grab(
    runtime: ContainerRuntime,
    source: str,
    target_dir: Path,
    expected_hash: str = "",
    *,
    ctx: BuildContext | None = None,
) -> None:
    """Copy ``source`` from inside the build container into ``target_dir``.

    ``target_dir`` is bind-mounted at ``/stacker`` for the duration of the
    copy. When ``expected_hash`` is given the content is checked with
    ``sha256sum`` inside the container first; a mismatch is fatal.
    """
    check(ctx, f"grab {source}")
    digest = _normalize_hash(expected_hash) if expected_hash else ""
    runtime.bind_mount(Path(target_dir), GRAB_MOUNTPOINT)
    try:
        if digest:
            try:
                runtime.execute(
                    f"echo {shlex.quote(digest)} {shlex.quote(source)} | sha256sum --check"
                )
            except CommandFailedError as exc:
                raise HashMismatchError(source, expected_hash, "unknown") from exc
        check(ctx, f"grab {source}")
        runtime.execute(f"cp -a {shlex.quote(source)} {GRAB_MOUNTPOINT}")
    finally:
        runtime.unmount(GRAB_MOUNTPOINT)
