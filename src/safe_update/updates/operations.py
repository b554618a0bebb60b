"""
Filesystem operations used by the update pipeline.

- Safe directory creation and removal
- Directory size measurement and writability probing
- Zip extraction with path-traversal protection and an optional deadline
- Installing a prepared directory over the live installation
- Version marker and JSON state files written with atomic rename

Low-level helpers raise builtin exceptions (OSError, zipfile.BadZipFile,
TimeoutError, ValueError); the components calling them translate those
into UpdateError subclasses with context.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any

from safe_update.errors import InstallFailedError, UpdateError
from safe_update.logging import get_logger

logger = get_logger(__name__)


def ensure_directory(
    path: Path,
    *,
    mode: int = 0o755,
    error_cls: type[UpdateError] = InstallFailedError,
) -> Path:
    """
    Ensure a directory exists, creating parents as needed.

    Args:
        path: Path to the directory.
        mode: Directory permissions for newly created directories.
        error_cls: UpdateError subclass raised on failure.

    Returns:
        The directory path.

    Raises:
        UpdateError: ``error_cls`` if the directory cannot be created.
    """
    try:
        path.mkdir(parents=True, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise error_cls(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def safe_remove_directory(path: Path) -> bool:
    """
    Remove a directory tree, ignoring errors.

    Returns:
        True if the directory existed and is gone, False otherwise.
    """
    if not path.exists():
        return False

    shutil.rmtree(path, ignore_errors=True)
    removed = not path.exists()
    if removed:
        logger.debug("Removed directory", extra={"path": str(path)})
    else:
        logger.warning("Could not fully remove directory", extra={"path": str(path)})
    return removed


def remove_file(path: Path) -> bool:
    """
    Delete a file if present.

    Returns:
        True if the file is absent afterwards.
    """
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(
            "Failed to delete file",
            extra={"path": str(path), "error": str(e)},
        )
        return False
    return True


def directory_size(path: Path) -> int:
    """Total size in bytes of the regular files below ``path``."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            file_path = Path(root) / name
            try:
                if not file_path.is_symlink():
                    total += file_path.stat().st_size
            except OSError:
                continue
    return total


def is_writable_directory(path: Path) -> bool:
    """
    Check that files can actually be created in ``path``.

    ``os.access`` alone is unreliable for root and some network filesystems,
    so a probe file is created and removed.
    """
    if not path.is_dir():
        return False
    try:
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write-probe-"):
            pass
    except OSError:
        return False
    return True


def _safe_member_path(dest: Path, member_name: str) -> Path:
    """
    Resolve an archive member below ``dest``.

    Raises:
        ValueError: If the member is absolute or escapes ``dest``.
    """
    member = PurePosixPath(member_name)
    if member.is_absolute() or ".." in member.parts:
        raise ValueError(f"Unsafe path in archive: {member_name}")
    return dest.joinpath(*member.parts)


def extract_zip(
    archive_path: Path,
    dest: Path,
    *,
    deadline: float | None = None,
) -> list[str]:
    """
    Extract a zip archive into ``dest``.

    Args:
        archive_path: Zip file to extract.
        dest: Destination directory (created if missing).
        deadline: Optional ``time.monotonic()`` value after which extraction
            stops with TimeoutError. Checked between members.

    Returns:
        Names of the extracted members.

    Raises:
        zipfile.BadZipFile: If the archive is not a valid zip file.
        ValueError: If a member path would escape ``dest``.
        TimeoutError: If the deadline passes.
        OSError: On filesystem errors.
    """
    dest.mkdir(parents=True, exist_ok=True)
    extracted: list[str] = []

    with zipfile.ZipFile(archive_path) as zf:
        for info in zf.infolist():
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError(
                    f"Extraction of {archive_path.name} exceeded its deadline"
                )

            target = _safe_member_path(dest, info.filename)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            extracted.append(info.filename)

    return extracted


def find_extracted_root(staging_dir: Path) -> Path:
    """
    Locate the top-level directory of an extracted release package.

    Release archives wrap the unit in exactly one directory whose name
    depends on the release source. Hidden entries and ``__MACOSX`` are
    ignored. When the archive has loose files at its root, the staging
    directory itself is the unit root.

    Raises:
        FileNotFoundError: If nothing was extracted.
    """
    entries = [
        entry
        for entry in staging_dir.iterdir()
        if not entry.name.startswith(".") and entry.name != "__MACOSX"
    ]
    if not entries:
        raise FileNotFoundError(f"No files extracted into {staging_dir}")

    directories = [entry for entry in entries if entry.is_dir()]
    if len(entries) == 1 and len(directories) == 1:
        return directories[0]
    return staging_dir


def install_directory(source: Path, install_dir: Path) -> None:
    """
    Move a prepared unit directory into the live installation location.

    The previous installation is moved aside first and put back if the
    new directory cannot be moved in, so a failure here leaves the old
    installation in place.

    Raises:
        InstallFailedError: If the swap fails.
    """
    install_dir.parent.mkdir(parents=True, exist_ok=True)
    aside = install_dir.with_name(f".{install_dir.name}.old-{uuid.uuid4().hex[:8]}")

    moved_aside = False
    try:
        if install_dir.exists():
            os.replace(install_dir, aside)
            moved_aside = True
        shutil.move(str(source), str(install_dir))
    except OSError as e:
        if moved_aside:
            # A cross-device move may have left a partial copy behind
            safe_remove_directory(install_dir)
            os.replace(aside, install_dir)
            moved_aside = False
        raise InstallFailedError(
            f"Failed to install {source.name} into {install_dir}: {e}",
            details={
                "source": str(source),
                "install_dir": str(install_dir),
                "error": str(e),
            },
        ) from e
    finally:
        if moved_aside:
            safe_remove_directory(aside)

    logger.info(
        "Installed new unit directory",
        extra={"install_dir": str(install_dir)},
    )


def read_version_marker(unit_dir: Path, version_file: str | None) -> str | None:
    """Read the version marker inside ``unit_dir``, or None if unavailable."""
    if not version_file:
        return None
    marker = unit_dir / version_file
    try:
        return marker.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON to ``path`` via a temp file and atomic rename.

    Raises:
        OSError: If the file cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any:
    """
    Read a JSON document, returning None when the file does not exist.

    Raises:
        ValueError: If the file is not valid JSON.
    """
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        return json.load(f)
