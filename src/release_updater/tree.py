"""Tree preservation and replacement engine.

Replaces the deployment tree with a freshly extracted release while
carrying stateful paths (migration folders, operator-declared paths)
across the swap.

Phases, strictly ordered:
1. Discover the preservation set
2. Stage the release (extract, flatten the wrapper directory)
3. Park preserved paths inside the staging tree
4. Retire old top-level entries into the staging tree
5. Promote staged entries into the root
6. Restore parked paths to their original locations
7. Remove the staging tree and the archive

Everything is moved with ``os.replace`` inside one filesystem, so each
step is a rename.  A failure in phases 3-6 rolls back what was done so far
before the error propagates.
"""

from __future__ import annotations

import os
import shutil
import tarfile
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from release_updater.errors import ArchiveError, FilesystemError
from release_updater.logging import get_logger
from release_updater.paths import DeploymentRoot, normalize_relative

log = get_logger("release_updater.tree")

PARKED_PREFIX = "PRESERVED_"
RETIRED_DIR = ".retired"


@dataclass(frozen=True)
class PreservedRelocation:
    """A preserved path parked inside the staging tree during the swap."""

    original: str
    parked: Path


@dataclass
class ReplacementReport:
    """What a tree replacement did."""

    preserved: tuple[str, ...] = ()
    relocations: list[PreservedRelocation] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "preserved": list(self.preserved),
            "retired": self.retired,
            "promoted": self.promoted,
            "restored": self.restored,
            "skipped": self.skipped,
        }


# ----------------------------------------------------------------------
# Small filesystem helpers
# ----------------------------------------------------------------------


def _exists(path: Path) -> bool:
    return path.exists() or path.is_symlink()


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _move(src: Path, dest: Path, what: str) -> None:
    try:
        os.replace(src, dest)
    except OSError as exc:
        raise FilesystemError(f"Failed to move {what} '{src}' to '{dest}': {exc}") from exc


# ----------------------------------------------------------------------
# Phase 1: discover
# ----------------------------------------------------------------------


def _collapse_nested(paths: Iterable[str]) -> tuple[str, ...]:
    """De-duplicate, keeping order, and drop paths inside another member."""
    unique: list[str] = []
    for p in paths:
        if p not in unique:
            unique.append(p)
    kept = []
    for p in unique:
        parents = {str(parent) for parent in PurePosixPath(p).parents}
        if not any(other in parents for other in unique if other != p):
            kept.append(p)
    return tuple(kept)


def discover_preservation_set(
    root: DeploymentRoot,
    staging: Path,
    dir_name: str = "migrations",
    extra: Iterable[str] = (),
) -> tuple[str, ...]:
    """Find every directory named *dir_name* under the root, plus *extra*.

    The staging tree is never scanned.  A matching directory is preserved
    whole, so the scan does not descend into it.  Returned paths are
    root-relative POSIX strings.
    """
    found: list[str] = []
    for dirpath, dirnames, _files in os.walk(root.path):
        current = Path(dirpath)
        descend = []
        for name in sorted(dirnames):
            candidate = current / name
            if candidate == staging:
                continue
            if name == dir_name:
                found.append(candidate.relative_to(root.path).as_posix())
                continue
            descend.append(name)
        dirnames[:] = descend

    extras = [normalize_relative(p) for p in extra]
    preserved = _collapse_nested([*sorted(found), *extras])

    if not preserved:
        log.warning("preserve_set_empty", dir_name=dir_name)
    else:
        log.info("preserve_set_discovered", paths=list(preserved))
    return preserved


# ----------------------------------------------------------------------
# Phase 2: stage
# ----------------------------------------------------------------------


def _wrapper_name(member_name: str) -> str:
    parts = [p for p in member_name.replace("\\", "/").split("/") if p]
    if not parts:
        raise ArchiveError(
            "Could not determine top-level directory in the archive. "
            "Archive might be malformed."
        )
    return parts[0]


def prepare_staging(staging: Path) -> None:
    """Create an empty staging directory.

    A leftover staging tree is removed, unless it still holds parked or
    retired content from an interrupted run.
    """
    if _exists(staging):
        leftovers: list[str] = []
        if staging.is_dir() and not staging.is_symlink():
            leftovers = [
                p.name
                for p in staging.iterdir()
                if p.name == RETIRED_DIR or p.name.startswith(PARKED_PREFIX)
            ]
        if leftovers:
            raise FilesystemError(
                f"Staging directory '{staging}' still holds data from an interrupted "
                f"update ({', '.join(sorted(leftovers))}). Recover it manually first."
            )
        log.info("staging_stale_removed", path=str(staging))
        try:
            _remove(staging)
        except OSError as exc:
            raise FilesystemError(f"Could not remove stale staging '{staging}': {exc}") from exc
    try:
        staging.mkdir(parents=True)
    except OSError as exc:
        raise FilesystemError(f"Failed to create staging directory '{staging}': {exc}") from exc


def stage_release(archive: Path, staging: Path) -> None:
    """Create *staging* and extract *archive* into it.

    Raises:
        ArchiveError: empty, corrupt or unsafe archive, or no usable wrapper.
        FilesystemError: the staging directory cannot be written.
    """
    prepare_staging(staging)
    extract_release(archive, staging)


def extract_release(archive: Path, staging: Path) -> None:
    """Extract *archive* into *staging* with its wrapper directory flattened.

    Release archives hold one top-level directory; its children end up
    directly under *staging*.  Archives rooted at ``.`` have no wrapper and
    are extracted as-is.
    """
    log.info("archive_extracting", archive=str(archive), staging=str(staging))

    try:
        with tarfile.open(archive, "r:*") as tar:
            first = tar.next()
            if first is None:
                raise ArchiveError(f"Archive '{archive}' lists no entries")
            wrapper = _wrapper_name(first.name)
            tar.extractall(staging, filter="data")
    except tarfile.TarError as exc:
        raise ArchiveError(f"Failed to extract '{archive}': {exc}") from exc
    except OSError as exc:
        raise FilesystemError(f"Failed to extract '{archive}' into '{staging}': {exc}") from exc

    if wrapper == ".":
        log.info("archive_unwrapped")
        return

    log.info("archive_wrapper", wrapper=wrapper)
    wrapped = staging / wrapper
    if not wrapped.is_dir() or wrapped.is_symlink():
        raise ArchiveError(f"Archive top-level entry '{wrapper}' is not a directory")

    # Move the wrapper aside first: it may contain a child of the same name.
    holder = staging / f".wrapper-{time.time_ns()}"
    _move(wrapped, holder, "archive wrapper")
    for child in sorted(holder.iterdir(), key=lambda p: p.name):
        _move(child, staging / child.name, "staged entry")
    try:
        holder.rmdir()
    except OSError as exc:
        log.warning("wrapper_remove_failed", path=str(holder), error=str(exc))


# ----------------------------------------------------------------------
# Phases 3-6: park, retire, promote, restore
# ----------------------------------------------------------------------


def parked_name(original: str, token: str, index: int) -> str:
    flat = original.replace("/", "_")
    return f"{PARKED_PREFIX}{flat}_{token}_{index}"


def relocate_preserved(
    root: DeploymentRoot,
    staging: Path,
    paths: Iterable[str],
    token: str,
    report: ReplacementReport,
) -> list[PreservedRelocation]:
    """Park each existing preserved path inside *staging*.

    Missing paths are logged and skipped.  Relocations are appended to
    ``report.relocations`` as they happen so a rollback sees partial work.
    """
    for index, original in enumerate(paths):
        src = root.join(original)
        if not _exists(src):
            log.warning("preserve_path_missing", path=original)
            report.skipped.append(original)
            continue
        parked = staging / parked_name(original, token, index)
        log.info("preserve_path_parked", path=original, parked=parked.name)
        _move(src, parked, "preserved path")
        report.relocations.append(PreservedRelocation(original=original, parked=parked))
    return report.relocations


def clear_deployment_root(
    root: DeploymentRoot,
    retired_dir: Path,
    protected: Iterable[str],
    report: ReplacementReport,
) -> list[str]:
    """Move every unprotected top-level entry into *retired_dir*.

    Dotfiles and *protected* names stay in place.
    """
    keep = set(protected)
    try:
        retired_dir.mkdir(exist_ok=True)
    except OSError as exc:
        raise FilesystemError(f"Failed to create '{retired_dir}': {exc}") from exc

    try:
        entries = root.entries()
    except OSError as exc:
        raise FilesystemError(f"Failed to list '{root.path}': {exc}") from exc

    for entry in entries:
        if entry.name in keep or entry.name.startswith("."):
            continue
        _move(entry, retired_dir / entry.name, "old entry")
        report.retired.append(entry.name)
    log.info("root_cleared", retired=len(report.retired))
    return report.retired


def promote_staged(
    root: DeploymentRoot,
    staging: Path,
    skip: Iterable[str],
    report: ReplacementReport,
) -> list[str]:
    """Move every staged entry, dotfiles included, into the root.

    An existing directory at the destination (a dotdir that survived
    clearing) is merged into; anything else there is replaced.
    """
    skipped = set(skip)
    for entry in sorted(staging.iterdir(), key=lambda p: p.name):
        name = entry.name
        if name in skipped or name.startswith(PARKED_PREFIX):
            continue
        dest = root.path / name
        try:
            if _exists(dest):
                if dest.is_dir() and not dest.is_symlink() and entry.is_dir():
                    shutil.copytree(entry, dest, symlinks=True, dirs_exist_ok=True)
                    shutil.rmtree(entry)
                    log.debug("promote_merged", entry=name)
                    continue
                _remove(dest)
            os.replace(entry, dest)
        except OSError as exc:
            raise FilesystemError(f"Failed to promote '{name}': {exc}") from exc
        report.promoted.append(name)
    log.info("staging_promoted", promoted=len(report.promoted))
    return report.promoted


def restore_preserved(
    root: DeploymentRoot,
    relocations: Iterable[PreservedRelocation],
    report: ReplacementReport,
) -> list[str]:
    """Move parked paths back, replacing any copy the release shipped."""
    for relocation in relocations:
        if not _exists(relocation.parked):
            log.warning("preserve_parked_missing", path=relocation.original)
            report.skipped.append(relocation.original)
            continue
        dest = root.join(relocation.original)
        try:
            if _exists(dest):
                log.info("preserve_replacing_released_copy", path=relocation.original)
                _remove(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Failed to prepare '{relocation.original}' for restore: {exc}"
            ) from exc
        _move(relocation.parked, dest, "preserved path")
        report.restored.append(relocation.original)
        log.info("preserve_path_restored", path=relocation.original)
    return report.restored


def cleanup(staging: Path, archive: Path | None) -> None:
    """Remove the staging tree and the archive.  Failures only warn."""
    if _exists(staging):
        try:
            _remove(staging)
        except OSError as exc:
            log.warning("staging_cleanup_failed", path=str(staging), error=str(exc))
    if archive is not None and _exists(archive):
        try:
            archive.unlink()
        except OSError as exc:
            log.warning("archive_cleanup_failed", path=str(archive), error=str(exc))


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------


class TreeReplacer:
    """Runs the seven replacement phases against one deployment root."""

    def __init__(
        self,
        root: DeploymentRoot,
        staging_dir_name: str = "temp_update_bundle",
        preserve_dir_name: str = "migrations",
        additional_preserve_paths: Iterable[str] = (),
        protected: Iterable[str] = (),
    ) -> None:
        self._root = root
        self._staging = root.join(staging_dir_name)
        self._preserve_dir_name = preserve_dir_name
        self._extra = tuple(additional_preserve_paths)
        self._protected = {staging_dir_name, *protected}

    @property
    def staging(self) -> Path:
        return self._staging

    def replace(self, archive: Path) -> ReplacementReport:
        """Swap the deployment tree for the release in *archive*.

        Raises:
            ArchiveError: the archive cannot be staged.
            FilesystemError: a phase failed; work done so far was rolled back
                where possible.
        """
        archive = archive.resolve()
        protected = set(self._protected)
        if archive.parent == self._root.path:
            protected.add(archive.name)

        report = ReplacementReport()
        report.preserved = discover_preservation_set(
            self._root, self._staging, self._preserve_dir_name, self._extra
        )

        prepare_staging(self._staging)
        try:
            extract_release(archive, self._staging)
        except (ArchiveError, FilesystemError):
            cleanup(self._staging, None)
            raise

        token = str(time.time_ns())
        retired_dir = self._staging / RETIRED_DIR
        try:
            relocate_preserved(self._root, self._staging, report.preserved, token, report)
            clear_deployment_root(self._root, retired_dir, protected, report)
            promote_staged(self._root, self._staging, {RETIRED_DIR, *protected}, report)
            restore_preserved(self._root, report.relocations, report)
        except FilesystemError:
            log.error("replace_failed_rolling_back")
            if self._rollback(report, retired_dir):
                cleanup(self._staging, None)
            else:
                log.error("rollback_incomplete_staging_kept", staging=str(self._staging))
            raise

        cleanup(self._staging, archive)
        log.info(
            "replace_complete",
            promoted=len(report.promoted),
            restored=len(report.restored),
        )
        return report

    def _rollback(self, report: ReplacementReport, retired_dir: Path) -> bool:
        """Best-effort undo of phases 3-6.  Returns True if nothing was left behind."""
        clean = True
        by_original = {r.original: r for r in report.relocations}

        # Park restored paths again so removing promoted entries cannot touch them.
        for original in reversed(report.restored):
            relocation = by_original[original]
            try:
                os.replace(self._root.join(original), relocation.parked)
            except OSError as exc:
                clean = False
                log.error("rollback_repark_failed", path=original, error=str(exc))

        for name in reversed(report.promoted):
            promoted = self._root.path / name
            if not _exists(promoted):
                continue
            try:
                _remove(promoted)
            except OSError as exc:
                clean = False
                log.error("rollback_unpromote_failed", entry=name, error=str(exc))

        for name in reversed(report.retired):
            try:
                os.replace(retired_dir / name, self._root.path / name)
            except OSError as exc:
                clean = False
                log.error("rollback_unretire_failed", entry=name, error=str(exc))

        for relocation in reversed(report.relocations):
            if not _exists(relocation.parked):
                continue
            dest = self._root.join(relocation.original)
            try:
                if _exists(dest):
                    raise FileExistsError(f"'{dest}' already exists")
                dest.parent.mkdir(parents=True, exist_ok=True)
                os.replace(relocation.parked, dest)
            except OSError as exc:
                clean = False
                log.error("rollback_unpark_failed", path=relocation.original, error=str(exc))

        log.info("rollback_finished", clean=clean)
        return clean
