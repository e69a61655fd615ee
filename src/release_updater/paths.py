"""Deployment root value and traversal-safe path joins."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from release_updater.errors import ConfigurationError


def normalize_relative(raw: str) -> str:
    """Normalise a root-relative path to clean POSIX form.

    Strips leading ``./`` and ``/`` noise, collapses ``.`` segments and
    rejects anything that climbs out of the root.
    """
    cleaned = raw.replace("\\", "/").strip()
    parts = [p for p in PurePosixPath(cleaned).parts if p not in ("/", ".", "")]
    if not parts:
        raise ConfigurationError(f"Path {raw!r} does not name anything under the root")
    if ".." in parts:
        raise ConfigurationError(f"Path {raw!r} escapes the deployment root")
    return "/".join(parts)


@dataclass(frozen=True)
class DeploymentRoot:
    """The live application tree an update mutates."""

    path: Path

    @classmethod
    def at(cls, path: str | Path) -> DeploymentRoot:
        return cls(Path(path).resolve())

    def join(self, relative: str) -> Path:
        """Resolve a root-relative path to an absolute one inside the root."""
        return self.path / normalize_relative(relative)

    def relative(self, absolute: Path) -> str:
        """Express an absolute path under the root as a clean relative path."""
        try:
            rel = absolute.resolve().relative_to(self.path)
        except ValueError as exc:
            raise ConfigurationError(f"{absolute} is outside {self.path}") from exc
        return rel.as_posix()

    def contains(self, absolute: Path) -> bool:
        try:
            absolute.resolve().relative_to(self.path)
        except ValueError:
            return False
        return True

    def entries(self) -> list[Path]:
        """Top-level entries, sorted by name."""
        return sorted(self.path.iterdir(), key=lambda p: p.name)
