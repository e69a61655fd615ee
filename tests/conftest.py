"""Shared fixtures for release updater tests."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

from release_updater.config import get_settings

ArchiveFactory = Callable[..., Path]


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Settings are cached process-wide; reset between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def write_release_archive(
    path: Path,
    files: dict[str, str],
    wrapper: str | None = "slate-cbt-1.3.0",
) -> Path:
    """Write a gzip tarball holding *files* under an optional wrapper dir.

    ``wrapper=None`` writes members at the archive root; ``wrapper="."``
    mimics ``tar -czf x.tar.gz .``.
    """
    with tarfile.open(path, "w:gz") as tar:
        if wrapper is not None:
            info = tarfile.TarInfo(wrapper)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for rel, content in files.items():
            data = content.encode("utf-8")
            name = f"{wrapper}/{rel}" if wrapper is not None else rel
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture()
def make_archive(tmp_path: Path) -> ArchiveFactory:
    """Factory building release tarballs inside ``tmp_path``."""

    def _make(
        files: dict[str, str],
        wrapper: str | None = "slate-cbt-1.3.0",
        name: str = "release.tar.gz",
        directory: Path | None = None,
    ) -> Path:
        target_dir = directory or tmp_path
        return write_release_archive(target_dir / name, files, wrapper)

    return _make


RELEASE_FILES: dict[str, str] = {
    "VERSION.txt": "Bundle created: today\nRelease tag: 1.3.0\n",
    "docker-compose.yml": "version: '3.8'\nservices: {}\n",
    "app/cbt_backend/manage.py": "print('manage v2')\n",
    "app/cbt_backend/db/models.py": "MODELS = 2\n",
    "app/cbt_backend/db/migrations/__init__.py": "",
    "app/cbt_backend/db/migrations/0001_initial.py": "# shipped by release\n",
    ".env.example": "SECRET_KEY={SECRET_KEY}\n",
}


@pytest.fixture()
def deployment(tmp_path: Path) -> Path:
    """A live deployment at release 1.2.0 with on-site migration history."""
    root = tmp_path / "deploy"
    files = {
        "VERSION.txt": "Bundle created: yesterday\nRelease tag: 1.2.0\n",
        "docker-compose.yml": "version: '3.8'\n# old\n",
        "app/cbt_backend/manage.py": "print('manage v1')\n",
        "app/cbt_backend/db/models.py": "MODELS = 1\n",
        "app/cbt_backend/db/migrations/__init__.py": "",
        "app/cbt_backend/db/migrations/0001.sql": "CREATE TABLE exam (id int);\n",
        "app/cbt_backend/db/migrations/0002_local.py": "# generated on site\n",
        "app/legacy/obsolete.py": "REMOVED = True\n",
        "save-updates.sh": "#!/bin/sh\n",
        ".env": "SECRET_KEY=keep-me\n",
        ".github/workflows/ci.yml": "on: push\n",
    }
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


def snapshot(root: Path) -> dict[str, bytes]:
    """Map every file under *root* to its bytes."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture()
def release_files() -> dict[str, str]:
    """Contents of the 1.3.0 release archive."""
    return dict(RELEASE_FILES)


@pytest.fixture()
def snapshot_tree() -> Callable[[Path], dict[str, bytes]]:
    """Callable mapping every file under a root to its bytes."""
    return snapshot
