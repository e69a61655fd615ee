"""Version resolution against the GitHub releases API.

Reads the locally recorded release tag, fetches the latest published
release and decides whether the deployment is up to date, ahead of the
release (pre-release / dev build) or behind it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from release_updater.errors import ConfigurationError, UpstreamError
from release_updater.logging import get_logger

log = get_logger("release_updater.version")

VERSION_LINE_PREFIX = "Release tag:"

# Tag layout: optional leading v, release segments, -pre-release, +build metadata
_TAG_RE = re.compile(r"^[vV]?(?P<release>[^-+]*)(?:-(?P<pre>[^+]*))?(?:\+.*)?$")
_DIGITS_RE = re.compile(r"(\d+)")


class Ordering(Enum):
    """How a local identifier relates to a remote one."""

    EQUAL = "equal"
    LOCAL_NEWER = "local_newer"
    REMOTE_NEWER = "remote_newer"


class ResolutionStatus(Enum):
    """Outcome of a version check."""

    UP_TO_DATE = "up_to_date"
    LOCAL_AHEAD = "local_ahead"
    UPDATE_AVAILABLE = "update_available"


def split_tag(version_str: str) -> tuple[str, str]:
    """Split a tag into its release part and pre-release part.

    A leading ``v`` and any ``+build`` metadata are dropped, so
    ``v1.3.0-rc.1+5`` gives ``("1.3.0", "rc.1")``.
    """
    m = _TAG_RE.match(version_str.strip())
    if m is None:
        return version_str.strip(), ""
    return m.group("release"), m.group("pre") or ""


def _natural_key(text: str) -> tuple[tuple[int, int, str], ...]:
    # Digit runs compare numerically, everything else as text, like `sort -V`.
    key = []
    for chunk in _DIGITS_RE.split(text):
        if not chunk:
            continue
        if chunk.isdigit():
            key.append((1, int(chunk), ""))
        else:
            key.append((0, 0, chunk))
    return tuple(key)


def _sort_key(version_str: str) -> tuple[Any, ...]:
    release, pre = split_tag(version_str)
    # Release segments of any length first; a pre-release sorts lower than
    # the release it precedes.
    return (_natural_key(release), pre == "", _natural_key(pre))


@dataclass(frozen=True)
class ReleaseIdentifier:
    """A published release tag, e.g. ``v1.3.0``."""

    raw: str

    def __str__(self) -> str:
        return self.raw

    def compare(self, remote: ReleaseIdentifier) -> Ordering:
        """Order this (local) identifier against *remote*."""
        if self.raw.strip() == remote.raw.strip():
            return Ordering.EQUAL
        local_key = _sort_key(self.raw)
        remote_key = _sort_key(remote.raw)
        if local_key == remote_key:
            return Ordering.EQUAL
        return Ordering.LOCAL_NEWER if local_key > remote_key else Ordering.REMOTE_NEWER


@dataclass(frozen=True)
class ReleaseArtifact:
    """A downloadable release archive."""

    identifier: ReleaseIdentifier
    name: str
    download_url: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag": self.identifier.raw,
            "name": self.name,
            "download_url": self.download_url,
        }


@dataclass(frozen=True)
class ResolverOutcome:
    """Result of comparing the local record with the latest release."""

    status: ResolutionStatus
    local: ReleaseIdentifier
    remote: ReleaseIdentifier
    artifact: ReleaseArtifact | None = None

    @property
    def update_available(self) -> bool:
        return self.status is ResolutionStatus.UPDATE_AVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "local": self.local.raw,
            "remote": self.remote.raw,
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }


def read_local_version(path: Path) -> ReleaseIdentifier:
    """Read ``Release tag: <identifier>`` from the local version record.

    Raises:
        ConfigurationError: the file is missing or has no usable tag line.
    """
    if not path.is_file():
        raise ConfigurationError(
            f"Local version file '{path}' not found. Cannot determine current version."
        )
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Could not read local version file '{path}': {exc}") from exc

    for line in text.splitlines():
        if VERSION_LINE_PREFIX in line:
            tokens = line.split()
            tag = tokens[-1] if tokens else ""
            if tag and not tag.endswith(":"):
                return ReleaseIdentifier(tag)
            break

    raise ConfigurationError(
        f"Could not extract Release tag from '{path}'. "
        f"Ensure it has '{VERSION_LINE_PREFIX} X.Y.Z'."
    )


def select_artifact(
    identifier: ReleaseIdentifier, assets: Any, suffix: str
) -> ReleaseArtifact:
    """Pick the release asset to download.

    The first asset whose name ends with *suffix* wins; later matches are
    ignored.
    """
    if not isinstance(assets, list):
        raise UpstreamError("Release metadata has no asset list")

    for asset in assets:
        if not isinstance(asset, dict):
            continue
        name = asset.get("name") or ""
        url = asset.get("browser_download_url") or ""
        if name.endswith(suffix) and url:
            return ReleaseArtifact(identifier=identifier, name=name, download_url=url)

    raise UpstreamError(
        f"Could not find a {suffix} asset in release {identifier}. "
        "Is the release structured as expected?"
    )


class VersionResolver:
    """Decides whether the deployment needs an update."""

    def __init__(
        self,
        release_url: str,
        version_file: Path,
        archive_suffix: str = ".tar.gz",
        github_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._release_url = release_url
        self._version_file = version_file
        self._suffix = archive_suffix
        self._github_token = github_token
        self._timeout = timeout
        self._transport = transport

    async def fetch_latest_release(self) -> dict[str, Any]:
        """GET the latest-release metadata.

        Raises:
            UpstreamError: unreachable service, non-200 status or non-JSON body.
        """
        headers: dict[str, str] = {"Accept": "application/vnd.github+json"}
        if self._github_token:
            headers["Authorization"] = f"Bearer {self._github_token}"

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(self._release_url, headers=headers)
        except httpx.RequestError as exc:
            raise UpstreamError(f"Release service unreachable: {exc}") from exc

        if resp.status_code != 200:
            raise UpstreamError(
                f"Release service returned HTTP {resp.status_code}. "
                "Check repository name/owner or API rate limits."
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamError("Release service returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise UpstreamError("Release service returned unexpected metadata")
        return data

    async def resolve(self) -> ResolverOutcome:
        """Compare the local record against the latest release."""
        local = read_local_version(self._version_file)
        log.info("local_version", version=local.raw)

        data = await self.fetch_latest_release()
        tag = data.get("tag_name")
        if not isinstance(tag, str) or not tag.strip() or tag.strip() == "null":
            raise UpstreamError("Could not retrieve latest release tag from the release service")
        remote = ReleaseIdentifier(tag.strip())
        artifact = select_artifact(remote, data.get("assets"), self._suffix)
        log.info("remote_version", version=remote.raw, asset=artifact.name)

        ordering = local.compare(remote)
        if ordering is Ordering.EQUAL:
            log.info("version_up_to_date", version=local.raw)
            return ResolverOutcome(ResolutionStatus.UP_TO_DATE, local, remote)
        if ordering is Ordering.LOCAL_NEWER:
            log.warning(
                "version_local_ahead",
                local=local.raw,
                remote=remote.raw,
            )
            return ResolverOutcome(ResolutionStatus.LOCAL_AHEAD, local, remote)

        log.info("version_update_available", local=local.raw, remote=remote.raw)
        return ResolverOutcome(ResolutionStatus.UPDATE_AVAILABLE, local, remote, artifact)
