"""Archive transport: download a release artifact to a well-known file."""

from __future__ import annotations

from pathlib import Path

import httpx

from release_updater.errors import TransportError
from release_updater.logging import get_logger
from release_updater.version import ReleaseArtifact

log = get_logger("release_updater.transport")

_CHUNK_SIZE = 64 * 1024


class ArchiveTransport:
    """Fetches release archives over HTTP(S)."""

    def __init__(
        self,
        timeout: float = 300.0,
        github_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._github_token = github_token
        self._transport = transport

    async def download(self, artifact: ReleaseArtifact, target: Path) -> Path:
        """Stream *artifact* into *target*, replacing any leftover file.

        The body is written to ``<target>.part`` and renamed into place once
        complete, so *target* never holds a truncated archive.

        Raises:
            TransportError: request failure, non-2xx status, or an empty result.
        """
        part = target.with_name(target.name + ".part")
        headers: dict[str, str] = {"Accept": "application/octet-stream"}
        if self._github_token:
            headers["Authorization"] = f"Bearer {self._github_token}"

        log.info(
            "download_started",
            version=artifact.identifier.raw,
            url=artifact.download_url,
            target=str(target),
        )
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", artifact.download_url, headers=headers) as resp:
                    if not resp.is_success:
                        raise TransportError(
                            f"Failed to download the new version: HTTP {resp.status_code}"
                        )
                    with part.open("wb") as fh:
                        async for chunk in resp.aiter_bytes(_CHUNK_SIZE):
                            fh.write(chunk)
            part.replace(target)
        except httpx.HTTPError as exc:
            part.unlink(missing_ok=True)
            raise TransportError(f"Failed to download the new version: {exc}") from exc
        except OSError as exc:
            part.unlink(missing_ok=True)
            raise TransportError(f"Could not write archive to {target}: {exc}") from exc
        except TransportError:
            part.unlink(missing_ok=True)
            raise

        verify_archive_file(target)
        log.info("download_complete", target=str(target), size=target.stat().st_size)
        return target


def verify_archive_file(path: Path) -> None:
    """Require *path* to exist and be non-empty.

    Raises:
        TransportError: the file is absent or empty.
    """
    if not path.is_file():
        raise TransportError(f"Download completed but '{path}' not found")
    if path.stat().st_size == 0:
        path.unlink(missing_ok=True)
        raise TransportError(f"Downloaded archive '{path}' is empty")
