"""Tests for release_updater.transport."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from release_updater.errors import TransportError
from release_updater.transport import ArchiveTransport, verify_archive_file
from release_updater.version import ReleaseArtifact, ReleaseIdentifier

ARTIFACT = ReleaseArtifact(
    identifier=ReleaseIdentifier("1.3.0"),
    name="application-bundle-1.3.0.tar.gz",
    download_url="https://github.com/owner/repo/releases/download/1.3.0/bundle.tar.gz",
)


def _transport(handler) -> ArchiveTransport:
    return ArchiveTransport(timeout=5, transport=httpx.MockTransport(handler))


class TestArchiveTransport:
    """Tests for ArchiveTransport.download()."""

    async def test_writes_archive(self, tmp_path: Path) -> None:
        payload = b"\x1f\x8b" + b"x" * 200_000

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=payload)

        target = tmp_path / "latest.tar.gz"
        result = await _transport(handler).download(ARTIFACT, target)

        assert result == target
        assert target.read_bytes() == payload
        assert not (tmp_path / "latest.tar.gz.part").exists()

    async def test_follows_redirect(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "github.com":
                return httpx.Response(
                    302, headers={"Location": "https://objects.example.com/bundle.tar.gz"}
                )
            return httpx.Response(200, content=b"archive-bytes")

        target = tmp_path / "latest.tar.gz"
        await _transport(handler).download(ARTIFACT, target)

        assert target.read_bytes() == b"archive-bytes"

    async def test_overwrites_stale_leftover(self, tmp_path: Path) -> None:
        target = tmp_path / "latest.tar.gz"
        target.write_bytes(b"stale from a failed run")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"fresh")

        await _transport(handler).download(ARTIFACT, target)

        assert target.read_bytes() == b"fresh"

    async def test_http_error_raises(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        target = tmp_path / "latest.tar.gz"
        with pytest.raises(TransportError, match="404"):
            await _transport(handler).download(ARTIFACT, target)

        assert not target.exists()
        assert not (tmp_path / "latest.tar.gz.part").exists()

    async def test_network_error_raises(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(TransportError, match="Failed to download"):
            await _transport(handler).download(ARTIFACT, tmp_path / "latest.tar.gz")

    async def test_empty_body_raises(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"")

        target = tmp_path / "latest.tar.gz"
        with pytest.raises(TransportError, match="empty"):
            await _transport(handler).download(ARTIFACT, target)

        assert not target.exists()

    async def test_sends_token(self, tmp_path: Path) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, content=b"data")

        transport = ArchiveTransport(
            github_token="ghp_test", transport=httpx.MockTransport(handler)
        )
        await transport.download(ARTIFACT, tmp_path / "latest.tar.gz")

        assert seen == ["Bearer ghp_test"]


class TestVerifyArchiveFile:
    """Tests for verify_archive_file()."""

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(TransportError, match="not found"):
            verify_archive_file(tmp_path / "latest.tar.gz")

    def test_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "latest.tar.gz"
        path.touch()

        with pytest.raises(TransportError, match="empty"):
            verify_archive_file(path)

    def test_present(self, tmp_path: Path) -> None:
        path = tmp_path / "latest.tar.gz"
        path.write_bytes(b"data")

        verify_archive_file(path)
