"""Update orchestrator: the linear check → download → deploy → migrate → restart pipeline.

Lifecycle:
1. Resolve the local version against the latest release
2. Download the release archive (only when an update is available)
3. Swap the deployment tree, preserving migration folders
4. Apply migrations and reconcile the admin account
5. Rebuild and restart all containers

Any fatal error moves the run to ``FAILED`` and halts it.  Nothing is
retried automatically.
"""

from __future__ import annotations

import sys
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from release_updater.compose import ComposeRunner
from release_updater.config import Settings, load_admin_credentials
from release_updater.errors import UpdateError
from release_updater.lock import UpdateLock
from release_updater.logging import get_logger, run_context
from release_updater.paths import DeploymentRoot
from release_updater.transport import ArchiveTransport, verify_archive_file
from release_updater.tree import TreeReplacer
from release_updater.version import ResolverOutcome, VersionResolver

log = get_logger("release_updater.orchestrator")


class UpdateState(Enum):
    """Pipeline states."""

    CHECKING_VERSION = "checking_version"
    DOWNLOADING = "downloading"
    DEPLOYING = "deploying"
    MIGRATING = "migrating"
    RESTARTING = "restarting"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[UpdateState, frozenset[UpdateState]] = {
    UpdateState.CHECKING_VERSION: frozenset({UpdateState.DOWNLOADING, UpdateState.DONE}),
    UpdateState.DOWNLOADING: frozenset({UpdateState.DEPLOYING}),
    UpdateState.DEPLOYING: frozenset({UpdateState.MIGRATING}),
    UpdateState.MIGRATING: frozenset({UpdateState.RESTARTING}),
    UpdateState.RESTARTING: frozenset({UpdateState.DONE}),
    UpdateState.DONE: frozenset(),
    UpdateState.FAILED: frozenset(),
}


@dataclass
class UpdateResult:
    """Result of an update run."""

    state: UpdateState
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    local_version: str | None = None
    remote_version: str | None = None
    no_op: bool = False
    error: str | None = None
    error_kind: str | None = None
    exit_code: int = 0
    preserved: list[str] = field(default_factory=list)
    steps_completed: list[str] = field(default_factory=list)
    transitions: list[str] = field(default_factory=list)
    superuser_created: bool | None = None
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is UpdateState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "local_version": self.local_version,
            "remote_version": self.remote_version,
            "no_op": self.no_op,
            "error": self.error,
            "error_kind": self.error_kind,
            "exit_code": self.exit_code,
            "preserved": self.preserved,
            "steps_completed": self.steps_completed,
            "transitions": self.transitions,
            "superuser_created": self.superuser_created,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def _program_entry(root: DeploymentRoot) -> str | None:
    """Name of the running program's file if it sits at the top of *root*."""
    if not sys.argv or not sys.argv[0]:
        return None
    program = Path(sys.argv[0]).resolve()
    if program.parent == root.path:
        return program.name
    return None


class UpdateOrchestrator:
    """Drives one update run against one deployment root."""

    def __init__(
        self,
        root: DeploymentRoot,
        resolver: VersionResolver,
        transport: ArchiveTransport,
        replacer: TreeReplacer,
        compose: ComposeRunner,
        archive_path: Path,
        lock_path: Path,
        admin_config_path: Path,
    ) -> None:
        self._root = root
        self._resolver = resolver
        self._transport = transport
        self._replacer = replacer
        self._compose = compose
        self._archive_path = archive_path
        self._lock_path = lock_path
        self._admin_config_path = admin_config_path

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        root: DeploymentRoot | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> UpdateOrchestrator:
        """Wire every component from settings.

        *http_transport* replaces the network layer of both HTTP clients.
        """
        root = root or DeploymentRoot.at(settings.project_root)
        token = settings.github_token.get_secret_value() if settings.github_token else None

        protected = {settings.lock_filename, settings.download_filename, *settings.keep_entries}
        program = _program_entry(root)
        if program:
            protected.add(program)

        return cls(
            root=root,
            resolver=VersionResolver(
                release_url=settings.latest_release_url,
                version_file=root.join(settings.version_file),
                archive_suffix=settings.archive_suffix,
                github_token=token,
                timeout=settings.http_timeout,
                transport=http_transport,
            ),
            transport=ArchiveTransport(
                timeout=settings.download_timeout,
                github_token=token,
                transport=http_transport,
            ),
            replacer=TreeReplacer(
                root,
                staging_dir_name=settings.staging_dir_name,
                preserve_dir_name=settings.preserve_dir_name,
                additional_preserve_paths=settings.additional_preserve_paths,
                protected=protected,
            ),
            compose=ComposeRunner(
                str(root.path),
                service=settings.compose_service,
                timeout=settings.compose_timeout,
            ),
            archive_path=root.join(settings.download_filename),
            lock_path=root.join(settings.lock_filename),
            admin_config_path=settings.admin_config_path,
        )

    @property
    def archive_path(self) -> Path:
        return self._archive_path

    @property
    def compose(self) -> ComposeRunner:
        return self._compose

    # ------------------------------------------------------------------
    # Primary flows
    # ------------------------------------------------------------------

    async def check(self) -> ResolverOutcome:
        """Resolve versions only; no download, no mutation."""
        return await self._resolver.resolve()

    async def run(self) -> UpdateResult:
        """Run the full pipeline."""
        result = UpdateResult(state=UpdateState.CHECKING_VERSION)
        result.transitions.append(result.state.value)
        with run_context(result.run_id, self._root.path):
            log.info("update_started")
            return await self._guarded(result, self._do_update)

    async def deploy_archive(self, archive: Path) -> UpdateResult:
        """Deploy an already downloaded archive, skipping the version check."""
        result = UpdateResult(state=UpdateState.DEPLOYING)
        result.transitions.append(result.state.value)

        async def _deploy(res: UpdateResult) -> None:
            verify_archive_file(archive)
            await self._deploy_and_restart(res, archive)

        with run_context(result.run_id, self._root.path):
            log.info("deploy_started", archive=str(archive))
            return await self._guarded(result, _deploy)

    async def _guarded(
        self, result: UpdateResult, body: Callable[[UpdateResult], Awaitable[None]]
    ) -> UpdateResult:
        try:
            with UpdateLock(self._lock_path):
                await body(result)
        except UpdateError as exc:
            self._fail(result, exc)
        finally:
            result.completed_at = datetime.now(UTC).isoformat()
        return result

    async def _do_update(self, result: UpdateResult) -> None:
        outcome = await self._resolver.resolve()
        result.local_version = outcome.local.raw
        result.remote_version = outcome.remote.raw
        result.steps_completed.append("version_check")

        if not outcome.update_available or outcome.artifact is None:
            result.no_op = True
            self._advance(result, UpdateState.DONE)
            log.info("update_not_needed", status=outcome.status.value)
            return

        self._advance(result, UpdateState.DOWNLOADING)
        await self._transport.download(outcome.artifact, self._archive_path)
        verify_archive_file(self._archive_path)
        result.steps_completed.append("download")

        self._advance(result, UpdateState.DEPLOYING)
        await self._deploy_and_restart(result, self._archive_path)

    async def _deploy_and_restart(self, result: UpdateResult, archive: Path) -> None:
        report = self._replacer.replace(archive)
        result.preserved = list(report.preserved)
        result.steps_completed.append("deploy")

        self._advance(result, UpdateState.MIGRATING)
        credentials = load_admin_credentials(self._admin_config_path)
        await self._compose.migrate()
        result.steps_completed.append("migrate")
        result.superuser_created = await self._compose.create_superuser(credentials)
        result.steps_completed.append("superuser")

        self._advance(result, UpdateState.RESTARTING)
        await self._compose.rebuild_and_restart()
        result.steps_completed.append("restart")

        self._advance(result, UpdateState.DONE)
        log.info("update_complete", version=result.remote_version)

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    @staticmethod
    def _advance(result: UpdateResult, target: UpdateState) -> None:
        if target not in _TRANSITIONS[result.state]:
            raise RuntimeError(f"Illegal transition {result.state.value} -> {target.value}")
        log.info("update_state", previous=result.state.value, state=target.value)
        result.state = target
        result.transitions.append(target.value)

    @staticmethod
    def _fail(result: UpdateResult, exc: UpdateError) -> None:
        log.error(
            "update_failed",
            state=result.state.value,
            kind=exc.kind,
            error=exc.message,
        )
        result.state = UpdateState.FAILED
        result.transitions.append(UpdateState.FAILED.value)
        result.error = exc.message
        result.error_kind = exc.kind
        result.exit_code = exc.exit_code
