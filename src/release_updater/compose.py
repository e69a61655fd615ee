"""Container orchestration through the compose CLI.

Detects which compose front-end is installed and runs the handful of
commands the updater needs.  All subprocess calls are confined to this
module.
"""

from __future__ import annotations

import asyncio
import os
import shutil

from release_updater.config import ADMIN_PASSWORD_KEY, AdminCredentials
from release_updater.errors import OrchestrationError
from release_updater.logging import get_logger

log = get_logger("release_updater.compose")


class ComposeRunner:
    """Runs compose commands in the deployment root."""

    def __init__(
        self,
        project_dir: str,
        service: str = "web",
        command: list[str] | None = None,
        timeout: int = 1200,
    ) -> None:
        self._project_dir = project_dir
        self._service = service
        self._command = command
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def command(self) -> list[str]:
        """Return the compose command, detecting it on first use.

        Preference: ``docker-compose``, ``podman-compose``, then the
        ``docker compose`` plugin.
        """
        if self._command is not None:
            return self._command

        if shutil.which("docker-compose"):
            self._command = ["docker-compose"]
        elif shutil.which("podman-compose"):
            self._command = ["podman-compose"]
        elif shutil.which("docker") and await self._run_cmd(
            ["docker", "compose", "version"], timeout=30
        ) is not None:
            self._command = ["docker", "compose"]
        else:
            raise OrchestrationError(
                "Could not find a docker compose command. Is Docker installed?"
            )

        log.info("compose_command_detected", command=" ".join(self._command))
        return self._command

    # ------------------------------------------------------------------
    # Post-update actions
    # ------------------------------------------------------------------

    async def migrate(self) -> None:
        """Apply database migrations inside the application service."""
        ok = await self.compose(
            "exec", "-T", self._service, "python", "manage.py", "migrate", "--noinput"
        )
        if ok is None:
            raise OrchestrationError("Database migrations failed")
        log.info("compose_migrations_applied", service=self._service)

    async def create_superuser(self, credentials: AdminCredentials) -> bool:
        """Create the admin account.

        Returns False when the command fails, which usually means the
        account already exists.  The password is handed over through the
        environment, never on the command line.
        """
        env = {ADMIN_PASSWORD_KEY: credentials.password.get_secret_value()}
        ok = await self.compose(
            "exec",
            "-T",
            "-e",
            ADMIN_PASSWORD_KEY,
            self._service,
            "python",
            "manage.py",
            "createsuperuser",
            f"--username={credentials.username}",
            f"--email={credentials.email}",
            "--noinput",
            env=env,
        )
        if ok is None:
            log.warning("compose_superuser_not_created", username=credentials.username)
            return False
        log.info("compose_superuser_created", username=credentials.username)
        return True

    async def rebuild_and_restart(self) -> None:
        ok = await self.compose("up", "-d", "--build", "--force-recreate")
        if ok is None:
            raise OrchestrationError("Failed to rebuild and restart containers")
        log.info("compose_restarted")

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def up(self) -> None:
        if await self.compose("up", "-d") is None:
            raise OrchestrationError("Failed to start containers")

    async def down(self) -> None:
        if await self.compose("down") is None:
            raise OrchestrationError("Failed to stop containers")

    async def ps(self) -> str:
        output = await self.compose("ps", timeout=60)
        if output is None:
            raise OrchestrationError("Failed to get container status")
        return output

    # ------------------------------------------------------------------
    # Subprocess helpers
    # ------------------------------------------------------------------

    async def compose(
        self,
        *args: str,
        timeout: int | None = None,
        env: dict[str, str] | None = None,
    ) -> str | None:
        """Run a compose subcommand and return stdout, or None on failure."""
        cmd = [*await self.command(), *args]
        return await self._run_cmd(cmd, timeout=timeout or self._timeout, env=env)

    async def _run_cmd(
        self,
        cmd: list[str],
        timeout: int = 120,
        env: dict[str, str] | None = None,
    ) -> str | None:
        """Run a command and return stdout, or None on failure."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._project_dir,
                env={**os.environ, **env} if env else None,
            )
        except OSError as exc:
            log.warning("compose_cmd_error", cmd=" ".join(cmd), error=str(exc))
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            log.warning("compose_cmd_timeout", cmd=" ".join(cmd), timeout=timeout)
            return None

        if proc.returncode != 0:
            log.warning(
                "compose_cmd_failed",
                cmd=" ".join(cmd),
                returncode=proc.returncode,
                stderr=stderr.decode(errors="replace")[:500],
            )
            return None

        return stdout.decode(errors="replace")
