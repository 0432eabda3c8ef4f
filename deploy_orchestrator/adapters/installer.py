"""Artifact installer that shells out to a deployment command."""

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
from typing import Sequence

from deploy_orchestrator.application.ports import ArtifactInstaller
from deploy_orchestrator.errors import InstallError
from deploy_orchestrator.models import Target

logger = logging.getLogger(__name__)


class CommandInstaller(ArtifactInstaller):
    """Runs a command template such as ``deploy.sh {address} {artifact}``.

    Placeholders ``{target}``, ``{address}``, ``{port}`` and ``{artifact}``
    are substituted per call. A non-zero exit raises :class:`InstallError`.
    """

    def __init__(self, command: str | Sequence[str], *, timeout_seconds: float = 300):
        self._template = shlex.split(command) if isinstance(command, str) else list(command)
        if not self._template:
            raise ValueError("Install command must not be empty")
        self._timeout = timeout_seconds

    def render(self, target: Target, artifact: str) -> list[str]:
        values = {
            "target": target.id,
            "address": target.address,
            "port": str(target.port),
            "artifact": artifact,
        }
        return [part.format(**values) for part in self._template]

    async def install(self, target: Target, artifact: str) -> None:
        command = self.render(target, artifact)
        await asyncio.to_thread(self._run, target, command)

    def _run(self, target: Target, command: list[str]) -> None:
        logger.debug("Running command: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            logger.error("Install on %s failed: %s", target.id, stderr)
            raise InstallError(target.id, stderr or f"exit status {exc.returncode}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InstallError(target.id, f"install timed out after {self._timeout}s") from exc
        except OSError as exc:
            raise InstallError(target.id, str(exc)) from exc
        if result.stdout:
            logger.debug("install output for %s: %s", target.id, result.stdout.strip())
