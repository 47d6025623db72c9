"""Docker sandbox for the test runner's ``docker`` backend.

One container per test run: the cloned workspace is bind-mounted at
``/workspace``, dependencies declared at its root are installed while the
container still has network, then the network is cut and the test command
runs under coreutils ``timeout``.  The container is removed on every path.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container

logger = logging.getLogger(__name__)

WORKDIR = "/workspace"
CONTAINER_LABELS = {"managed-by": "selfheal-sandbox"}
EXEC_ENV = {"PYTHONDONTWRITEBYTECODE": "1", "CI": "true"}

# `timeout` exits 124 when it had to kill the command
TIMEOUT_EXIT_CODE = 124

# root manifest → install command, in install order
INSTALLERS: tuple[tuple[str, str], ...] = (
    ("requirements.txt", "pip install --no-cache-dir -r requirements.txt"),
    ("pyproject.toml", "pip install --no-cache-dir ."),
    ("setup.py", "pip install --no-cache-dir ."),
    ("package.json", "npm install --production=false"),
)
PYTEST_INSTALL = "pip install --no-cache-dir pytest"


@dataclass
class ExecutionResult:
    """Outcome of one containerised test command."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_s: float = 0.0
    install_log: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def install_plan(root_entries: list[str]) -> list[str]:
    """Install commands for the manifests present at the workspace root.

    Python projects also get pytest, since most of them run it without
    declaring it.
    """
    entries = set(root_entries)
    plan: list[str] = []
    for manifest, command in INSTALLERS:
        if manifest in entries and command not in plan:
            plan.append(command)

    python_project = any(c.startswith("pip") for c in plan) or any(e.endswith(".py") for e in entries)
    if python_project:
        plan.append(PYTEST_INSTALL)
    return plan


class SandboxExecutor:
    """Runs a workspace's test command inside a throwaway container."""

    def __init__(
        self,
        image: str = "python:3.11-slim",
        timeout: int = 300,
        memory_limit: str = "512m",
        cpu_limit: float = 1.0,
        network_disabled: bool = True,
        client: docker.DockerClient | None = None,
    ):
        self.image = image
        self.timeout = timeout
        self.memory_limit = memory_limit
        self.cpu_limit = cpu_limit
        self.network_disabled = network_disabled
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def run_tests(self, workspace: str, test_command: str, install_deps: bool = True) -> ExecutionResult:
        return await asyncio.to_thread(self._run, workspace, test_command, install_deps)

    def _run(self, workspace: str, test_command: str, install_deps: bool) -> ExecutionResult:
        started = time.monotonic()
        try:
            with self._container(workspace, keep_network=install_deps) as container:
                install_log = ""
                if install_deps:
                    install_log = self._install(container)
                    if self.network_disabled:
                        self._isolate(container)

                stdout, stderr, code = self._exec(
                    container, ["timeout", str(self.timeout), "sh", "-c", test_command]
                )
        except ImageNotFound:
            return self._failure(started, f"Docker image '{self.image}' not found")
        except APIError as exc:
            return self._failure(started, f"Docker API error: {exc.explanation}")
        except DockerException as exc:
            logger.warning("[Sandbox] Docker unavailable: %s", exc)
            return self._failure(started, f"Docker error: {exc}")

        return ExecutionResult(
            exit_code=code,
            stdout=stdout,
            stderr=stderr,
            timed_out=code == TIMEOUT_EXIT_CODE,
            duration_s=time.monotonic() - started,
            install_log=install_log,
        )

    @contextmanager
    def _container(self, workspace: str, keep_network: bool) -> Iterator[Container]:
        self._ensure_image()
        container = self.client.containers.create(
            image=self.image,
            command="sleep infinity",
            working_dir=WORKDIR,
            volumes={os.path.abspath(workspace): {"bind": WORKDIR, "mode": "rw"}},
            mem_limit=self.memory_limit,
            nano_cpus=int(self.cpu_limit * 1e9),
            network_disabled=self.network_disabled and not keep_network,
            labels=CONTAINER_LABELS,
            detach=True,
        )
        try:
            container.start()
            logger.info("[Sandbox] Container %s started (image=%s)", container.short_id, self.image)
            yield container
        finally:
            try:
                container.remove(force=True)
                logger.info("[Sandbox] Container %s removed", container.short_id)
            except NotFound:
                pass
            except DockerException as exc:
                logger.warning("[Sandbox] Could not remove container %s: %s", container.short_id, exc)

    def _ensure_image(self) -> None:
        try:
            self.client.images.get(self.image)
        except ImageNotFound:
            logger.info("[Sandbox] Pulling image %s", self.image)
            self.client.images.pull(self.image)

    @staticmethod
    def _exec(container: Container, cmd: list[str]) -> tuple[str, str, int]:
        result = container.exec_run(cmd=cmd, workdir=WORKDIR, demux=True, environment=EXEC_ENV)
        out, err = result.output or (None, None)
        return (
            (out or b"").decode("utf-8", errors="replace"),
            (err or b"").decode("utf-8", errors="replace"),
            result.exit_code,
        )

    def _install(self, container: Container) -> str:
        listing, _, _ = self._exec(container, ["ls", "-1", WORKDIR])
        plan = install_plan(listing.split())
        if not plan:
            logger.info("[Sandbox] Nothing to install")
            return ""

        script = " && ".join(plan)
        logger.info("[Sandbox] Installing dependencies: %s", script)
        stdout, stderr, code = self._exec(container, ["sh", "-c", script])
        if code != 0:
            # tests still run; import errors will show up as failures
            logger.warning("[Sandbox] Dependency install exited with code %d", code)
        return "\n".join(part for part in (stdout, stderr) if part)

    def _isolate(self, container: Container) -> None:
        """Disconnect from every network before the tests run."""
        try:
            container.reload()
            for name in container.attrs.get("NetworkSettings", {}).get("Networks", {}):
                self.client.networks.get(name).disconnect(container)
        except DockerException as exc:
            logger.warning("[Sandbox] Network isolation failed: %s", exc)

    @staticmethod
    def _failure(started: float, message: str) -> ExecutionResult:
        return ExecutionResult(exit_code=1, stdout="", stderr=message, duration_s=time.monotonic() - started)
