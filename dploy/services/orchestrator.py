from __future__ import annotations

import asyncio
import subprocess
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol

from dploy.config import Settings
from dploy.errors import (
    OrchestratorConflictError,
    OrchestratorError,
    OrchestratorUnavailableError,
)
from dploy.logger import get_logger
from dploy.metrics import record_orchestrator_operation
from dploy.utils import sanitize_label

_logger = get_logger("services.orchestrator")

TOKEN_ENV = "BACKPLANE_TOKEN"
LABELS_ENV = "BACKPLANE_LABELS"
LABEL_PREFIX = "dploy"
_SECRET_ENV = (f"{TOKEN_ENV}=",)


class ServiceOrchestrator(Protocol):
    async def create_replicated_service(
        self,
        name: str,
        image: str,
        replica_count: int,
        env: Mapping[str, str],
        labels: Mapping[str, str],
    ) -> str: ...


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str
    replicas: int
    env: dict[str, str]
    labels: dict[str, str]


def service_name(service: str, version: str) -> str:
    name = sanitize_label(f"{service}-{version}")
    if not name:
        raise OrchestratorError(
            "service.name",
            f"cannot derive a name from {service!r}/{version!r}",
        )
    return name


def labels_descriptor(service: str, version: str, endpoint: str) -> str:
    return f"service:{service} version:{version} endpoint:{endpoint}"


def build_service_spec(
    *,
    service: str,
    version: str,
    endpoint: str,
    image: str,
    replicas: int,
    token: str,
) -> ServiceSpec:
    if not image.strip():
        raise OrchestratorError("service.spec", "image is required")
    if replicas < 1:
        raise OrchestratorError("service.spec", "replica count must be at least 1")
    return ServiceSpec(
        name=service_name(service, version),
        image=image.strip(),
        replicas=replicas,
        env={
            TOKEN_ENV: token,
            LABELS_ENV: labels_descriptor(service, version, endpoint),
        },
        labels={
            f"{LABEL_PREFIX}/service": service,
            f"{LABEL_PREFIX}/endpoint": endpoint,
            f"{LABEL_PREFIX}/version": version,
        },
    )


def _loggable(args: Iterable[str]) -> str:
    out: list[str] = []
    for arg in args:
        for prefix in _SECRET_ENV:
            if arg.startswith(prefix):
                arg = prefix + "***"
        out.append(arg)
    return " ".join(out)


class DockerOrchestrator:
    """Creates swarm services through the ``docker`` CLI."""

    def __init__(self, command: str = "docker", timeout_seconds: int = 60) -> None:
        self._command = command
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "DockerOrchestrator":
        return cls(settings.docker_command, settings.docker_timeout_seconds)

    def _run(self, args: tuple[str, ...], timeout_seconds: int) -> tuple[int, str, str]:
        cmd = [self._command, *args]
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            raise OrchestratorUnavailableError("docker.command", str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            detail = f"timed out after {timeout_seconds}s"
            raise OrchestratorError("docker.command", detail) from exc
        return proc.returncode, proc.stdout.strip(), proc.stderr.strip()

    async def _run_checked(self, *, args: Iterable[str], action: str) -> str:
        arg_list = tuple(args)
        code, out, err = await asyncio.to_thread(self._run, arg_list, self._timeout_seconds)
        if code != 0:
            record_orchestrator_operation(action=action, ok=False)
            _logger.warning(
                "docker.command.fail",
                "Docker command failed",
                action=action,
                args=_loggable(arg_list),
                exit_code=code,
                stderr=err,
            )
            detail = err or out or f"exit_{code}"
            if "already exists" in detail.lower():
                raise OrchestratorConflictError(action, detail)
            raise OrchestratorError(action, detail)
        record_orchestrator_operation(action=action, ok=True)
        _logger.debug(
            "docker.command.ok",
            "Docker command succeeded",
            action=action,
            args=_loggable(arg_list),
        )
        return out

    async def create_replicated_service(
        self,
        name: str,
        image: str,
        replica_count: int,
        env: Mapping[str, str],
        labels: Mapping[str, str],
    ) -> str:
        async with _logger.operation(
            "service.create",
            "Creating replicated service",
            service=name,
            image=image,
            replicas=replica_count,
        ) as op:
            cmd = [
                "service",
                "create",
                "--detach",
                "--quiet",
                "--name",
                name,
                "--replicas",
                str(replica_count),
            ]
            for key, value in labels.items():
                cmd.extend(["--label", f"{key}={value}"])
                op.child("service.labels", key, "Added service label", value=value)
            for key, value in env.items():
                cmd.extend(["--env", f"{key}={value}"])
                op.child("service.env", key, "Injected environment variable")
            cmd.append(image)

            out = await self._run_checked(args=cmd, action="service.create")
            service_id = out.splitlines()[-1].strip() if out else ""
            if not service_id:
                raise OrchestratorError("service.create", "docker did not print a service ID")
            op.step("service.created", "Created service", service_id=service_id)
            return service_id
