"""
Container lifecycle control.

ContainerController starts PostgreSQL containers, polls them until they
are healthy (or a RetryPolicy runs out), promotes standbys, and tears
down everything the run created. ComposeStack does the same for
``docker compose`` projects.

Every resource name comes from the run's RunIdentity; removal refuses
any name the identity does not own.
"""

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .config import POLL_INTERVALS, RetryPolicy, RunIdentity
from .log_helper import getLogger
from .models import ContainerState, HealthState, ServiceStatus
from .process import CommandResult, CommandRunner, run_command


log = getLogger("containers")

DEFAULT_PGDATA = "/var/lib/postgresql/data"
LOG_TAIL_LINES = 50

# Consecutive successful probes required when the image has no healthcheck.
# The server restarts once during first-time init, so one success is not enough.
REQUIRED_READY_SUCCESSES = 3

_INSPECT_FORMAT = (
    "{{.State.Status}}|"
    "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}"
)


class InfrastructureError(Exception):
    """
    The environment itself failed: a container never became healthy,
    docker is unreachable, a required command is missing.

    ``status`` is the last observed ServiceStatus and ``logs`` the
    container log tail, when they could be collected.
    """

    def __init__(
        self,
        message: str,
        status: Optional[ServiceStatus] = None,
        logs: str = "",
    ):
        self.message = message
        self.status = status
        self.logs = logs
        super().__init__(message)

    def __str__(self) -> str:
        text = self.message
        if self.logs:
            text += f"\n--- last {LOG_TAIL_LINES} log lines ---\n{self.logs.rstrip()}"
        return text


@dataclass
class ContainerSpec:
    """Everything needed for ``docker run``."""
    image: str
    name: str
    env: Dict[str, str] = field(default_factory=dict)
    volumes: Dict[str, str] = field(default_factory=dict)
    network: Optional[str] = None
    ports: List[str] = field(default_factory=list)
    memory: Optional[str] = None
    cpus: Optional[str] = None
    shm_size: Optional[str] = None
    command: List[str] = field(default_factory=list)

    def run_args(self, docker: str = "docker") -> List[str]:
        args = [docker, "run", "-d", "--name", self.name]
        for key, value in self.env.items():
            args += ["-e", f"{key}={value}"]
        for source, target in self.volumes.items():
            args += ["-v", f"{source}:{target}"]
        if self.network:
            args += ["--network", self.network]
        for port in self.ports:
            args += ["-p", port]
        if self.memory:
            args += ["--memory", self.memory]
        if self.cpus:
            args += ["--cpus", self.cpus]
        if self.shm_size:
            args += ["--shm-size", self.shm_size]
        args.append(self.image)
        args.extend(self.command)
        return args


@dataclass(frozen=True)
class ContainerHandle:
    name: str
    container_id: str = ""
    # False for containers the harness attached to but did not start
    owned: bool = True


def parse_inspect_output(output: str) -> ServiceStatus:
    """Parse the ``State.Status|Health.Status`` line written by inspect."""
    state_text, _, health_text = output.strip().partition("|")
    health_text = health_text.strip().lower()
    if health_text == "none" or not health_text:
        return ServiceStatus(
            health=HealthState.UNKNOWN,
            state=ContainerState.parse(state_text),
            has_healthcheck=False,
        )
    return ServiceStatus(
        health=HealthState.parse(health_text),
        state=ContainerState.parse(state_text),
    )


class ContainerController:
    """
    Drives containers through start -> poll -> healthy | failed -> removed.

    Args:
        identity: Names and owns every resource created
        runner: Command runner (run_command, or a fake in tests)
        sleep: Called between polls
        clock: Monotonic clock used for poll deadlines
    """

    def __init__(
        self,
        identity: RunIdentity,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        docker: str = "docker",
        postgres_user: str = "postgres",
    ):
        self.identity = identity
        self.runner = runner
        self.sleep = sleep
        self.clock = clock
        self.docker = docker
        self.postgres_user = postgres_user

        self._containers: List[str] = []
        self._volumes: List[str] = []
        self._networks: List[str] = []

    # -- starting and attaching ------------------------------------------

    def start(self, spec: ContainerSpec) -> ContainerHandle:
        """
        ``docker run -d`` the container. No readiness wait and no retry;
        call wait_until_healthy() next.
        """
        self._require_owned(spec.name, "container")
        # Recorded first: an interrupted or failed run can still leave it behind
        self._containers.append(spec.name)
        result = self.runner(spec.run_args(self.docker))
        if not result.success:
            raise InfrastructureError(
                f"Failed to start container {spec.name} from {spec.image}: "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        log.info("started container %s (%s)", spec.name, spec.image)
        return ContainerHandle(name=spec.name, container_id=result.stdout.strip())

    def attach(self, name: str) -> ContainerHandle:
        """Handle for an existing container. It is never removed by cleanup()."""
        status = self.inspect_status(name)
        if status.state is not ContainerState.RUNNING:
            raise InfrastructureError(
                f"Container '{name}' is not running ({status.describe()})",
                status=status,
            )
        return ContainerHandle(name=name, owned=False)

    # -- observation ------------------------------------------------------

    def inspect_status(self, handle) -> ServiceStatus:
        """Fresh ServiceStatus; unknown/unknown if docker can not say."""
        name = getattr(handle, "name", handle)
        result = self.runner([self.docker, "inspect", "-f", _INSPECT_FORMAT, name], timeout=10)
        if not result.success:
            return ServiceStatus(HealthState.UNKNOWN, ContainerState.UNKNOWN, has_healthcheck=False)
        return parse_inspect_output(result.stdout)

    def exec(
        self,
        handle: ContainerHandle,
        argv: Sequence[str],
        input_text: Optional[str] = None,
        user: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        args = [self.docker, "exec"]
        if input_text is not None:
            args.append("-i")
        if user:
            args += ["-u", user]
        args.append(handle.name)
        args.extend(argv)
        return self.runner(args, input_text=input_text, timeout=timeout)

    def logs(self, handle: ContainerHandle, tail: int = LOG_TAIL_LINES) -> str:
        result = self.runner(
            [self.docker, "logs", "--tail", str(tail), handle.name],
            merge_stderr=True,
            timeout=30,
        )
        return result.stdout

    def probe_ready(self, handle: ContainerHandle) -> bool:
        """A no-op query through the admin channel."""
        result = self.exec(
            handle,
            ["psql", "-X", "-U", self.postgres_user, "-tAc", "SELECT 1"],
            timeout=10,
        )
        return result.success and result.stdout.strip() == "1"

    # -- readiness state machine -----------------------------------------

    def wait_until_healthy(
        self,
        handle: ContainerHandle,
        policy: RetryPolicy,
        required_successes: int = REQUIRED_READY_SUCCESSES,
    ) -> ServiceStatus:
        """
        Poll until the container is healthy.

        With a native healthcheck the container is healthy once docker
        reports "healthy". Without one, ``required_successes`` consecutive
        admin probes must succeed.

        Raises:
            InfrastructureError: the policy ran out ("timeout"), or the
                container exited. Carries the last status and log tail.
        """
        start = self.clock()
        attempts = 0
        successes = 0
        status = ServiceStatus(HealthState.STARTING, ContainerState.UNKNOWN)

        while True:
            attempts += 1
            status = self.inspect_status(handle)

            if status.state is ContainerState.EXITED:
                raise InfrastructureError(
                    f"Container {handle.name} exited before becoming healthy "
                    f"(last {status.describe()})",
                    status=status,
                    logs=self.logs(handle),
                )

            if status.has_healthcheck:
                if status.health is HealthState.HEALTHY:
                    log.info("%s is healthy after %d poll(s)", handle.name, attempts)
                    return status
            elif status.state is ContainerState.RUNNING and self.probe_ready(handle):
                successes += 1
                if successes >= required_successes:
                    log.info("%s is ready after %d poll(s)", handle.name, attempts)
                    return ServiceStatus(HealthState.HEALTHY, status.state, has_healthcheck=False)
            else:
                successes = 0

            log.debug("%s not ready yet (%s)", handle.name, status.describe())
            if policy.exhausted(attempts, self.clock() - start):
                break
            self.sleep(policy.interval)

        logs = self.logs(handle)
        log.error("%s never became healthy (%s)", handle.name, status.describe())
        raise InfrastructureError(
            f"Container {handle.name} health check timeout after "
            f"{policy.total_timeout:.0f}s (last health: {status.health.value}, "
            f"state: {status.state.value})",
            status=status,
            logs=logs,
        )

    def promote(
        self,
        handle: ContainerHandle,
        policy: Optional[RetryPolicy] = None,
        pgdata: str = DEFAULT_PGDATA,
    ) -> None:
        """
        Promote a standby and wait until it leaves recovery.

        Failing to leave recovery within the policy is final; there is no
        second promote attempt.
        """
        policy = policy or RetryPolicy.for_category("promotion")
        result = self.exec(handle, ["pg_ctl", "promote", "-D", pgdata], user="postgres")
        if not result.success:
            raise InfrastructureError(
                f"pg_ctl promote failed on {handle.name}: {result.stderr.strip()}"
            )

        start = self.clock()
        attempts = 0
        in_recovery = "unknown"
        while True:
            attempts += 1
            check = self.exec(
                handle,
                ["psql", "-X", "-U", self.postgres_user, "-tAc", "SELECT pg_is_in_recovery();"],
                timeout=10,
            )
            if check.success:
                in_recovery = check.stdout.strip()
                if in_recovery == "f":
                    log.info("%s promoted after %d poll(s)", handle.name, attempts)
                    return
            log.debug("%s still in recovery (%s)", handle.name, in_recovery or "no answer")
            if policy.exhausted(attempts, self.clock() - start):
                break
            self.sleep(policy.interval)

        raise InfrastructureError(
            f"Promotion timeout on {handle.name}: still in recovery after "
            f"{policy.total_timeout:.0f}s (pg_is_in_recovery = {in_recovery})",
            status=self.inspect_status(handle),
            logs=self.logs(handle),
        )

    # -- stopping ---------------------------------------------------------

    def stop(self, handle: ContainerHandle, timeout: int = 10) -> bool:
        result = self.runner([self.docker, "stop", "-t", str(timeout), handle.name])
        return result.success

    def kill(self, handle: ContainerHandle) -> bool:
        """SIGKILL the container, e.g. to simulate a primary failure."""
        result = self.runner([self.docker, "kill", handle.name])
        return result.success

    def remove(self, name: str) -> bool:
        self._require_owned(name, "container")
        result = self.runner([self.docker, "rm", "-f", "-v", name])
        # Already gone counts as removed
        removed = result.success or "No such container" in result.stderr
        if removed and name in self._containers:
            self._containers.remove(name)
        return removed

    # -- networks and volumes --------------------------------------------

    def create_network(self, role: str = "net") -> str:
        name = self.identity.network_name(role)
        result = self.runner([self.docker, "network", "create", name])
        if not result.success:
            raise InfrastructureError(f"Failed to create network {name}: {result.stderr.strip()}")
        self._networks.append(name)
        return name

    def remove_network(self, name: str) -> bool:
        self._require_owned(name, "network")
        result = self.runner([self.docker, "network", "rm", name])
        if result.success and name in self._networks:
            self._networks.remove(name)
        return result.success

    def create_volume(self, role: str = "data") -> str:
        name = self.identity.volume_name(role)
        result = self.runner([self.docker, "volume", "create", name])
        if not result.success:
            raise InfrastructureError(f"Failed to create volume {name}: {result.stderr.strip()}")
        self._volumes.append(name)
        return name

    def remove_volume(self, name: str) -> bool:
        self._require_owned(name, "volume")
        result = self.runner([self.docker, "volume", "rm", "-f", name])
        if result.success and name in self._volumes:
            self._volumes.remove(name)
        return result.success

    # -- teardown -----------------------------------------------------------

    def cleanup(self) -> List[str]:
        """
        Remove every container, volume and network this controller created.

        Best effort: failures are logged as warnings and returned, never
        raised. Safe to call more than once.
        """
        failed: List[str] = []
        steps = (
            [(n, self.remove) for n in reversed(self._containers)]
            + [(n, self.remove_volume) for n in reversed(self._volumes)]
            + [(n, self.remove_network) for n in reversed(self._networks)]
        )
        for name, remove in steps:
            if not remove(name):
                log.warning("cleanup: could not remove %s", name)
                failed.append(name)
        return failed

    def leftovers(self) -> List[str]:
        """Containers of this run that still exist (running or not)."""
        result = self.runner([
            self.docker, "ps", "-a",
            "--filter", f"name={self.identity.tag}",
            "--format", "{{.Names}}",
        ])
        if not result.success:
            return []
        return [
            line.strip() for line in result.stdout.splitlines()
            if line.strip() and self.identity.owns(line.strip())
        ]

    def _require_owned(self, name: str, kind: str) -> None:
        if not self.identity.owns(name):
            raise ValueError(
                f"Refusing to manage {kind} '{name}': not created by run {self.identity.tag}"
            )


class ComposeStack:
    """
    A ``docker compose`` project named after the run identity.

    Used for multi-container topologies (primary/replica) defined in a
    compose file.
    """

    def __init__(
        self,
        compose_file: Path,
        identity: RunIdentity,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        env_file: Optional[Path] = None,
        docker: str = "docker",
    ):
        self.compose_file = Path(compose_file)
        self.identity = identity
        self.project = identity.name("stack")
        self.runner = runner
        self.sleep = sleep
        self.clock = clock
        self.env_file = env_file
        self.docker = docker
        self._up = False

    def _compose(self, *args: str) -> List[str]:
        argv = [self.docker, "compose", "-p", self.project, "-f", str(self.compose_file)]
        if self.env_file:
            argv += ["--env-file", str(self.env_file)]
        argv.extend(args)
        return argv

    def up(self, services: Sequence[str] = ()) -> None:
        result = self.runner(self._compose("up", "-d", *services), timeout=600)
        self._up = True
        if not result.success:
            raise InfrastructureError(
                f"docker compose up failed for {self.project}: {result.stderr.strip()}"
            )

    def down(self) -> bool:
        """Tear the project down including volumes. Logs instead of raising."""
        if not self._up:
            return True
        result = self.runner(self._compose("down", "-v", "--remove-orphans"), timeout=300)
        if not result.success:
            log.warning("cleanup: compose down failed for %s: %s", self.project, result.stderr.strip())
            return False
        self._up = False
        return True

    def service_status(self, service: str) -> ServiceStatus:
        result = self.runner(self._compose("ps", service, "--format", "json"), timeout=30)
        if not result.success or not result.stdout.strip():
            return ServiceStatus(HealthState.STARTING, ContainerState.UNKNOWN)
        record = _first_compose_record(result.stdout)
        if record is None:
            return ServiceStatus(HealthState.UNKNOWN, ContainerState.UNKNOWN)
        health = record.get("Health") or ""
        return ServiceStatus(
            health=HealthState.parse(health) if health else HealthState.STARTING,
            state=ContainerState.parse(record.get("State")),
            has_healthcheck=bool(health),
        )

    def wait_for_service(self, service: str, policy: Optional[RetryPolicy] = None) -> ServiceStatus:
        """Poll ``compose ps`` until *service* reports healthy."""
        policy = policy or RetryPolicy.for_category("complex", interval=POLL_INTERVALS["compose"])
        start = self.clock()
        attempts = 0
        status = ServiceStatus(HealthState.STARTING, ContainerState.UNKNOWN)
        while True:
            attempts += 1
            status = self.service_status(service)
            if status.health is HealthState.HEALTHY:
                return status
            if status.state is ContainerState.EXITED:
                break
            log.debug("%s/%s not healthy yet (%s)", self.project, service, status.describe())
            if policy.exhausted(attempts, self.clock() - start):
                break
            self.sleep(policy.interval)

        log.error("Last known health status for %s: %s", service, status.describe())
        logs = self.runner(self._compose("logs", "--tail", str(LOG_TAIL_LINES), service), merge_stderr=True)
        raise InfrastructureError(
            f"{service} health check timeout (last health: {status.health.value}, "
            f"state: {status.state.value})",
            status=status,
            logs=logs.stdout,
        )


def _first_compose_record(output: str) -> Optional[dict]:
    """``compose ps --format json`` prints an array or one object per line."""
    text = output.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
        for line in text.splitlines():
            try:
                data = json.loads(line)
                break
            except json.JSONDecodeError:
                continue
    if isinstance(data, list):
        return data[0] if data else None
    return data if isinstance(data, dict) else None


def check_docker_daemon(runner: CommandRunner = run_command, docker: str = "docker") -> bool:
    """True if the docker daemon answers."""
    result = runner([docker, "info", "--format", "{{.ServerVersion}}"], timeout=15)
    return result.success


def check_container_running(
    container_name: str,
    runner: CommandRunner = run_command,
    docker: str = "docker",
) -> bool:
    result = runner([docker, "inspect", "-f", "{{.State.Running}}", container_name], timeout=10)
    return result.success and "true" in result.stdout.lower()
