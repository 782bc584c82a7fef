"""
Container lifecycle: start, readiness polling, promotion, cleanup.

Covers:
- docker run arguments built from a ContainerSpec
- Readiness with and without a native healthcheck
- Consecutive-success requirement and counter reset
- Timeout errors carry "timeout", last health and the log tail
- Promotion polling
- Cleanup only touches names the run owns
- Compose service status parsing
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pgharness.config import RetryPolicy
from pgharness.containers import (
    ComposeStack,
    ContainerController,
    ContainerHandle,
    ContainerSpec,
    InfrastructureError,
    check_container_running,
    check_docker_daemon,
    parse_inspect_output,
)
from pgharness.models import ContainerState, HealthState

from conftest import reply


@pytest.fixture
def controller(identity, fake_docker, clock):
    return ContainerController(identity, runner=fake_docker, sleep=clock.sleep, clock=clock)


@pytest.fixture
def handle(identity):
    return ContainerHandle(name=identity.container_name())


# ---------------------------------------------------------------------------
# Starting
# ---------------------------------------------------------------------------


class TestStart:

    def test_run_args(self):
        spec = ContainerSpec(
            image="example/pg:18",
            name="pgharness-1-2-pg",
            env={"POSTGRES_PASSWORD": "pw"},
            volumes={"vol": "/var/lib/postgresql/data"},
            ports=["5432"],
            memory="2g",
        )
        assert spec.run_args() == [
            "docker", "run", "-d", "--name", "pgharness-1-2-pg",
            "-e", "POSTGRES_PASSWORD=pw",
            "-v", "vol:/var/lib/postgresql/data",
            "-p", "5432",
            "--memory", "2g",
            "example/pg:18",
        ]

    def test_start_returns_handle(self, controller, fake_docker, identity):
        fake_docker.on(["run"], reply("abc123\n"))
        handle = controller.start(ContainerSpec(image="img", name=identity.container_name()))
        assert handle.container_id == "abc123"
        assert handle.owned

    def test_start_failure_raises_once(self, controller, fake_docker, identity):
        fake_docker.on(["run"], reply(stderr="pull access denied", exit_code=125))
        with pytest.raises(InfrastructureError, match="pull access denied"):
            controller.start(ContainerSpec(image="img", name=identity.container_name()))
        assert len(fake_docker.commands("run")) == 1, "start must not retry"

    def test_start_refuses_foreign_name(self, controller):
        with pytest.raises(ValueError, match="Refusing"):
            controller.start(ContainerSpec(image="img", name="somebody-elses-db"))

    def test_attach_requires_running(self, controller, fake_docker):
        fake_docker.on(["inspect"], reply("exited|none"))
        with pytest.raises(InfrastructureError, match="not running"):
            controller.attach("dev-db")

    def test_attached_container_not_owned(self, controller, fake_docker):
        fake_docker.on(["inspect"], reply("running|healthy"))
        handle = controller.attach("dev-db")
        assert not handle.owned
        assert controller.cleanup() == []
        assert fake_docker.commands("rm") == []


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestReadiness:

    def test_parse_inspect_output(self):
        status = parse_inspect_output("running|starting\n")
        assert status.health is HealthState.STARTING
        assert status.state is ContainerState.RUNNING
        assert status.has_healthcheck

        no_check = parse_inspect_output("running|none")
        assert not no_check.has_healthcheck
        assert no_check.describe() == "health=none, state=running"

    def test_native_healthcheck(self, controller, fake_docker, clock, handle):
        fake_docker.on(
            ["inspect"],
            reply("running|starting"),
            reply("running|starting"),
            reply("running|healthy"),
        )
        status = controller.wait_until_healthy(handle, RetryPolicy(interval=1.0, total_timeout=30))
        assert status.health is HealthState.HEALTHY
        assert clock.sleeps == [1.0, 1.0]
        assert fake_docker.commands("psql") == [], "no probes when docker reports health"

    def test_probe_needs_consecutive_successes(self, controller, fake_docker, clock, handle):
        fake_docker.on(["inspect"], reply("running|none"))
        fake_docker.on(
            ["psql"],
            reply("1"),
            reply(stderr="the database system is starting up", exit_code=2),
            reply("1"),
            reply("1"),
            reply("1"),
        )
        status = controller.wait_until_healthy(handle, RetryPolicy(interval=1.0, total_timeout=30))
        assert status.health is HealthState.HEALTHY
        # success, failure (reset), then three in a row
        assert len(fake_docker.commands("psql")) == 5

    def test_timeout_reports_last_health_and_logs(self, controller, fake_docker, clock, handle):
        fake_docker.on(["inspect"], reply("running|starting"))
        fake_docker.on(["logs"], reply("FATAL: could not load library \"timescaledb\"\n"))
        with pytest.raises(InfrastructureError) as exc:
            controller.wait_until_healthy(handle, RetryPolicy(interval=1.0, total_timeout=5))

        err = exc.value
        assert "timeout" in err.message
        assert "last health: starting" in err.message
        assert err.status.health is HealthState.STARTING
        assert "could not load library" in err.logs
        assert "could not load library" in str(err)
        assert clock.now == 5.0

    def test_max_attempts_caps_polling(self, controller, fake_docker, handle):
        fake_docker.on(["inspect"], reply("running|unhealthy"))
        with pytest.raises(InfrastructureError, match="timeout"):
            controller.wait_until_healthy(
                handle, RetryPolicy(interval=1.0, total_timeout=999, max_attempts=3),
            )
        assert len(fake_docker.commands("inspect")) == 3

    def test_exited_container_fails_fast(self, controller, fake_docker, clock, handle):
        fake_docker.on(["inspect"], reply("exited|none"))
        with pytest.raises(InfrastructureError, match="exited") as exc:
            controller.wait_until_healthy(handle, RetryPolicy(interval=1.0, total_timeout=60))
        assert exc.value.status.state is ContainerState.EXITED
        assert clock.sleeps == []

    def test_docker_inspect_failure_is_unknown(self, controller, fake_docker, handle):
        fake_docker.on(["inspect"], reply(stderr="No such object", exit_code=1))
        status = controller.inspect_status(handle)
        assert status.state is ContainerState.UNKNOWN
        assert status.health is HealthState.UNKNOWN


# ---------------------------------------------------------------------------
# Exec, promotion
# ---------------------------------------------------------------------------


class TestExecAndPromote:

    def test_exec_with_input(self, controller, fake_docker, handle):
        controller.exec(handle, ["psql", "-f", "-"], input_text="SELECT 1;", user="postgres")
        call = fake_docker.calls[-1]
        assert call["argv"] == ("docker", "exec", "-i", "-u", "postgres", handle.name, "psql", "-f", "-")
        assert call["input_text"] == "SELECT 1;"

    def test_promote(self, controller, fake_docker, clock, handle):
        fake_docker.on(["SELECT pg_is_in_recovery();"], reply("t"), reply("t"), reply("f"))
        controller.promote(handle, RetryPolicy(interval=1.0, total_timeout=60))
        promote = fake_docker.commands("pg_ctl", "promote")
        assert promote == [(
            "docker", "exec", "-u", "postgres", handle.name,
            "pg_ctl", "promote", "-D", "/var/lib/postgresql/data",
        )]
        assert clock.sleeps == [1.0, 1.0]

    def test_promote_timeout(self, controller, fake_docker, handle):
        fake_docker.on(["SELECT pg_is_in_recovery();"], reply("t"))
        fake_docker.on(["inspect"], reply("running|healthy"))
        with pytest.raises(InfrastructureError) as exc:
            controller.promote(handle, RetryPolicy(interval=1.0, total_timeout=3))
        assert "Promotion timeout" in exc.value.message
        assert "pg_is_in_recovery = t" in exc.value.message

    def test_promote_command_failure(self, controller, fake_docker, handle):
        fake_docker.on(["pg_ctl"], reply(stderr="server is not in standby mode", exit_code=1))
        with pytest.raises(InfrastructureError, match="not in standby mode"):
            controller.promote(handle)

    def test_stop_and_kill(self, controller, fake_docker, handle):
        fake_docker.on(["kill"], reply(stderr="No such container", exit_code=1))
        assert controller.stop(handle, timeout=5)
        assert not controller.kill(handle)
        assert fake_docker.commands("stop") == [("docker", "stop", "-t", "5", handle.name)]
        assert fake_docker.commands("kill") == [("docker", "kill", handle.name)]


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class TestCleanup:

    def test_cleanup_removes_everything_created(self, controller, fake_docker, identity):
        controller.start(ContainerSpec(image="img", name=identity.container_name()))
        volume = controller.create_volume()
        network = controller.create_network()

        assert controller.cleanup() == []
        assert fake_docker.commands("rm", "-f", "-v", identity.container_name())
        assert fake_docker.commands("volume", "rm", volume)
        assert fake_docker.commands("network", "rm", network)

    def test_cleanup_is_best_effort(self, controller, fake_docker, identity):
        controller.start(ContainerSpec(image="img", name=identity.container_name("a")))
        controller.start(ContainerSpec(image="img", name=identity.container_name("b")))
        fake_docker.on(["rm", identity.container_name("b")], reply(stderr="busy", exit_code=1))

        failed = controller.cleanup()
        assert failed == [identity.container_name("b")]
        assert fake_docker.commands("rm", identity.container_name("a")), "kept going after a failure"

    def test_interrupted_start_is_still_cleaned_up(self, identity, fake_docker):
        name = identity.container_name()

        def interrupted(argv, **kwargs):
            if "run" in argv:
                raise KeyboardInterrupt
            return fake_docker(argv, **kwargs)

        controller = ContainerController(identity, runner=interrupted)
        with pytest.raises(KeyboardInterrupt):
            controller.start(ContainerSpec(image="img", name=name))

        assert controller.cleanup() == []
        assert fake_docker.commands("rm", "-f", "-v", name), "container named before docker run returned"

    def test_failed_start_cleanup_tolerates_missing_container(self, controller, fake_docker, identity):
        name = identity.container_name()
        fake_docker.on(["run"], reply(stderr="pull access denied", exit_code=125))
        fake_docker.on(["rm", name], reply(stderr=f"Error response from daemon: No such container: {name}", exit_code=1))
        with pytest.raises(InfrastructureError):
            controller.start(ContainerSpec(image="img", name=name))

        assert controller.cleanup() == []
        assert len(fake_docker.commands("rm", name)) == 1

    def test_cleanup_twice_is_harmless(self, controller, fake_docker, identity):
        controller.start(ContainerSpec(image="img", name=identity.container_name()))
        controller.cleanup()
        controller.cleanup()
        assert len(fake_docker.commands("rm")) == 1

    def test_remove_refuses_foreign_names(self, controller, fake_docker):
        with pytest.raises(ValueError):
            controller.remove("production-db")
        with pytest.raises(ValueError):
            controller.remove_volume("pgdata")
        assert fake_docker.calls == []

    def test_leftovers_filters_to_owned(self, controller, fake_docker, identity):
        fake_docker.on(["ps"], reply(f"{identity.container_name()}\nunrelated\n"))
        assert controller.leftovers() == [identity.container_name()]


# ---------------------------------------------------------------------------
# Compose and environment checks
# ---------------------------------------------------------------------------


class TestCompose:

    @pytest.fixture
    def stack(self, identity, fake_docker, clock):
        return ComposeStack(Path("compose.yml"), identity, runner=fake_docker, sleep=clock.sleep, clock=clock)

    def test_project_named_after_run(self, stack, fake_docker, identity):
        stack.up(["primary"])
        argv = fake_docker.calls[-1]["argv"]
        assert argv[:6] == ("docker", "compose", "-p", identity.name("stack"), "-f", "compose.yml")
        assert argv[-3:] == ("up", "-d", "primary")

    def test_service_status_json_lines(self, stack, fake_docker):
        fake_docker.on(["ps"], reply('{"Service":"primary","State":"running","Health":"healthy"}\n'))
        status = stack.service_status("primary")
        assert status.health is HealthState.HEALTHY
        assert status.state is ContainerState.RUNNING

    def test_service_status_json_array(self, stack, fake_docker):
        fake_docker.on(["ps"], reply('[{"State":"running","Health":""}]'))
        status = stack.service_status("replica")
        assert status.health is HealthState.STARTING
        assert not status.has_healthcheck

    def test_wait_for_service_timeout(self, stack, fake_docker, clock):
        fake_docker.on(["ps"], reply('{"State":"running","Health":"starting"}'))
        fake_docker.on(["logs"], reply("replica waiting for primary"))
        with pytest.raises(InfrastructureError) as exc:
            stack.wait_for_service("replica", RetryPolicy(interval=5.0, total_timeout=20))
        assert "replica health check timeout" in exc.value.message
        assert "last health: starting" in exc.value.message
        assert exc.value.logs == "replica waiting for primary"
        assert clock.sleeps == [5.0, 5.0, 5.0, 5.0]

    def test_down_only_after_up(self, stack, fake_docker):
        assert stack.down()
        assert fake_docker.calls == []
        stack.up()
        assert stack.down()
        assert fake_docker.commands("down", "-v", "--remove-orphans")


def test_environment_checks(fake_docker):
    fake_docker.on(["info"], reply("27.0.1"))
    fake_docker.on(["inspect"], reply("true\n"))
    assert check_docker_daemon(fake_docker)
    assert check_container_running("dev-db", fake_docker)


def test_environment_checks_fail(fake_docker):
    fake_docker.on(["info"], reply(exit_code=1))
    fake_docker.on(["inspect"], reply("false\n"))
    assert not check_docker_daemon(fake_docker)
    assert not check_container_running("dev-db", fake_docker)
