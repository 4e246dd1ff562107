"""Tests for the main process supervisor, using real child processes."""

import asyncio

import pytest

from degu.errors import InvalidTransition
from degu.options import DeguOptions
from degu.process import COMMAND_NOT_FOUND, TRANSITIONS, LifecycleState, Supervisor, exit_status

from .conftest import python_cmd, wait_until

SLEEPER = python_cmd("import time; time.sleep(60)")


@pytest.fixture
async def make_supervisor(app_dir):
    """Factory for supervisors that are exited and cleaned up after the test."""
    created = []

    def factory(main, steps=(), stop_timeout=2.0, **options):
        app_dir.mkdir(exist_ok=True)
        supervisor = Supervisor(
            app_dir,
            DeguOptions(main=main, steps=list(steps), **options),
            restart_delay=0.1,
            stop_timeout=stop_timeout,
        )
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        await supervisor.request_exit(0)
        await asyncio.wait_for(supervisor.wait(), 10)
        await supervisor.close()


async def finish(supervisor: Supervisor) -> int:
    return await asyncio.wait_for(supervisor.wait(), 10)


class TestExitStatus:
    def test_plain_code(self):
        assert exit_status(0) == 0
        assert exit_status(3) == 3

    def test_signal(self):
        assert exit_status(-15) == 143
        assert exit_status(-9) == 137


class TestTransitions:
    def test_stopping_only_leads_to_stopped(self):
        assert TRANSITIONS[LifecycleState.STOPPING] == {LifecycleState.STOPPED}

    def test_invalid_transition_raises(self, app_dir):
        supervisor = Supervisor(app_dir, DeguOptions(main=["true"]))
        with pytest.raises(InvalidTransition):
            supervisor._transition(LifecycleState.RUNNING)
        assert supervisor.state is LifecycleState.STOPPED


class TestStart:
    """Tests for steps and the main process."""

    async def test_exit_code_mirrored(self, make_supervisor):
        supervisor = make_supervisor(python_cmd("import sys; sys.exit(3)"))
        await supervisor.start()

        assert await finish(supervisor) == 3
        assert supervisor.state is LifecycleState.STOPPED
        assert supervisor.spawn_count == 1

    async def test_killed_by_signal(self, make_supervisor):
        supervisor = make_supervisor(python_cmd("import os, signal; os.kill(os.getpid(), signal.SIGKILL)"))
        await supervisor.start()
        assert await finish(supervisor) == 137

    async def test_step_failure_skips_main(self, make_supervisor):
        supervisor = make_supervisor(
            python_cmd("pass"),
            steps=[python_cmd("pass"), python_cmd("import sys; sys.exit(4)"), python_cmd("pass")],
        )
        await supervisor.start()

        assert await finish(supervisor) == 4
        assert supervisor.spawn_count == 0

    async def test_missing_step_binary(self, make_supervisor):
        supervisor = make_supervisor(python_cmd("pass"), steps=[["degu-test-no-such-binary"]])
        await supervisor.start()
        assert await finish(supervisor) == COMMAND_NOT_FOUND

    async def test_missing_main_binary(self, make_supervisor):
        supervisor = make_supervisor(["degu-test-no-such-binary"])
        await supervisor.start()
        assert await finish(supervisor) == COMMAND_NOT_FOUND

    async def test_env_and_cwd(self, make_supervisor, app_dir):
        supervisor = make_supervisor(
            python_cmd("import os, sys; sys.exit(0 if os.environ['GREETING'] == 'hello' else 9)"),
            steps=[python_cmd("import os; open('step.txt', 'w').write(os.environ['GREETING'])")],
            env={"GREETING": "hello"},
        )
        await supervisor.start()

        assert await finish(supervisor) == 0
        assert (app_dir / "step.txt").read_text() == "hello"

    async def test_snapshot(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.start()

        snapshot = supervisor.snapshot()
        assert snapshot["state"] == "running"
        assert snapshot["process"]["pid"] == supervisor.process.pid
        assert snapshot["restartCount"] == 0
        assert snapshot["exitCode"] is None


class TestRestart:
    """Tests for restart requests and crash restarts."""

    async def test_restart_replaces_process(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.start()
        first = supervisor.process

        assert await supervisor.request_restart() is True
        await wait_until(lambda: supervisor.spawn_count == 2 and supervisor.state is LifecycleState.RUNNING)

        assert first.reaped
        assert supervisor.process is not first
        assert supervisor.restart_count == 1

    async def test_concurrent_restarts_coalesce(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.start()

        results = await asyncio.gather(*(supervisor.request_restart() for _ in range(3)))
        assert results == [True, False, False]

        await wait_until(lambda: supervisor.state is LifecycleState.RUNNING)
        await asyncio.sleep(0.3)
        assert supervisor.spawn_count == 2

    async def test_restart_when_not_running(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        assert await supervisor.request_restart() is False
        assert supervisor.state is LifecycleState.STOPPED

    async def test_exit_wins_over_restart(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.start()

        assert await supervisor.request_restart() is True
        await supervisor.request_exit(5)

        assert await finish(supervisor) == 5
        assert supervisor.spawn_count == 1
        assert await supervisor.request_restart() is False

    async def test_forever_restarts_on_failure(self, make_supervisor):
        supervisor = make_supervisor(python_cmd("import sys; sys.exit(1)"), forever=True)
        await supervisor.start()

        await wait_until(lambda: supervisor.spawn_count >= 3)
        assert not supervisor.finished
        await supervisor.request_exit(0)

        assert await finish(supervisor) == 0
        assert supervisor.restart_count >= 2

    async def test_forever_stops_on_success(self, make_supervisor):
        supervisor = make_supervisor(python_cmd("pass"), forever=True)
        await supervisor.start()

        assert await finish(supervisor) == 0
        assert supervisor.spawn_count == 1


class TestExit:
    """Tests for exit requests."""

    async def test_exit_before_start(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.request_exit(2)

        assert supervisor.finished
        assert supervisor.result == 2
        await supervisor.start()
        assert supervisor.spawn_count == 0

    async def test_exit_stops_running_process(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.start()
        process = supervisor.process

        await supervisor.request_exit(0)
        assert supervisor.state is LifecycleState.STOPPING

        assert await finish(supervisor) == 0
        assert process.reaped

    async def test_first_exit_wins(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER)
        await supervisor.start()

        await supervisor.request_exit(3)
        await supervisor.request_exit(7)
        assert await finish(supervisor) == 3

    async def test_exit_during_steps(self, make_supervisor):
        supervisor = make_supervisor(SLEEPER, steps=[python_cmd("import time; time.sleep(0.5)")])
        start = asyncio.create_task(supervisor.start())
        await wait_until(lambda: supervisor.state is LifecycleState.STARTING)

        await supervisor.request_exit(0)
        assert supervisor.state is LifecycleState.STOPPING
        await start

        assert await finish(supervisor) == 0
        assert supervisor.spawn_count == 0

    async def test_kill_after_timeout(self, make_supervisor, app_dir):
        supervisor = make_supervisor(
            python_cmd(
                "import signal, time\n"
                "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                "open('ready', 'w').close()\n"
                "time.sleep(60)"
            ),
            stop_timeout=0.5,
        )
        await supervisor.start()
        await wait_until(lambda: (app_dir / "ready").exists())

        await supervisor.request_exit(0)
        assert await finish(supervisor) == 0
