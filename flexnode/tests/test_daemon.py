from unittest import mock

import pytest

from flexnode.errors import BootstrapError
from flexnode.modules.bootstrapper import ExecutionResult
from flexnode.modules.daemon import DaemonLoop
from flexnode.modules.status import get_status_file_path
from flexnode.utils import CancelToken, OperationCancelled


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SteppingToken(CancelToken):
    """Advances a fake clock instead of sleeping and cancels after ``max_waits`` waits."""

    def __init__(self, clock: FakeClock, max_waits: int):
        super().__init__()
        self.clock = clock
        self.max_waits = max_waits
        self.waits = []

    def wait(self, seconds: float) -> None:
        self.waits.append(seconds)
        if len(self.waits) > self.max_waits:
            self.cancel()
        self.raise_if_cancelled()
        self.clock.now += seconds


def make_daemon(config, token, clock, needs_bootstrap=False, bootstrap_error=None):
    status_collector = mock.Mock()
    status_collector.collect_status.return_value.to_json.return_value = "{}"
    status_collector.needs_bootstrap.return_value = needs_bootstrap
    bootstrapper = mock.Mock()
    if bootstrap_error:
        bootstrapper.bootstrap.side_effect = bootstrap_error
    else:
        bootstrapper.bootstrap.return_value = ExecutionResult(success=True, step_count=10)
    spec_collector = mock.Mock()
    return DaemonLoop(
        config,
        token,
        agent_version="0.1.0",
        bootstrapper=bootstrapper,
        status_collector=status_collector,
        spec_collector=spec_collector,
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


def test_startup_removes_stale_status_file(config, clock):
    status_path = get_status_file_path(config)
    status_path.parent.mkdir(parents=True)
    status_path.write_text('{"kubeletRunning": true}')
    token = SteppingToken(clock, max_waits=0)
    daemon = make_daemon(config, token, clock)

    with mock.patch("flexnode.modules.daemon.write_status") as write_status:
        daemon.run()

    assert not status_path.exists()
    write_status.assert_called_once()
    daemon.spec_collector.collect.assert_called_once()


def test_timers_fire_on_their_intervals(config, clock):
    # One hour of simulated time: 60 status ticks, 30 bootstrap checks, 2 spec refreshes
    token = SteppingToken(clock, max_waits=60)
    daemon = make_daemon(config, token, clock)

    with mock.patch("flexnode.modules.daemon.write_status"):
        daemon.run()

    assert daemon.status_collector.collect_status.call_count == 1 + 60
    assert daemon.status_collector.needs_bootstrap.call_count == 30
    assert daemon.spec_collector.collect.call_count == 1 + 2
    assert all(wait == 60 for wait in token.waits[:-1])


def test_unhealthy_node_triggers_bootstrap(config, clock):
    token = SteppingToken(clock, max_waits=2)
    daemon = make_daemon(config, token, clock, needs_bootstrap=True)

    with mock.patch("flexnode.modules.daemon.write_status"):
        daemon.run()

    daemon.bootstrapper.bootstrap.assert_called_once()


def test_failed_self_heal_removes_status_file(config, clock):
    token = SteppingToken(clock, max_waits=2)
    daemon = make_daemon(config, token, clock, needs_bootstrap=True,
                         bootstrap_error=BootstrapError("bootstrap failed at step ArcInstall: boom"))

    with mock.patch("flexnode.modules.daemon.write_status"), \
            mock.patch("flexnode.modules.daemon.remove_status_file") as remove_status_file:
        daemon.run()

    # Once at startup and once after the failed bootstrap
    assert remove_status_file.call_count == 2


def test_task_errors_do_not_stop_the_loop(config, clock):
    token = SteppingToken(clock, max_waits=3)
    daemon = make_daemon(config, token, clock)
    daemon.spec_collector.collect.side_effect = RuntimeError("ARM unavailable")
    daemon.status_collector.collect_status.side_effect = RuntimeError("systemctl missing")

    daemon.run()

    assert daemon.status_collector.collect_status.call_count == 4


def test_cancellation_during_bootstrap_ends_loop(config, clock):
    token = SteppingToken(clock, max_waits=5)
    daemon = make_daemon(config, token, clock, needs_bootstrap=True,
                         bootstrap_error=OperationCancelled("operation cancelled"))

    with mock.patch("flexnode.modules.daemon.write_status"):
        daemon.run()

    daemon.bootstrapper.bootstrap.assert_called_once()
