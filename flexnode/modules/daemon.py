"""Long-running agent loop: status sampling, self-healing and spec refresh.

All three timers run on the calling thread. The loop sleeps on the cancel
token until the earliest deadline, so a signal stops it immediately.
"""
import logging
import time
from typing import Callable, Dict, Optional

from ..config import Config
from ..errors import BootstrapError
from ..utils import CancelToken, OperationCancelled
from .bootstrapper.bootstrapper import Bootstrapper
from .spec import ManagedClusterSpecCollector
from .status import StatusCollector, get_status_file_path, remove_status_file, write_status

logger = logging.getLogger(__name__)

STATUS_TASK = "status"
BOOTSTRAP_TASK = "bootstrap-check"
SPEC_TASK = "spec-refresh"


class DaemonLoop:

    def __init__(
        self,
        config: Config,
        token: CancelToken,
        agent_version: str,
        bootstrapper: Optional[Bootstrapper] = None,
        status_collector: Optional[StatusCollector] = None,
        spec_collector: Optional[ManagedClusterSpecCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.token = token
        self.bootstrapper = bootstrapper or Bootstrapper(config, token)
        self.status_collector = status_collector or StatusCollector(config, agent_version)
        self.spec_collector = spec_collector or ManagedClusterSpecCollector(config)
        self.clock = clock
        self.status_path = get_status_file_path(config)

        agent = config.agent
        self.intervals: Dict[str, float] = {
            STATUS_TASK: agent.status_interval,
            BOOTSTRAP_TASK: agent.bootstrap_check_interval,
            SPEC_TASK: agent.spec_refresh_interval,
        }
        self.tasks: Dict[str, Callable[[], None]] = {
            STATUS_TASK: self.update_status,
            BOOTSTRAP_TASK: self.check_and_bootstrap,
            SPEC_TASK: self.refresh_spec,
        }

    def run(self) -> None:
        """Run until the cancel token fires."""
        logger.info(f"🔄 Starting daemon (status every {self.intervals[STATUS_TASK]:.0f}s, "
                    f"bootstrap check every {self.intervals[BOOTSTRAP_TASK]:.0f}s, "
                    f"spec refresh every {self.intervals[SPEC_TASK]:.0f}s)")

        self.status_path.parent.mkdir(parents=True, exist_ok=True)
        # A status file from a previous run says nothing about the current state
        remove_status_file(self.status_path)

        try:
            self._run_task(STATUS_TASK)
            self._run_task(SPEC_TASK)

            start = self.clock()
            deadlines = {name: start + interval for name, interval in self.intervals.items()}
            while True:
                self.token.wait(max(0.0, min(deadlines.values()) - self.clock()))
                now = self.clock()
                for name in self.tasks:
                    if now >= deadlines[name]:
                        self._run_task(name)
                        deadlines[name] = self.clock() + self.intervals[name]
        except OperationCancelled:
            logger.info("Daemon stopping")

    def _run_task(self, name: str) -> None:
        try:
            self.tasks[name]()
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"❌ Daemon task {name} failed: {e}")

    def update_status(self) -> None:
        status = self.status_collector.collect_status()
        write_status(status, self.status_path)
        logger.debug(f"Status updated: kubelet running={status.kubelet_running} ready={status.kubelet_ready} "
                     f"arc connected={status.arc_status.connected}")

    def check_and_bootstrap(self) -> None:
        """Re-run build-up when the last status snapshot looks unhealthy."""
        if not self.status_collector.needs_bootstrap(self.status_path):
            return

        logger.info("🔧 Node needs bootstrap, starting self-healing")
        try:
            self.bootstrapper.bootstrap()
        except BootstrapError as e:
            logger.error(f"❌ Self-healing bootstrap failed: {e}")
            # Force the next check to start from a fresh sample
            remove_status_file(self.status_path)
            return
        logger.info("✅ Self-healing bootstrap completed")

    def refresh_spec(self) -> None:
        spec = self.spec_collector.collect()
        logger.info(f"Managed cluster spec refreshed (kubernetes {spec.current_kubernetes_version})")
