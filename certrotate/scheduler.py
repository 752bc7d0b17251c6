"""Run rotation cycles once or on an interval under a host-local lock."""

import fcntl
import logging
import os
import signal
import threading
from contextlib import contextmanager

from certrotate.errors import AlreadyRunningError, CertRotateError, ExitCode
from certrotate.status import STATE_FAILED, STATE_IN_PROGRESS, STATE_SUCCESS, write_status

logger = logging.getLogger(__name__)


@contextmanager
def file_lock(path):
    """Hold an exclusive, non-blocking lock on ``path``.

    Raises AlreadyRunningError when another process holds it. The lock is
    released when the file is closed, including when the holder dies.
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    lock_fd = open(path, "a+")
    try:
        try:
            fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise AlreadyRunningError(f"Another instance holds {path}") from None
        lock_fd.seek(0)
        lock_fd.truncate()
        lock_fd.write(str(os.getpid()))
        lock_fd.flush()
        yield
    finally:
        lock_fd.close()


class Scheduler:
    def __init__(self, settings, orchestrator_factory):
        """``orchestrator_factory`` builds a fresh orchestrator for every cycle."""
        self.settings = settings
        self.orchestrator_factory = orchestrator_factory
        self.stop_event = threading.Event()

    def _record(self, state, message, run_id=None):
        write_status(
            self.settings.status_file, state, message, run_id=run_id, check_interval=self.settings.check_interval
        )

    def execute_cycle(self):
        """Run one cycle and return ``(exit_code, message, run_id)``."""
        orchestrator = None
        try:
            orchestrator = self.orchestrator_factory()
            result = orchestrator.run_cycle()
        except CertRotateError as e:
            logger.error("Renewal cycle failed: %s", str(e))
            return e.exit_code, str(e), getattr(orchestrator, "run_id", None)
        except Exception as e:
            logger.error("Unexpected error during renewal cycle: %s", str(e), exc_info=True)
            return ExitCode.CONFIGURATION, str(e), getattr(orchestrator, "run_id", None)
        return ExitCode.SUCCESS, f"cycle finished: {result.outcome}", result.run_id

    def run_once(self):
        """One locked cycle. A held lock returns ALREADY_RUNNING at once."""
        try:
            with file_lock(self.settings.lock_file):
                self._record(STATE_IN_PROGRESS, "cycle started")
                code, message, run_id = self.execute_cycle()
                if code == ExitCode.SUCCESS:
                    self._record(STATE_SUCCESS, message, run_id=run_id)
                else:
                    self._record(STATE_FAILED, message, run_id=run_id)
                return code
        except AlreadyRunningError as e:
            logger.warning("Skipping cycle: %s", str(e))
            return e.exit_code

    def stop(self, signum=None, frame=None):
        if signum is not None:
            logger.info("Received signal %s, stopping after the current cycle", signum)
        self.stop_event.set()

    def run_forever(self, interval=None, install_signals=True):
        """Cycle until stopped. A failed cycle is retried on the next interval."""
        interval = interval or self.settings.check_interval
        if install_signals:
            signal.signal(signal.SIGTERM, self.stop)
            signal.signal(signal.SIGINT, self.stop)

        logger.info("Starting certificate manager daemon (interval %ss)", interval)
        while not self.stop_event.is_set():
            code = self.run_once()
            if code == ExitCode.ALREADY_RUNNING:
                logger.info("Another cycle is active, skipping this one")
            elif code != ExitCode.SUCCESS:
                logger.error("Cycle failed with exit code %d, next attempt in %ss", int(code), interval)
            else:
                logger.info("Next check in %ss", interval)
            if self.stop_event.wait(interval):
                break

        logger.info("Certificate manager daemon stopped")
        return ExitCode.SUCCESS
