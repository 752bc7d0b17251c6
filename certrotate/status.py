"""Status file recording the last terminal state of a run or cycle."""

import json
import logging
import os
import tempfile

from certrotate.records import get_current_timestamp

logger = logging.getLogger(__name__)

STATE_IN_PROGRESS = "IN_PROGRESS"
STATE_SUCCESS = "SUCCESS"
STATE_FAILED = "FAILED"


def read_status(path):
    """Return the stored status dict, or an empty dict if absent or corrupt."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("Unreadable status file %s: %s", path, str(e))
        return {}
    return data if isinstance(data, dict) else {}


def write_status(path, state, message, run_id=None, check_interval=None):
    """Record ``state`` and keep running failure counters.

    ``consecutive_failures`` resets on SUCCESS and grows on FAILED, so an
    operator can tell how many scheduled retries a problem has survived.
    """
    previous = read_status(path)
    consecutive = int(previous.get("consecutive_failures", 0))
    total = int(previous.get("total_failures", 0))

    if state == STATE_FAILED:
        consecutive += 1
        total += 1
    elif state == STATE_SUCCESS:
        consecutive = 0

    status = {
        "state": state,
        "message": message,
        "timestamp": get_current_timestamp(),
        "run_id": run_id,
        "consecutive_failures": consecutive,
        "total_failures": total,
        "check_interval": check_interval,
    }

    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".status-")
        with os.fdopen(fd, "w") as f:
            json.dump(status, f, indent=2)
        os.replace(tmp_path, path)
    except OSError as e:
        logger.error("Failed to write status file %s: %s", path, str(e))
        return status

    logger.info("STATUS %s: %s", state, message)
    return status
