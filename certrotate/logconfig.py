import logging
import os
import sys

DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "[ %(asctime)s ] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_file=None, log_level=None):
    """Log to stderr and, when possible, to ``log_file``.

    ``LOG_LEVEL`` from the environment applies unless ``log_level`` is given.
    An unusable log file only costs the file handler.
    """
    level_name = (log_level or os.environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL)).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot write log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT, handlers=handlers, force=True)

    # botocore and urllib3 are noisy at DEBUG
    for name in ("botocore", "boto3", "urllib3", "docker"):
        logging.getLogger(name).setLevel(max(level, logging.INFO))
    return logging.getLogger()
