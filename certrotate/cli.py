import argparse
import logging
import os
import sys
from functools import partial

from certrotate import __version__
from certrotate.config import OrchestratorSettings, SchedulerSettings, WorkerSettings
from certrotate.errors import CertRotateError, ExitCode
from certrotate.logconfig import configure_logging
from certrotate.orchestrator import RotationOrchestrator
from certrotate.retention import prune_superseded_secrets
from certrotate.scheduler import Scheduler
from certrotate.swarm import Swarm
from certrotate.worker import run_worker

logger = logging.getLogger("certrotate")

LOG_FILENAME = "certrotate.log"


def _log_file():
    log_dir = os.environ.get("LOG_DIR")
    if log_dir and os.path.isdir(log_dir) and os.access(log_dir, os.W_OK):
        return os.path.join(log_dir, LOG_FILENAME)
    return None


def cmd_worker(args):
    settings = WorkerSettings.from_env(
        force=True if args.force else None,
        dry_run=True if args.dry_run else None,
        staging=True if args.staging else None,
    )
    return run_worker(settings)


def cmd_run(args):
    # invalid configuration fails here, before the first cycle
    orchestrator_settings = OrchestratorSettings.from_env()
    scheduler = Scheduler(
        SchedulerSettings.from_env(interval=args.interval),
        orchestrator_factory=partial(RotationOrchestrator, orchestrator_settings),
    )
    if args.daemon:
        return scheduler.run_forever()
    return scheduler.run_once()


def cmd_prune(args):
    settings = OrchestratorSettings.from_env()
    domains = args.domains or settings.overrides.get("DOMAINS", "")
    domain_list = [d.strip() for d in domains.split(",") if d.strip()]
    if not domain_list:
        logger.error("No domains given; pass --domains or set DOMAINS")
        return ExitCode.CONFIGURATION
    removed = prune_superseded_secrets(Swarm(), domain_list, args.keep, dry_run=args.dry_run)
    logger.info("%s %d superseded secret(s)", "Would remove" if args.dry_run else "Removed", len(removed))
    return ExitCode.SUCCESS


def build_parser():
    parser = argparse.ArgumentParser(
        prog="certrotate", description="Renew ACME certificates and rotate them into Docker Swarm secrets"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Run the renewal worker (inside the one-shot service)")
    worker.add_argument("--force", action="store_true", help="Renew regardless of expiry")
    worker.add_argument("--dry-run", action="store_true", help="Exercise certbot without writing anything")
    worker.add_argument("--staging", action="store_true", help="Use the ACME staging environment")
    worker.set_defaults(func=cmd_worker)

    run = subparsers.add_parser("run", help="Run a rotation cycle on a Swarm manager")
    run.add_argument("-d", "--daemon", action="store_true", help="Keep running, one cycle per interval")
    run.add_argument("-i", "--interval", type=int, default=None, help="Seconds between cycles (default: 86400)")
    run.set_defaults(func=cmd_run)

    prune = subparsers.add_parser("prune", help="Remove certificate secrets superseded by newer runs")
    prune.add_argument("--keep", type=int, default=2, help="Runs to keep per domain and file (default: 2)")
    prune.add_argument("--domains", default=None, help="Comma separated domains (default: DOMAINS)")
    prune.add_argument("--dry-run", action="store_true", help="Only list what would be removed")
    prune.set_defaults(func=cmd_prune)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "keep", 1) < 1:
        parser.error("--keep must be at least 1")
    configure_logging(log_file=_log_file(), log_level=args.log_level)

    try:
        return int(args.func(args))
    except CertRotateError as e:
        logger.error("%s", str(e))
        return int(e.exit_code)
    except Exception as e:
        logger.error("Unexpected error: %s", str(e), exc_info=True)
        return int(ExitCode.CONFIGURATION)


if __name__ == "__main__":
    sys.exit(main())
