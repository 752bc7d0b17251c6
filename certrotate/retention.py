"""Removal of certificate secrets superseded by newer runs."""

import logging
from collections import defaultdict

from docker.errors import APIError

from certrotate.swarm import LABEL_DOMAIN, LABEL_MANAGED, LABEL_ROLE, LABEL_RUN_ID

logger = logging.getLogger(__name__)


def prune_superseded_secrets(swarm, domains, keep_runs, dry_run=False):
    """Remove certificate secrets older than the ``keep_runs`` newest runs.

    Secrets are grouped by ``(domain, role)``. Anything still referenced by
    a service is kept regardless of age. Returns the names removed (or, on a
    dry run, the names that would be removed).
    """
    if keep_runs < 1:
        raise ValueError("keep_runs must be at least 1")

    wanted = set(domains)
    groups = defaultdict(list)
    for secret in swarm.list_secrets({LABEL_MANAGED: "certificate"}):
        labels = secret.attrs.get("Spec", {}).get("Labels") or {}
        domain = labels.get(LABEL_DOMAIN)
        run_id = labels.get(LABEL_RUN_ID)
        if domain not in wanted or not run_id:
            continue
        groups[(domain, labels.get(LABEL_ROLE))].append((run_id, secret))

    in_use = swarm.secrets_in_use()
    removed = []
    for (domain, role), entries in groups.items():
        # run ids are UTC timestamps, so they sort chronologically
        entries.sort(key=lambda entry: entry[0], reverse=True)
        kept_runs = sorted({run_id for run_id, _ in entries}, reverse=True)[:keep_runs]

        for run_id, secret in entries:
            if run_id in kept_runs:
                continue
            if secret.id in in_use:
                logger.info("Keeping %s: still attached to a service", secret.name)
                continue
            if dry_run:
                logger.info("Would remove superseded secret %s", secret.name)
                removed.append(secret.name)
                continue
            try:
                secret.remove()
            except APIError as e:
                logger.warning("Could not remove secret %s: %s", secret.name, str(e))
                continue
            logger.info("Removed superseded secret %s (%s %s run %s)", secret.name, domain, role, run_id)
            removed.append(secret.name)

    return removed
