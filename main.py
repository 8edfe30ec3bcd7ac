"""CLI entry point: python main.py init-db | python main.py expirer --once"""

import argparse
import logging
import signal
import sys

from src.db import build_engine, get_sync_session_factory, init_db
from src.logging_config import configure_logging
from src.settings import get_settings

logger = logging.getLogger("dataexport")


class _UnavailableCollaborator:
    """Placeholder for collaborators the expirer never calls."""

    def __init__(self, name: str):
        self.name = name

    def __getattr__(self, attr):
        raise RuntimeError(f"{self.name} is not available in the expirer process")


def build_expirer(settings):
    from src.data_export import (
        Expirer,
        LocalArtifactStore,
        TaskRegistry,
        WorkflowConfig,
        WorkflowRepository,
    )

    engine = build_engine(settings.database_url, echo=settings.database_echo)
    repository = WorkflowRepository(get_sync_session_factory(engine))
    config = WorkflowConfig.from_settings(settings)
    registry = TaskRegistry(
        repository,
        auditor=_UnavailableCollaborator("SQL auditor"),
        db_directory=_UnavailableCollaborator("DB service directory"),
        connector=_UnavailableCollaborator("DB connector"),
        artifact_store=LocalArtifactStore(settings.artifact_dir),
        resolver=_UnavailableCollaborator("authorization resolver"),
        config=config,
    )
    return Expirer(repository, registry, config=config)


def cmd_init_db(args, settings) -> int:
    engine = build_engine(settings.database_url, echo=settings.database_echo)
    init_db(engine)
    print(f"Schema created at {settings.database_url}")
    return 0


def cmd_expirer(args, settings) -> int:
    expirer = build_expirer(settings)

    if args.once:
        report = expirer.run_once()
        print(
            f"Expired {report.expired_workflows} workflow(s), "
            f"{report.expired_artifacts} artifact(s), "
            f"deleted {report.deleted_orphans} orphan task(s)"
        )
        return 1 if report.failed_sweeps else 0

    interval = args.interval or settings.expirer_interval_seconds
    expirer.start(interval_seconds=interval)

    def _shutdown(signum, frame):
        logger.info("Received signal %d, stopping expirer", signum)
        expirer.stop(timeout=interval + 1)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    signal.pause()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Data-export governance engine"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    expirer_parser = sub.add_parser("expirer", help="Run the expiry loop")
    expirer_parser.add_argument(
        "--once", action="store_true",
        help="Run a single sweep and exit"
    )
    expirer_parser.add_argument(
        "--interval", type=float, default=None,
        help="Seconds between sweeps (default: from settings)"
    )
    args = parser.parse_args(argv)

    configure_logging()
    settings = get_settings()

    if args.command == "init-db":
        return cmd_init_db(args, settings)
    return cmd_expirer(args, settings)


if __name__ == "__main__":
    sys.exit(main())
