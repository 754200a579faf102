from __future__ import annotations

import argparse
import json

from tubedesc.config import load_settings
from tubedesc.dependencies import build_services
from tubedesc.logging_config import configure_application_logging
from tubedesc.services.errors import SyncError
from tubedesc.telemetry import build_telemetry_client


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a catalog sync or drain due sync jobs once.",
    )
    parser.add_argument(
        "--channel-id",
        type=str,
        default=None,
        help="Sync this channel immediately instead of draining the job queue.",
    )
    parser.add_argument(
        "--user-id",
        type=str,
        default=None,
        help="Owner of --channel-id.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=25,
        help="How many due jobs to process when draining the queue.",
    )
    parser.add_argument(
        "--enqueue-scheduled",
        action="store_true",
        help="Queue periodic syncs for every healthy channel before draining.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = load_settings()
    configure_application_logging(settings)
    services = build_services(
        settings,
        telemetry=build_telemetry_client(
            enabled=settings.telemetry_enabled,
            sink=settings.telemetry_sink,
        ),
    )

    if args.channel_id is not None:
        if args.user_id is None:
            raise SystemExit("--user-id is required together with --channel-id")
        try:
            result = services.catalog_reconciler.sync_channel(
                channel_id=args.channel_id,
                user_id=args.user_id,
            )
        except SyncError as exc:
            raise SystemExit(f"Sync failed: {type(exc).__name__}: {exc}") from exc
        print(json.dumps(result.to_dict(), indent=2))
        return

    if args.enqueue_scheduled:
        enqueued = services.job_runner.enqueue_scheduled_syncs()
        print(f"Enqueued {enqueued} channel syncs")

    stats = services.job_runner.process_due_jobs(limit=args.limit)
    print(
        f"Processed jobs attempted={stats.attempted} succeeded={stats.succeeded} "
        f"retried={stats.retried} failed={stats.failed}"
    )


if __name__ == "__main__":
    main()
