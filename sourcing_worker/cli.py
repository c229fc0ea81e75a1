"""Enqueue sourcing jobs from the command line."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Callable, Sequence

from pydantic import BaseModel

from sourcing_worker.core.telemetry import configure_logging
from sourcing_worker.schemas.jobs import (
    ADDRESS_LINKS_QUEUE,
    DECEASES_INGEST_QUEUE,
    ENERGY_DIAGNOSTICS_QUEUE,
    LISTINGS_QUEUE,
    AddressLinksPayload,
    DeceasesIngestRequest,
    EnergyDiagnosticsPayload,
    ListingsPayload,
    TriggerResult,
)
from sourcing_worker.services.job_queue import JobQueue, get_job_queue, trigger_job
from sourcing_worker.services.repository import get_repository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sourcing-enqueue", description="Enqueue a sourcing job.")
    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser("deceases-ingest", help="Ingest a monthly death records file")
    ingest.add_argument("--s3-path", help="Object path of an already uploaded CSV (s3://bucket/key)")
    ingest.add_argument("--year", type=int, help="Year of the INSEE monthly file")
    ingest.add_argument("--month", type=int, help="Month of the INSEE monthly file (1-12)")

    energy = commands.add_parser("energy-diagnostics", help="Import ADEME energy diagnostics")
    energy.add_argument("--department", required=True, help="Department code, e.g. 75 or 2A")
    energy.add_argument("--since", required=True, help="First issue date (YYYY-MM-DD)")
    energy.add_argument("--before", help="Last issue date (YYYY-MM-DD)")
    energy.add_argument(
        "--classes",
        default="F,G",
        help="Comma-separated energy classes",
    )

    links = commands.add_parser("address-links", help="Link an opportunity to its likely diagnostics")
    links.add_argument("--opportunity-id", required=True)
    links.add_argument("--opportunity-type", choices=["auction", "listing"], required=True)
    links.add_argument("--zip-code", required=True)
    links.add_argument("--energy-class", required=True)
    links.add_argument("--square-footage", type=float, required=True)
    links.add_argument("--address")

    listings = commands.add_parser("listings", help="Import real-estate listings from the ads feed")
    listings.add_argument("--after", help="Only ads changed on or after this day (YYYY-MM-DD)")
    listings.add_argument("--before", help="Only ads changed before this day (YYYY-MM-DD)")
    listings.add_argument("--department", help="Department code, e.g. 75 or 2A")
    listings.add_argument("--energy-grade-min", help="Best energy grade to include")
    listings.add_argument("--energy-grade-max", help="Worst energy grade to include")
    listings.add_argument("--property-types", help="Comma-separated categories, e.g. house,apartment")
    listings.add_argument(
        "--use-publication-date",
        action="store_true",
        help="Filter on publication date instead of last change",
    )
    return parser


def payload_builder(args: argparse.Namespace) -> tuple[str, str, Callable[[], BaseModel]]:
    if args.command == "deceases-ingest":
        return (
            DECEASES_INGEST_QUEUE,
            "manual-deceases-ingest",
            lambda: DeceasesIngestRequest(s3_path=args.s3_path, year=args.year, month=args.month).to_payload(),
        )
    if args.command == "energy-diagnostics":
        return (
            ENERGY_DIAGNOSTICS_QUEUE,
            "manual-energy-diagnostics",
            lambda: EnergyDiagnosticsPayload.model_validate(
                {
                    "department": args.department,
                    "since_date": args.since,
                    "before_date": args.before,
                    "energy_classes": args.classes.split(","),
                }
            ),
        )
    if args.command == "listings":
        return (
            LISTINGS_QUEUE,
            "manual-listings",
            lambda: ListingsPayload.model_validate(
                {
                    "after_date": args.after,
                    "before_date": args.before,
                    "department": args.department,
                    "energy_grade_min": args.energy_grade_min,
                    "energy_grade_max": args.energy_grade_max,
                    "property_types": args.property_types.split(",") if args.property_types else [],
                    "use_publication_date": args.use_publication_date,
                }
            ),
        )
    return (
        ADDRESS_LINKS_QUEUE,
        "link-energy-diagnostics",
        lambda: AddressLinksPayload.model_validate(
            {
                "opportunity_id": args.opportunity_id,
                "opportunity_type": args.opportunity_type,
                "search": {
                    "zip_code": args.zip_code,
                    "energy_class": args.energy_class,
                    "square_footage": args.square_footage,
                    "address": args.address,
                },
            }
        ),
    )


async def run(args: argparse.Namespace, job_queue: JobQueue | None = None) -> TriggerResult:
    queue, name, build_payload = payload_builder(args)
    if job_queue is not None:
        return await trigger_job(job_queue, queue, name, build_payload)
    try:
        return await trigger_job(get_job_queue(), queue, name, build_payload)
    finally:
        await get_repository().close()


def main(argv: Sequence[str] | None = None, *, job_queue: JobQueue | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    result = asyncio.run(run(args, job_queue))
    print(result.model_dump_json(by_alias=True, exclude_none=True))
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
