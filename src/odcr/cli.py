from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from odcr.azure_provider import AzureCapacityProvider
from odcr.config import OUTPUT_FORMATS, Settings, load_settings
from odcr.engine import EXIT_FATAL, finish, reconcile
from odcr.errors import ConfigurationError
from odcr.provider import CapacityProvider
from odcr.reporting import render_plan_json, render_plan_text, render_summary_text
from odcr.utils import dump_json, save_json

logger = logging.getLogger("odcr")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="odcr",
        description=(
            "Create on-demand capacity reservations for the VMs of a resource group "
            "and associate the VMs with the capacity reservation group."
        ),
    )
    parser.add_argument("-g", "--resource-group", default=None, help="Resource group holding the VMs.")
    parser.add_argument("--subscription", default=None, help="Subscription id (defaults to AZURE_SUBSCRIPTION_ID).")
    parser.add_argument(
        "-n",
        "--crg-name",
        default=None,
        help="Capacity Reservation Group name (defaults to <resource-group>-crg).",
    )
    parser.add_argument(
        "--location",
        default=None,
        help="Region for the reservation group. Detected from the resource group when omitted.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Print the reservation plan without creating or associating anything.",
    )
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        default=None,
        help="Skip capability checks and the probe reservation.",
    )
    parser.add_argument(
        "--probe-size",
        default=None,
        help="VM size for the preflight probe reservation (default: smallest reservable size).",
    )
    parser.add_argument("--rate", type=float, default=None, help="Mutation calls per second (default 1.0).")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Overall run timeout in seconds; 0 disables (default 1800).",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when any reservation or association failed.",
    )
    parser.add_argument("--output", choices=OUTPUT_FORMATS, default=None, help="Summary format.")
    parser.add_argument("--json-out", default=None, help="Optional path for the JSON summary or plan.")
    parser.add_argument("--config", default=None, help="Optional YAML settings file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict:
    overrides = {
        "resource_group": args.resource_group,
        "subscription_id": args.subscription,
        "group_name": args.crg_name,
        "location": args.location,
        "dry_run": args.dry_run,
        "skip_preflight": args.skip_preflight,
        "probe_size_class": args.probe_size,
        "bind_rate_per_second": args.rate,
        "run_timeout_sec": args.timeout,
        "output_format": args.output,
        "json_out": args.json_out,
    }
    if args.strict:
        overrides["accept_partial"] = False
    return overrides


def build_provider(settings: Settings) -> CapacityProvider:
    return AzureCapacityProvider(settings.subscription_id, lro_timeout_sec=settings.lro_timeout_sec)


def main(argv: Optional[List[str]] = None, provider: Optional[CapacityProvider] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        settings = load_settings(args.config, _overrides(args)).validate()
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_FATAL

    provider = provider or build_provider(settings)
    report = reconcile(provider, settings)

    if report.plan is not None:
        if settings.output_format == "json":
            sys.stdout.write(render_plan_json(report.plan))
        else:
            sys.stdout.write(render_plan_text(report.plan))
    elif settings.output_format == "json":
        sys.stdout.write(dump_json(report.to_dict()) + "\n")
    else:
        sys.stdout.write(render_summary_text(report))

    if settings.json_out:
        save_json(settings.json_out, report.to_dict())
        logger.info(f"Summary written to {settings.json_out}")

    return finish(report, settings)


if __name__ == "__main__":
    sys.exit(main())
