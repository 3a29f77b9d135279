# main.py
"""
CLI entrypoint for the compliance rules engine.

- Reads a resource inventory from a JSON file ({"resources": [...]}).
- Evaluates every applicable rule against each resource using boto3.Session.
- Produces JSON, CSV, and HTML reports and prints a colorful summary table.
- --list-rules and --plan-only inspect the registry and the execution plan
  without calling AWS.
"""

import argparse
import logging
import os
import uuid

import boto3

from config import (
    DEFAULT_AWS_REGION,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_RETRY_COUNT,
    DEFAULT_TIMEOUT_SECONDS,
)
from models import EngineConfig, ExecutionContext
from rules_engine import InvalidConfigError, RuleNotFoundError, RulesEngine
from utils import load_resources, save_report, print_summary_and_report_path, print_rules_table

logger = logging.getLogger("compliance_engine")


def build_config(args) -> EngineConfig:
    return EngineConfig(
        parallel=not args.sequential,
        max_concurrency=args.max_concurrency,
        timeout_seconds=args.timeout,
        retry_count=args.retries,
        include_evidence=not args.no_evidence,
        include_recommendations=not args.no_recommendations,
        dry_run=True,
    )


def build_context(args, resources) -> ExecutionContext:
    account_id = args.account_id or next((r.account_id for r in resources if r.account_id), "")
    return ExecutionContext(
        tenant_id=args.tenant_id,
        account_id=account_id,
        region=args.region,
        scan_id=args.scan_id or f"scan-{uuid.uuid4().hex[:12]}",
    )


def run(args) -> int:
    """
    Run the engine according to parsed CLI arguments.

    Credentials come from the environment (e.g. AWS Vault); only a region is needed.
    """
    args.region = args.region or os.environ.get("AWS_REGION") or DEFAULT_AWS_REGION
    session = boto3.Session(region_name=args.region)
    engine = RulesEngine(session)

    if args.list_rules:
        print_rules_table(engine.get_all_rules())
        return 0

    if not args.resources:
        raise SystemExit("--resources is required unless --list-rules is given")

    resources = load_resources(args.resources)
    config = build_config(args)
    context = build_context(args, resources)
    rule_ids = args.rules.split(",") if args.rules else None
    logger.info("Loaded %d resources from %s (region=%s)", len(resources), args.resources, args.region)

    if args.plan_only:
        plan = engine.create_execution_plan(resources, context, config, rule_ids)
        print(f"Rules ({len(plan.rules)}): {', '.join(plan.rules) or '-'}")
        for i, group in enumerate(plan.parallel_groups, start=1):
            print(f"  group {i}: {', '.join(group)}")
        print(f"Estimated duration: {plan.estimated_duration} ms")
        return 0

    run_result = engine.execute_rules(resources, context, config, rule_ids)
    report_paths = save_report(
        run_result.results,
        run_result.stats,
        mode="dry-run" if config.dry_run else "live",
        extra={"source_file": args.resources, "region": args.region, "scan_id": context.scan_id},
        out_dir=args.report_dir,
    )
    print_summary_and_report_path(
        run_result.results, run_result.stats, report_paths, print_full_table=args.print_table
    )
    return 1 if run_result.stats.failed_rules else 0


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Evaluate AWS resources against SOC2 compliance rules."
    )
    p.add_argument("--resources", help="Path to resource inventory JSON file")
    p.add_argument("--region", help="AWS region (optional)")
    p.add_argument("--tenant-id", default="default", help="Tenant id recorded on findings")
    p.add_argument("--account-id", help="AWS account id (default: taken from the inventory)")
    p.add_argument("--scan-id", help="Scan id for log correlation (default: generated)")
    p.add_argument("--sequential", action="store_true", help="Run rules one at a time")
    p.add_argument(
        "--max-concurrency",
        type=int,
        default=DEFAULT_MAX_CONCURRENCY,
        help=f"Maximum in-flight rule checks per resource (default: {DEFAULT_MAX_CONCURRENCY})",
    )
    p.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"AWS call timeout in seconds (default: {DEFAULT_TIMEOUT_SECONDS})",
    )
    p.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_RETRY_COUNT,
        help=f"Retries per AWS call (default: {DEFAULT_RETRY_COUNT})",
    )
    p.add_argument("--no-evidence", action="store_true", help="Skip evidence collection")
    p.add_argument("--no-recommendations", action="store_true", help="Skip recommendations")
    p.add_argument("--rules", help="Comma-separated rule ids to run (default: all)")
    p.add_argument("--plan-only", action="store_true", help="Print the execution plan and exit")
    p.add_argument("--list-rules", action="store_true", help="List registered rules and exit")
    p.add_argument(
        "--report-dir",
        default="reports",
        help="Directory to save reports (default: reports)",
    )
    p.add_argument(
        "--print-table",
        action="store_true",
        help="Print full findings table to stdout",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return run(args)
    except (RuleNotFoundError, InvalidConfigError, FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
