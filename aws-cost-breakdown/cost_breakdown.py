#!/usr/bin/env python3
"""
AWS Cost Breakdown

Prints the last week's AWS cost per service from Cost Explorer, then drills
into every service with spend using the secondary dimension (instance family,
instance type, usage type or operation) that best explains its cost.
Large "No..." buckets are broken down further by usage type.
"""

import os
import sys
import json
import argparse
import configparser
from decimal import Decimal, InvalidOperation
from typing import Optional
from pathlib import Path

from dotenv import load_dotenv

from cost_explorer import (
    DEFAULT_METRIC,
    DEFAULT_REGION,
    DEFAULT_TIMEOUT,
    ConfigurationError,
    QueryFailed,
    check_credentials,
    get_ce_client,
    get_session,
)
from cost_drilldown import (
    DEFAULT_DAYS_BACK,
    DEFAULT_WORKERS,
    DRILLDOWN_CANDIDATES,
    INVESTIGATION_KEY,
    INVESTIGATION_TOP_N,
    MATERIALITY_THRESHOLD,
    RESOURCE_KEY,
    build_report,
    resolve_window,
    round_cents,
)

# Load environment variables from .env file
load_dotenv()

# ANSI colors (cleared by disable_colors())
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
CYAN = "\033[96m"
BOLD = "\033[1m"
RESET = "\033[0m"

LABEL_WIDTH = 55
AMOUNT_WIDTH = 12
KEY_CHOICES = ["auto", *DRILLDOWN_CANDIDATES, RESOURCE_KEY]


def disable_colors():
    """Turn all color constants into empty strings."""
    global GREEN, RED, YELLOW, BLUE, CYAN, BOLD, RESET
    GREEN = RED = YELLOW = BLUE = CYAN = BOLD = RESET = ""


def status(message: str):
    """Print a progress message to stderr, keeping stdout for the report."""
    print(message, file=sys.stderr)


def get_aws_profiles(pattern: str = "") -> dict:
    """Get all AWS profiles matching the pattern from ~/.aws/config.

    Returns a dict mapping profile_name -> account_name.
    """
    config_path = Path(os.environ.get("AWS_CONFIG_FILE", Path.home() / ".aws" / "config"))

    if not config_path.exists():
        status(f"{RED}Error: AWS config file not found at {config_path}{RESET}")
        return {}

    config = configparser.ConfigParser()
    config.read(config_path)

    profiles = {}
    for section in config.sections():
        if section.startswith("profile "):
            profile_name = section.replace("profile ", "")
            if pattern in profile_name:
                # Get account name from sso_account_name if available
                account_name = config.get(section, "sso_account_name", fallback=profile_name)
                profiles[profile_name] = account_name

    return dict(sorted(profiles.items()))


def format_row(label: str, amount: Decimal, indent: str = "") -> str:
    """Format one `label  amount` table row, amount to 2 decimal places."""
    width = max(LABEL_WIDTH - len(indent), 1)
    return f"{indent}{label:<{width}} {round_cents(amount):>{AMOUNT_WIDTH}.2f}"


def print_investigation(investigation):
    """Print the nested usage type table for a "No..." bucket."""
    print(f"    ┌─ Investigating '{investigation.label}' ({round_cents(investigation.amount):.2f}) "
          f"→ breakdown by {INVESTIGATION_KEY}:")
    if investigation.error:
        print(f"    └─ {YELLOW}Investigation unavailable (API error): {investigation.error}{RESET}")
        return

    for record in investigation.records:
        print(format_row(record.label, record.amount, indent="    │   "))
    hidden = investigation.record_count - len(investigation.records)
    if hidden > 0:
        print(f"    │   ... {hidden} more usage type(s)")
    print(f"    └─ Total for service: {round_cents(investigation.total):.2f}")


def print_drilldown(drilldown, today):
    """Print one service's drill-down table."""
    print()
    print(f"{BOLD}▶ {drilldown.service} - by {drilldown.key}{RESET}  "
          f"(window: {drilldown.window.start} → {today})")

    if drilldown.error:
        print(f"  {YELLOW}(drill-down unavailable: {drilldown.error}){RESET}")
        return

    investigations = {i.label: i for i in drilldown.investigations}
    for record in drilldown.records:
        print(format_row(record.label, record.amount))
        if record.label in investigations:
            print_investigation(investigations[record.label])


def print_report(report, key_mode: str = "auto"):
    """Print the service table followed by the per-service drill-downs."""
    window = report.window
    print()
    print(f"{BOLD}{CYAN}### AWS cost breakdown by service "
          f"(last {window.days} days: {window.start} → {window.today}) [{report.metric}]{RESET}")
    print()
    for record in report.services:
        print(format_row(record.label, record.amount))
    print("-" * (LABEL_WIDTH + AMOUNT_WIDTH + 1))
    print(format_row("Total", report.total))

    if not report.drilldowns:
        return

    selection = "auto-selected secondary key" if key_mode == "auto" else f"secondary key {key_mode}"
    print()
    print(f"{BOLD}{CYAN}### Per-service drill-downs ({selection}){RESET}")
    print("-" * 67)
    for drilldown in report.drilldowns:
        print_drilldown(drilldown, window.today)


def record_to_dict(record) -> dict:
    return {"label": record.label, "amount": str(record.amount)}


def report_to_dict(report, profile: Optional[str] = None, account_id: Optional[str] = None) -> dict:
    """Convert a CostReport into JSON-serializable form. Amounts stay exact strings."""
    drilldowns = []
    for drilldown in report.drilldowns:
        drilldowns.append({
            "service": drilldown.service,
            "key": drilldown.key,
            "start": drilldown.window.start.isoformat(),
            "records": [record_to_dict(r) for r in drilldown.records],
            "investigations": [
                {
                    "label": i.label,
                    "amount": str(i.amount),
                    "records": [record_to_dict(r) for r in i.records],
                    "total": str(i.total),
                    "record_count": i.record_count,
                    "error": i.error,
                }
                for i in drilldown.investigations
            ],
            "error": drilldown.error,
        })

    return {
        "profile": profile,
        "account_id": account_id,
        "services": [record_to_dict(r) for r in report.services],
        "total": str(report.total),
        "drilldowns": drilldowns,
    }


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0: {value}")
    return number


def positive_int(value: str) -> int:
    number = non_negative_int(value)
    if number == 0:
        raise argparse.ArgumentTypeError(f"must be > 0: {value}")
    return number


def decimal_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {value}")
    if not amount.is_finite() or amount < 0:
        raise argparse.ArgumentTypeError(f"must be a non-negative amount: {value}")
    return amount


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Break down recent AWS cost by service with automatic drill-downs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment (also read from .env):
  METRIC       Cost metric (default: UnblendedCost)
  AWS_PROFILE  AWS CLI profile to use
  AWS_REGION   Cost Explorer endpoint region (default: us-east-1)

Examples:
  %(prog)s
  %(prog)s --metric AmortizedCost --days 29
  %(prog)s --profile billing.admin --key USAGE_TYPE
  %(prog)s --profile-pattern .admin --format json
        """
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show query progress and key selection details"
    )
    parser.add_argument(
        "--profile",
        default=os.getenv("AWS_PROFILE"),
        help="AWS profile to use (default: $AWS_PROFILE or the default credential chain)"
    )
    parser.add_argument(
        "--profile-pattern",
        help="Run the report for every profile in ~/.aws/config whose name contains this pattern"
    )
    parser.add_argument(
        "--metric",
        default=os.getenv("METRIC", DEFAULT_METRIC),
        help=f"Cost metric (default: $METRIC or {DEFAULT_METRIC})"
    )
    parser.add_argument(
        "--region",
        default=os.getenv("AWS_REGION", DEFAULT_REGION),
        help=f"Cost Explorer region (default: $AWS_REGION or {DEFAULT_REGION})"
    )
    parser.add_argument(
        "--days",
        type=non_negative_int,
        default=DEFAULT_DAYS_BACK,
        help=f"Start the window this many days before today (default: {DEFAULT_DAYS_BACK})"
    )
    parser.add_argument(
        "--key",
        choices=KEY_CHOICES,
        default="auto",
        help="Drill-down dimension (default: auto-select per service)"
    )
    parser.add_argument(
        "--threshold",
        type=decimal_amount,
        default=MATERIALITY_THRESHOLD,
        help=f"Minimum cost of a 'No...' bucket worth investigating (default: {MATERIALITY_THRESHOLD})"
    )
    parser.add_argument(
        "--top",
        type=positive_int,
        default=INVESTIGATION_TOP_N,
        help=f"Usage types shown per investigation (default: {INVESTIGATION_TOP_N})"
    )
    parser.add_argument(
        "--workers",
        type=positive_int,
        default=DEFAULT_WORKERS,
        help=f"Concurrent drill-downs (default: {DEFAULT_WORKERS}, 1 = sequential)"
    )
    parser.add_argument(
        "--timeout",
        type=positive_int,
        default=DEFAULT_TIMEOUT,
        help=f"AWS connect/read timeout in seconds (default: {DEFAULT_TIMEOUT})"
    )
    parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)"
    )
    parser.add_argument(
        "--no-drilldown",
        action="store_true",
        help="Only print the service-level breakdown"
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output"
    )
    return parser


def run_profile(profile: Optional[str], window, args) -> tuple:
    """Run the report for one profile. Returns (report, account_id).

    Raises ConfigurationError or QueryFailed with the failed step in the message.
    """
    session = get_session(profile)
    account_id = check_credentials(session)
    if args.verbose:
        status(f"  Account: {account_id}")

    ce = get_ce_client(session, region=args.region, timeout=args.timeout)
    key = None if args.key == "auto" else args.key

    report = build_report(
        ce, window, args.metric,
        key=key,
        threshold=args.threshold,
        top_n=args.top,
        workers=args.workers,
        drilldown=not args.no_drilldown,
        verbose=args.verbose,
    )
    return report, account_id


def main(argv: Optional[list] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        disable_colors()

    # Get profiles to run
    if args.profile_pattern:
        profiles = list(get_aws_profiles(args.profile_pattern))
        if not profiles:
            status(f"{RED}Error: No profiles found matching '{args.profile_pattern}'{RESET}")
            sys.exit(1)
    else:
        profiles = [args.profile]

    window = resolve_window(days_back=args.days)
    status(f"{GREEN}Cost window: {window.start} → {window.today} (end {window.end} exclusive) [{args.metric}]{RESET}")

    results = []
    failed = []
    for idx, profile in enumerate(profiles, 1):
        if len(profiles) > 1:
            status(f"[{idx}/{len(profiles)}] Profile: {profile}")
        try:
            report, account_id = run_profile(profile, window, args)
        except ConfigurationError as e:
            status(f"{RED}Error: credential check failed for profile {profile or 'default'}: {e}{RESET}")
            failed.append(profile)
            continue
        except QueryFailed as e:
            status(f"{RED}Error: service-level cost query failed for profile {profile or 'default'}: {e}{RESET}")
            failed.append(profile)
            continue

        results.append((profile, account_id, report))
        if args.format == "table":
            if len(profiles) > 1:
                print(f"\n{BOLD}{BLUE}=== Profile: {profile} (account {account_id}) ==={RESET}")
            print_report(report, key_mode=args.key)

    if args.format == "json":
        document = {
            "window": {
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
                "today": window.today.isoformat(),
            },
            "metric": args.metric,
            "reports": [report_to_dict(r, profile, account_id) for profile, account_id, r in results],
            "failed_profiles": failed,
        }
        print(json.dumps(document, indent=2))

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
