#!/usr/bin/env python3
"""
Fleet triage - automated first-line investigation of cluster alerts.

Takes one incident webhook payload, runs the matching decision tree and applies
its conclusion (notes, limited support, service logs, silence or escalate).
"""

import argparse
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=os.getenv("TRIAGE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep triage imports lazy (inside functions) so `--help` and
# `--list-investigations` do not pull in boto3.
#


def list_investigations() -> None:
    """Print the registered investigations in match order."""
    from triage.config import load_config
    from triage.investigations import build_registry

    config = load_config()
    registry = build_registry(config)
    print(f"\n📋 {len(registry.entries)} registered investigation(s) (first match wins):\n")
    for idx, (_, inv) in enumerate(registry.entries):
        flag = " [experimental]" if inv.is_experimental() else ""
        skipped = " (disabled)" if inv.is_experimental() and not config.experimental_enabled else ""
        print(f"[{idx}] {inv.name()}{flag}{skipped}")
        print(f"    {inv.description()}")
    print()


def investigate_payload(path: str, *, dump_json: bool = False) -> int:
    """
    Run one webhook payload end to end.

    Args:
        path: File containing the webhook JSON, or '-' for stdin

    Returns:
        Process exit code
    """
    import json

    from triage.actions.model import action_type
    from triage.config import load_config
    from triage.metrics import MetricsRecorder
    from triage.pipeline import run_investigation

    if path == "-":
        payload = sys.stdin.read()
    else:
        with open(path, "r", encoding="utf-8") as f:
            payload = f.read()

    config = load_config()
    result = run_investigation(payload, config, MetricsRecorder(config.pushgateway))
    terminal = result.conclusion.terminal

    if dump_json:
        print(
            json.dumps(
                {
                    "investigation": result.investigation or None,
                    "stage": result.stage,
                    "actions": result.conclusion.action_types(),
                    "reason": getattr(terminal, "reason", None),
                },
                indent=2,
            )
        )
        return 0

    print(f"🔍 Investigation: {result.investigation or 'none'}")
    print(f"📋 Stage: {result.stage}")
    for action in result.conclusion.actions:
        print(f"  - {action_type(action)}")
    if terminal is not None:
        print(f"➡️  {action_type(terminal)}: {terminal.reason}")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Investigate cluster alerts from incident webhooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List registered investigations
  python main.py --list-investigations

  # Investigate a webhook payload
  python main.py --payload payload.json

  # Read the payload from stdin and print a JSON summary
  cat payload.json | python main.py --payload - --dump-json
        """,
    )
    parser.add_argument(
        "--list-investigations", action="store_true", help="List registered investigations in match order"
    )
    parser.add_argument("--payload", metavar="FILE", help="Webhook payload to investigate ('-' reads stdin)")
    parser.add_argument("--dump-json", action="store_true", help="Print a JSON summary of the run to stdout")

    args = parser.parse_args()

    try:
        if args.list_investigations:
            list_investigations()
            return

        if args.payload:
            sys.exit(investigate_payload(args.payload, dump_json=args.dump_json))

        parser.print_help()
        print("\n💡 Tip: Use `--list-investigations` to see what can be investigated")

    except Exception as e:
        print(f"❌ Error during investigation: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
