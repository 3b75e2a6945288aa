import argparse
import asyncio
import json
import logging

from autofill_bridge.config import settings
from autofill_bridge.extension.fill_executor import answer_with
from autofill_bridge.extension.orchestrator import fill_url_blocking, find_login_blocking


async def confirm_in_terminal(message):
    try:
        answer = await asyncio.to_thread(input, f"{message}\n[y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def main():
    parser = argparse.ArgumentParser(description="Run one autofill flow against the credential manager")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fill = subparsers.add_parser("fill", help="Open a page, pick an item and fill the page with it")
    fill.add_argument("--url", required=True, help="Page to open and fill")
    fill.add_argument(
        "--all-items",
        action="store_true",
        help="Offer every item type in the manager, not only logins",
    )
    fill.add_argument(
        "--allow-insecure-fill",
        action="store_true",
        help="Fill HTTPS logins into HTTP pages without asking",
    )

    find = subparsers.add_parser("find", help="Pick a login for a URL and print it")
    find.add_argument("--url", required=True, help="URL to match logins against")

    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level)

    if args.command == "fill":
        confirm = answer_with(True) if args.allow_insecure_fill else confirm_in_terminal
        outcome = fill_url_blocking(args.url, show_only_logins=not args.all_items, confirm=confirm)
        if outcome.error is not None:
            print(f"Fill failed: code={outcome.error.code.name} message={outcome.error.message}")
            raise SystemExit(1)
        result = outcome.fill_result
        print(
            f"Fill finished: success={outcome.success} aborted={result.aborted} reason={result.abort_reason} "
            f"used={len(result.used_opids)} autosubmitted={result.autosubmitted}"
        )
        return

    result = find_login_blocking(args.url)
    if result.error is not None:
        print(f"Find login failed: code={result.error.code.name} message={result.error.message}")
        raise SystemExit(1)
    print(json.dumps(sorted(result.login or {})))


if __name__ == "__main__":
    main()
