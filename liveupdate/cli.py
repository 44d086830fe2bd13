#!/usr/bin/env python3
"""
Live Update CLI

Command-line interface for the live update daemon.
"""

import argparse
import json
import os
import sys

import httpx

DAEMON_URL = os.getenv("LIVEUPDATE_URL", "http://127.0.0.1:8765")
RESTART_API = "/api/v1/liveupdate/restart"
UPDATE_API = "/api/v1/liveupdate/update"


def get_client():
    """Get HTTP client."""
    return httpx.Client(base_url=DAEMON_URL, timeout=10)


def _fail(response):
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    print(f"Error: {detail}")
    sys.exit(1)


def cmd_status(args):
    """Show coordinator status."""
    client = get_client()
    health = client.get("/health").json()
    status = client.get(f"{RESTART_API}/status").json()

    print("Live Update Daemon")
    print("=" * 40)
    print(f"Status: {health['status']}")
    print(f"Version: {health['version']}")
    print()
    print(f"Restarts allowed: {status['restarts_allowed']}")
    print(f"Restart in progress: {status['restart_in_progress']}")
    print(f"Deferred requests: {status['pending_count']}")
    if status["last_path_prefix"]:
        print(f"Last path prefix: {status['last_path_prefix']}")


def cmd_allow(args):
    """Re-allow restarts."""
    result = get_client().post(f"{RESTART_API}/allow").json()
    if result["replaying"]:
        print("Restarts allowed, replaying deferred request")
    else:
        print("Restarts allowed")


def cmd_disallow(args):
    """Block restarts."""
    get_client().post(f"{RESTART_API}/disallow")
    print("Restarts disallowed")


def cmd_clear(args):
    """Drop deferred requests."""
    result = get_client().post(f"{RESTART_API}/clear").json()
    print(f"Dropped {result['cleared']} deferred request(s)")


def cmd_restart(args):
    """Request a restart."""
    client = get_client()
    try:
        response = client.post(
            f"{RESTART_API}/request",
            json={
                "only_if_update_pending": args.only_if_pending,
                "path_prefix": args.prefix,
            },
        )
    except httpx.RemoteProtocolError:
        # Daemon went down before answering
        print("Restarting")
        return

    if response.status_code != 200:
        _fail(response)

    result = response.json()
    if result["restarting"]:
        print("Restarting")
    elif result["status"]["pending_count"]:
        print(f"Restart deferred ({result['status']['pending_count']} queued)")
    else:
        print("No restart performed")


def cmd_pending(args):
    """Show or record the pending update."""
    client = get_client()

    if args.hash:
        response = client.post(
            f"{UPDATE_API}/pending",
            json={"package_hash": args.hash, "path_prefix": args.prefix},
        )
        if response.status_code != 200:
            _fail(response)
        print(f"Pending update recorded: {args.hash}")
        return

    response = client.get(f"{UPDATE_API}/pending", params={"path_prefix": args.prefix})
    if response.status_code == 404:
        print("No pending update")
        return
    if response.status_code != 200:
        _fail(response)

    print(json.dumps(response.json(), indent=2))


def cmd_ready(args):
    """Confirm the running update."""
    response = get_client().post(f"{UPDATE_API}/ready", json={"path_prefix": args.prefix})
    if response.status_code != 200:
        _fail(response)
    print("Update confirmed")


def cmd_history(args):
    """Show recent restarts."""
    result = get_client().get(
        f"{RESTART_API}/history", params={"limit": args.limit}
    ).json()

    if not result["restarts"]:
        print("No restarts recorded")
        return

    for entry in result["restarts"]:
        mode = "if pending" if entry["only_if_update_pending"] else "always"
        print(
            f"{entry['requested_at']}  pid={entry['pid']}  "
            f"prefix='{entry['path_prefix']}'  ({mode})"
        )


def build_parser():
    parser = argparse.ArgumentParser(
        prog="liveupdate", description="Live update restart coordination"
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show coordinator status").set_defaults(
        func=cmd_status
    )
    subparsers.add_parser("allow", help="Re-allow restarts").set_defaults(
        func=cmd_allow
    )
    subparsers.add_parser("disallow", help="Block restarts").set_defaults(
        func=cmd_disallow
    )
    subparsers.add_parser("clear", help="Drop deferred restarts").set_defaults(
        func=cmd_clear
    )

    restart = subparsers.add_parser("restart", help="Request a restart")
    restart.add_argument(
        "--only-if-pending",
        action="store_true",
        help="Only restart when an update is pending",
    )
    restart.add_argument("--prefix", default="", help="Bundle path prefix")
    restart.set_defaults(func=cmd_restart)

    pending = subparsers.add_parser("pending", help="Show or record pending update")
    pending.add_argument("--hash", help="Record this package hash as pending")
    pending.add_argument("--prefix", default="", help="Bundle path prefix")
    pending.set_defaults(func=cmd_pending)

    ready = subparsers.add_parser("ready", help="Confirm the running update")
    ready.add_argument("--prefix", default="", help="Bundle path prefix")
    ready.set_defaults(func=cmd_ready)

    history = subparsers.add_parser("history", help="Show recent restarts")
    history.add_argument("--limit", type=int, default=10)
    history.set_defaults(func=cmd_history)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except httpx.ConnectError:
        print("Live update daemon not running")
        print("Start with: liveupdate-daemon")
        sys.exit(1)


if __name__ == "__main__":
    main()
