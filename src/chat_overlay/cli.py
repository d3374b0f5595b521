"""Command-line client for a running chat overlay engine."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict

import httpx

DEFAULT_HOST = os.environ.get("CHAT_OVERLAY_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.environ.get("CHAT_OVERLAY_PORT", "8080"))
DEFAULT_TIMEOUT = float(os.environ.get("CHAT_OVERLAY_TIMEOUT", "10.0"))

NOTIFY_TYPES = ("gift", "follow", "paypiggy", "raid", "redemption", "cheer", "chat")
PLATFORMS = ("twitch", "youtube", "tiktok", "donations")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    base_url = _resolve_base_url(args.host, args.port)
    timeout = args.timeout

    if args.command == "notify":
        try:
            payload = _build_notify_payload(args)
        except ValueError as exc:
            parser.error(str(exc))
        return _post_json(f"{base_url}/commands/notify", payload, timeout, success_message="Event injected.")

    if args.command == "skip":
        return _post_json(f"{base_url}/queue/skip", {}, timeout, success_message="Skip requested.")

    if args.command == "clear":
        return _post_json(f"{base_url}/queue/clear", {}, timeout, success_message="Queue cleared.")

    if args.command == "stop":
        return _post_json(f"{base_url}/control/shutdown", {}, timeout, success_message="Shutdown requested.")

    if args.command == "queue":
        return _show_queue(base_url, timeout)

    if args.command == "platforms":
        return _show_platforms(base_url, timeout)

    parser.error("Unknown command")
    return 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-overlay-ctl",
        description="Control a running chat overlay engine from any terminal.",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="Control API host (default: %(default)s)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Control API port (default: %(default)s)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="HTTP timeout in seconds (default: %(default)s)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    notify = subparsers.add_parser("notify", help="Inject a synthetic platform event")
    notify.add_argument("type", choices=NOTIFY_TYPES, help="Event type")
    notify.add_argument("username", help="Display name of the sender")
    notify.add_argument("message", nargs=argparse.REMAINDER, help="Optional message text")
    notify.add_argument("--platform", choices=PLATFORMS, default="twitch")
    notify.add_argument("--amount", type=float, help="Monetary amount or unit count")
    notify.add_argument("--currency", help="Currency code, or bits/coins")
    notify.add_argument("--gift-type", dest="gift_type", help="Gift name")
    notify.add_argument("--count", type=int, dest="gift_count", help="Gift count")

    subparsers.add_parser("queue", help="Print the display queue")
    subparsers.add_parser("platforms", help="Print adapter and stream detection state")
    subparsers.add_parser("skip", help="Skip the item currently on screen")
    subparsers.add_parser("clear", help="Drop every queued item")
    subparsers.add_parser("stop", help="Request graceful shutdown")

    return parser


def _resolve_base_url(host: str, port: int) -> str:
    if host.startswith("http://") or host.startswith("https://"):
        return host.rstrip("/")
    return f"http://{host}:{port}"


def _build_notify_payload(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"platform": args.platform, "type": args.type, "username": args.username}
    message = " ".join(args.message or []).strip()
    if message:
        payload["message"] = message
    if args.type == "chat" and not message:
        raise ValueError("Chat events need a message")
    if args.amount is not None:
        if args.amount <= 0:
            raise ValueError("Amount must be positive")
        if not args.currency:
            raise ValueError("--currency is required with --amount")
        payload["amount"] = args.amount
        payload["currency"] = args.currency
    elif args.type == "gift":
        raise ValueError("Gift events need --amount and --currency")
    if args.gift_type:
        payload["gift_type"] = args.gift_type
    if args.gift_count is not None:
        if args.gift_count < 1:
            raise ValueError("Count must be at least 1")
        payload["gift_count"] = args.gift_count
    return payload


def _post_json(url: str, payload: Dict[str, Any], timeout: float, success_message: str) -> int:
    try:
        response = httpx.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
    except httpx.RequestError as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return 1
    except httpx.HTTPStatusError as exc:
        detail = exc.response.text
        print(f"Server responded with error {exc.response.status_code}: {detail}", file=sys.stderr)
        return 1

    print(success_message)
    return 0


def _get_json(url: str, timeout: float) -> Any:
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.RequestError as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return None
    except httpx.HTTPStatusError as exc:
        print(f"Server responded with error {exc.response.status_code}: {exc.response.text}", file=sys.stderr)
        return None
    return response.json()


def _show_queue(base_url: str, timeout: float) -> int:
    payload = _get_json(f"{base_url}/queue", timeout)
    if not isinstance(payload, dict):
        if payload is not None:
            print("Unexpected response payload", file=sys.stderr)
        return 1

    current = payload.get("current")
    print("On screen:")
    if current:
        print(f"  [{current.get('platform')}] {current.get('type')}: {current.get('text')}")
    else:
        print("  None")

    print(f"\nQueue size: {payload.get('queue_size')}  shown: {payload.get('shown')}  dropped: {payload.get('dropped')}")
    preview = payload.get("preview", [])
    if preview:
        print("Up next:")
        for idx, item in enumerate(preview, start=1):
            print(f"  {idx}. [{item.get('platform')}] {item.get('type')} (p{item.get('priority')}): {item.get('text')}")
    else:
        print("Up next: empty")
    return 0


def _show_platforms(base_url: str, timeout: float) -> int:
    payload = _get_json(f"{base_url}/platforms", timeout)
    if not isinstance(payload, dict):
        if payload is not None:
            print("Unexpected response payload", file=sys.stderr)
        return 1
    if not payload:
        print("No platforms enabled")
        return 0
    for name, entry in sorted(payload.items()):
        detection = entry.get("detection") or {}
        print(f"{name}: {entry.get('state')}  detection={detection.get('state', 'n/a')}")
        if detection:
            print(f"  {json.dumps(detection, sort_keys=True)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
