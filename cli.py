from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading

import requests

from cmm.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _run_headless() -> int:
    from cmm import db
    from cmm.errors import ScopeResolutionError
    from cmm.manager import build_manager

    db.init_db()
    try:
        manager = build_manager(settings)
    except ScopeResolutionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    done = threading.Event()

    def _shutdown(signum, frame) -> None:
        print("shutting down...", file=sys.stderr)
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    manager.start()
    done.wait()
    manager.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Citus Membership Manager CLI")
    p.add_argument("--api", default=f"http://localhost:{settings.api_port}", help="Status API base URL")
    p.add_argument("--log-level", default="INFO")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="Run the manager with the status API")
    sub.add_parser("run", help="Run the manager without the status API")
    sub.add_parser("status", help="Show manager status")
    sub.add_parser("workers", help="List tracked workers")

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--level", default=None, help="INFO|WARN|ERROR")

    s_retry = sub.add_parser("retry", help="Re-submit the pending command of a worker")
    s_retry.add_argument("identity", help="Container id of the worker")

    args = p.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s", stream=sys.stderr)

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("main:app", host=settings.api_host, port=settings.api_port)
        return 0

    if args.cmd == "run":
        return _run_headless()

    base = args.api.rstrip("/")

    if args.cmd == "status":
        _print(requests.get(f"{base}/health", timeout=10).json())
        return 0

    if args.cmd == "workers":
        _print(requests.get(f"{base}/workers", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.level:
            params["level"] = args.level
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "retry":
        r = requests.post(f"{base}/workers/{args.identity}/retry", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
