#!/usr/bin/env python3
"""
Trigger a storage cleanup run on a running invitation media service.

Usage:
    MEDIA_ADMIN_TOKEN=... python scripts/trigger_cleanup.py [daily|weekly] [--base-url URL]
"""

import argparse
import json
import os
import sys
from typing import Any, Dict

import requests


class CleanupTrigger:
    """Calls the admin cleanup endpoints."""

    def __init__(self, base_url: str, token: str, timeout: float = 600):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["Authorization"] = f"Bearer {token}"

    def status(self) -> Dict[str, Any]:
        response = self.session.get(f"{self.base_url}/api/admin/cleanup/status", timeout=10)
        response.raise_for_status()
        return response.json()["data"]

    def trigger(self, cleanup_type: str) -> Dict[str, Any]:
        response = self.session.post(
            f"{self.base_url}/api/admin/cleanup",
            params={"type": cleanup_type},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["data"]


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("type", nargs="?", default="daily", choices=["daily", "weekly"])
    parser.add_argument("--base-url", default=os.getenv("MEDIA_API_URL", "http://localhost:8000"))
    args = parser.parse_args()

    token = os.getenv("MEDIA_ADMIN_TOKEN")
    if not token:
        print("MEDIA_ADMIN_TOKEN is not set", file=sys.stderr)
        sys.exit(2)

    trigger = CleanupTrigger(args.base_url, token)
    try:
        if trigger.status().get("is_running"):
            print("A cleanup is already running; nothing to do.")
            sys.exit(0)
        stats = trigger.trigger(args.type)
    except requests.RequestException as exc:
        print(f"Cleanup request failed: {exc}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(stats, indent=2))
    sys.exit(1 if stats.get("errors") else 0)


if __name__ == "__main__":
    main()
