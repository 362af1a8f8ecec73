#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time

import httpx


def main() -> int:
    base_url = os.getenv("RAGWAY_API_URL", "http://localhost:3000").rstrip("/")
    try:
        with httpx.Client(base_url=base_url, timeout=5) as client:
            live = client.get("/livez")
            print("/livez:", live.text)
            live.raise_for_status()
            # Give the service a moment to finish boot
            time.sleep(0.5)
            health = client.get("/health")
            print("/health:", health.text)
            # 503 means every subsystem is down; degraded still counts as up
            health.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"Compose smoke failed: {exc}", file=sys.stderr)
        return 1
    print("Compose smoke passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
