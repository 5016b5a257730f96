#!/usr/bin/env python3

import os
import sys
import urllib.request
import urllib.error

HEALTH_URL = os.environ.get("HEALTH_URL", "http://localhost:8080/health")
TIMEOUT = float(os.environ.get("HEALTH_TIMEOUT", "2"))


def main() -> None:
    try:
        with urllib.request.urlopen(HEALTH_URL, timeout=TIMEOUT) as response:
            if response.status != 200:
                print(f"Unhealthy: HTTP {response.status}", file=sys.stderr)
                sys.exit(1)
    except (urllib.error.URLError, TimeoutError) as exc:
        print(f"Unhealthy: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
