"""Ask a running uploadwatch process to resend failed dispatches.

Replay goes through the same ledger check as normal delivery, so pairs that
were delivered in the meantime are only cleared, never sent twice.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the dispatch-failure replay pass."""

    parser = argparse.ArgumentParser(description="Replay item/subscription pairs that exhausted retries.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--show-quota", action="store_true", help="also print the current quota window")
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.base_url}/internal/dispatch-failures/replay",
        params={"limit": args.limit},
        timeout=60.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))

    if args.show_quota:
        quota = httpx.get(f"{args.base_url}/quota", timeout=10.0)
        quota.raise_for_status()
        print(json.dumps(quota.json(), indent=2))


if __name__ == "__main__":
    main()
