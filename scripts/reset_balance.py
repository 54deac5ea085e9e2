#!/usr/bin/env python3
"""Script to reset the server-held balance of a running HaloChat API.

Only meaningful when the server runs with BALANCE_MODE=server.

Usage:
  python scripts/reset_balance.py [--url http://localhost:3000] [--force]
"""

import argparse
import os
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv

project_root = Path(__file__).parent.parent


def reset_balance(api_url: str, force: bool) -> int:
    """POST /api/reset-balance. Returns a process exit code."""
    print(f"🔄 Resetting balance at {api_url} ...")
    if not force:
        confirm = input("  This will zero the spend counter for every client. Continue? [y/N]: ")
        if confirm.lower() != "y":
            print("  Skipping reset.")
            return 0

    try:
        resp = requests.post(f"{api_url.rstrip('/')}/api/reset-balance", timeout=10)
    except requests.RequestException as e:
        print(f"  ❌ Could not reach the API: {e}")
        return 1

    if resp.status_code == 404:
        print("  ℹ️ Server uses client-managed balances; nothing to reset.")
        return 1
    if not resp.ok:
        print(f"  ❌ Reset failed ({resp.status_code}): {resp.text[:200]}")
        return 1

    body = resp.json()
    print(f"  ✅ Balance reset to ${body['balance']:.2f}")
    return 0


def main():
    load_dotenv(project_root / ".env")
    default_url = os.environ.get("API_URL", f"http://localhost:{os.environ.get('PORT', '3000')}")

    parser = argparse.ArgumentParser(description="Reset the HaloChat server-held balance.")
    parser.add_argument("--url", default=default_url, help="Base URL of the API")
    parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation prompt")
    args = parser.parse_args()

    sys.exit(reset_balance(args.url, args.force))


if __name__ == "__main__":
    main()
