import os
import sys

import requests

base_url = os.getenv("SENDLY_BASE_URL", "http://localhost:8000").rstrip("/")
session_token = os.getenv("SENDLY_SESSION_TOKEN")
shop_domain = os.getenv("SENDLY_SHOP_DOMAIN")

if session_token:
    headers = {"Authorization": f"Bearer {session_token}"}
elif shop_domain:
    # Only accepted when ALLOW_SHOP_DOMAIN_HEADER is enabled (never in production).
    headers = {"X-Shopify-Shop-Domain": shop_domain}
else:
    raise RuntimeError("SENDLY_SESSION_TOKEN or SENDLY_SHOP_DOMAIN is required")


def main() -> int:
    ready_response = requests.get(f"{base_url}/ready", timeout=15)
    ready_response.raise_for_status()

    balance_response = requests.get(f"{base_url}/billing/balance", headers=headers, timeout=15)
    balance_response.raise_for_status()

    campaigns_response = requests.get(
        f"{base_url}/campaigns",
        headers=headers,
        params={"limit": 5, "offset": 0},
        timeout=15,
    )
    campaigns_response.raise_for_status()

    balance = balance_response.json()
    campaigns = campaigns_response.json()
    print(f"Database ready: {ready_response.json()['ok']}")
    print(f"Credits: {balance['credits']} ({balance['currency']})")
    print(f"Campaigns total: {campaigns['pagination']['total']}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"Sendly API probe failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
