"""
nervecord-check: print a bot's pending messages as JSON.

Prints nothing when the inbox is empty, so a cron job or poller can treat any
output as "there is work to do".

    NERVECORD_TOKEN=xxx NERVECORD_BOTNAME=clawdheart nervecord-check
"""
import json
import os
import sys
from typing import Optional

import httpx

DEFAULT_SERVER = "http://localhost:9999"


def build_client(server: str, token: str, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    return httpx.Client(
        base_url=server,
        headers={"Authorization": f"Bearer {token}"},
        timeout=10,
        transport=transport,
    )


def fetch_pending(client: httpx.Client, botname: str) -> list[dict]:
    resp = client.get("/messages", params={"to": botname, "status": "pending"})
    resp.raise_for_status()
    msgs = resp.json()
    if not isinstance(msgs, list):
        raise ValueError("expected a JSON list of messages")
    return msgs


def main(transport: Optional[httpx.BaseTransport] = None) -> int:
    server = os.getenv("NERVECORD_SERVER", DEFAULT_SERVER)
    token = os.getenv("NERVECORD_TOKEN")
    botname = os.getenv("NERVECORD_BOTNAME")
    if not token or not botname:
        print("NERVECORD_TOKEN and NERVECORD_BOTNAME required", file=sys.stderr)
        return 1

    with build_client(server, token, transport=transport) as client:
        try:
            msgs = fetch_pending(client, botname)
        except httpx.HTTPError as e:
            print(f"Request error: {e}", file=sys.stderr)
            return 1
        except ValueError as e:
            print(f"Parse error: {e}", file=sys.stderr)
            return 1

    if msgs:
        print(json.dumps(msgs, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
