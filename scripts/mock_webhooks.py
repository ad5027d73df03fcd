from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from uuid import uuid4

from backend.sampledesk.services.webhooks import sign_payload


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Replay a chat conversation against a local Sample Desk API.",
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--sender", required=True, help="Sender address, e.g. 5511900000003@c.us")
    parser.add_argument(
        "messages",
        nargs="+",
        help="Messages to send in order. Prefix with 'select:' to send a list selection id.",
    )
    parser.add_argument("--secret", default="")
    parser.add_argument("--token", default="", help="Bearer token with the service or admin role.")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/messages"
    for message in args.messages:
        payload: dict[str, str] = {"event_id": f"evt_mock_{uuid4().hex[:12]}", "sender_id": args.sender}
        if message.startswith("select:"):
            payload["selection_id"] = message[len("select:"):]
        else:
            payload["body"] = message
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers["X-Hub-Signature-256"] = sign_payload(body, args.secret)
        if args.token:
            headers["Authorization"] = f"Bearer {args.token}"
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {message!r} {response}")
        if status_code >= 400:
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
