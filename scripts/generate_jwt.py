from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import jwt

KNOWN_ROLES = ("admin", "service")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a JWT for the Sample Desk API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True)
    parser.add_argument(
        "--roles",
        default="admin",
        help="Comma-separated roles: admin for the management API, service for the chat gateway.",
    )
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(KNOWN_ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    token = jwt.encode(payload, args.secret, algorithm=args.algorithm)
    print(token)


if __name__ == "__main__":
    main()
