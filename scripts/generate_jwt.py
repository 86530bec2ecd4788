from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate JWT for Support Desk API roles.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True)
    parser.add_argument("--roles", required=True, help="Comma-separated roles: admin, agent, service.")
    parser.add_argument("--agent-id", default=None, help="Desk user id the token acts as.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    if "agent" in roles and not args.agent_id:
        parser.error("--agent-id is required for agent tokens")
    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=args.hours),
    }
    if args.agent_id:
        payload["agent_id"] = args.agent_id
    token = jwt.encode(payload, args.secret, algorithm=args.algorithm)
    print(token)


if __name__ == "__main__":
    main()
