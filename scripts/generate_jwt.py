from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

KNOWN_ROLES = ("admin", "agent", "service")

# Typical callers: the form relay and WhatsApp webhook relay use "service",
# dashboard users get "agent" scoped to their workspace.
PRESETS = {
    "webhook-relay": ("service",),
    "dashboard-agent": ("agent",),
    "workspace-admin": ("admin", "agent"),
}


def build_claims(
    *, subject: str, roles: list[str], hours: int, workspace_id: Optional[str]
) -> dict:
    claims = {
        "sub": subject,
        "roles": roles,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=hours),
    }
    if workspace_id:
        claims["workspaceId"] = workspace_id
    return claims


def main() -> int:
    parser = argparse.ArgumentParser(description="Mint a bearer token for the Lead Autopilot API.")
    parser.add_argument("--secret", default=os.getenv("JWT_SECRET", ""), help="Defaults to $JWT_SECRET.")
    parser.add_argument("--subject", required=True)
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--roles", help=f"Comma-separated subset of: {','.join(KNOWN_ROLES)}.")
    group.add_argument("--preset", choices=sorted(PRESETS))
    parser.add_argument("--workspace", default=None, help="Restrict the token to one workspace.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default=os.getenv("JWT_ALGORITHM", "HS256"))
    args = parser.parse_args()

    if not args.secret:
        print("missing --secret (or JWT_SECRET)", file=sys.stderr)
        return 2
    if args.preset:
        roles = list(PRESETS[args.preset])
    else:
        roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(KNOWN_ROLES))
    if unknown or not roles:
        print(f"unknown or empty roles: {unknown or roles}", file=sys.stderr)
        return 2

    claims = build_claims(
        subject=args.subject, roles=roles, hours=args.hours, workspace_id=args.workspace
    )
    print(jwt.encode(claims, args.secret, algorithm=args.algorithm))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
