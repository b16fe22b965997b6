#!/usr/bin/env python3
"""
Mint a development access token for a patient, doctor or admin.

Usage:
    python scripts/issue_token.py <user_id> patient
    python scripts/issue_token.py <user_id> doctor --minutes 120

Tokens are normally issued by the identity provider; this is for local use only.
"""

import argparse
import sys
from datetime import timedelta
from uuid import UUID

import dotenv

dotenv.load_dotenv()

from clinicflow.core.security import create_access_token  # noqa: E402


def main() -> int:
    """Print a signed token for the given subject and role."""
    parser = argparse.ArgumentParser(description="Issue a development JWT")
    parser.add_argument("user_id", type=UUID, help="Patient, doctor or admin id")
    parser.add_argument("role", choices=["patient", "doctor", "admin"])
    parser.add_argument("--minutes", type=int, default=60, help="Token lifetime")
    args = parser.parse_args()

    token = create_access_token(
        {"sub": str(args.user_id), "role": args.role},
        expires_delta=timedelta(minutes=args.minutes),
    )
    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
