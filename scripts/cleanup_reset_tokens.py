#!/usr/bin/env python3
"""Delete password reset tokens that expired longer ago than RESET_TOKEN_RETENTION_DAYS.

Meant for cron:
    DATABASE_URL=postgresql://... python scripts/cleanup_reset_tokens.py
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    from meterauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        deleted = runtime.tokens.cleanup_expired_tokens()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Deleted {deleted} expired reset token(s)")


if __name__ == "__main__":
    main()
