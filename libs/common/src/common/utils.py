from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import UTC, datetime

REDACTED = "***"


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def now_epoch_ms() -> int:
    return int(time.time() * 1000)


def redact_secrets(text: str, secrets: Iterable[str]) -> str:
    redacted = text
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, REDACTED)
    return redacted
