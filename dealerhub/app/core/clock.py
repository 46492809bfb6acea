from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Horloge injectable : tous les horodatages sont en UTC "naïf" (colonnes DateTime sans tz).
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
