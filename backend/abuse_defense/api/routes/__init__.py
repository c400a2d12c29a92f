from . import (
    abuse,
    cron,
    health,
    security,
)

__all__ = [
    "abuse",
    "cron",
    "health",
    "security",
]
