"""Core infrastructure components."""

from clarafleet.core.config import Settings, get_settings
from clarafleet.core.logging import (
    get_logger,
    get_operation_id,
    set_operation_id,
    setup_logging,
)

__all__ = [
    "Settings",
    "get_logger",
    "get_operation_id",
    "get_settings",
    "set_operation_id",
    "setup_logging",
]
