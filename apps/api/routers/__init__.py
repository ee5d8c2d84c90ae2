"""Routers package."""

from . import (
    health,
    accounts,
    billing,
    payments,
    readings,
    admin,
    error_reports,
)
