"""
Utility modules for the calendar sync backend.

This package contains shared helpers used across the application, mainly
timezone-aware datetime parsing and conversion.
"""

from utils.datetime_utils import ensure_utc, utc_now

__all__ = ['ensure_utc', 'utc_now']
