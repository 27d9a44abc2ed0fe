"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import ms_to_datetime, utc_now

__all__ = ["ms_to_datetime", "utc_now"]
