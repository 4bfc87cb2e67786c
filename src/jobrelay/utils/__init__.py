"""Shared utilities for jobrelay."""

from jobrelay.utils.time import seconds_since, utc_now

__all__ = ["seconds_since", "utc_now"]
