"""Utility helpers for the coursetrack service."""

from coursetrack.utils.timeutils import ensure_utc_aware, utc_now


__all__ = ["ensure_utc_aware", "utc_now"]
