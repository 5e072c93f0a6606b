"""Utility functions for CamHub."""

from camhub.utils.timezone import ensure_utc, epoch_millis, to_utc_isoformat, utc_now

__all__ = ["utc_now", "ensure_utc", "to_utc_isoformat", "epoch_millis"]
