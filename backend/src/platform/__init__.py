"""
Platform-level helpers shared by billing services, jobs and routes.

- clock: injectable time source and UTC normalisation
"""

from src.platform.clock import Clock, utc_now, ensure_utc

__all__ = ["Clock", "utc_now", "ensure_utc"]
