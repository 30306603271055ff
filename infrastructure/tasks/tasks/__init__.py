"""Task modules grouped by domain.

Import side effects register Celery tasks once this package is imported.
"""
from . import events  # noqa: F401 to register tasks
from . import referrals  # noqa: F401

__all__ = ["events", "referrals"]
