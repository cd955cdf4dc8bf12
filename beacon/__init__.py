"""Beacon - buffered analytics delivery.

Tracking calls (sessions, events, views, user details, crash reports) are
gated by consent, buffered in a persisted request queue and delivered one
request at a time by a periodic heartbeat.
"""
import logging

__version__ = "0.1.0"
SDK_NAME = "python_native_beacon"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from beacon.client import Beacon  # noqa: E402
from beacon.config import Config  # noqa: E402

__all__ = ["Beacon", "Config", "SDK_NAME", "__version__"]
