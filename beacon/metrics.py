"""Device and platform metrics attached to session starts and crash reports."""
from __future__ import annotations

import platform


class MetricsProvider:
    """Caller-supplied metrics win; OS name and release fill the gaps."""

    def __init__(self, metrics: dict | None = None, app_version: str = "0.0") -> None:
        self._metrics = dict(metrics or {})
        self.app_version = app_version

    @property
    def platform(self) -> str:
        return platform.system()

    def collect(self) -> dict:
        m = dict(self._metrics)
        m.setdefault("_app_version", self.app_version)
        m.setdefault("_os", platform.system())
        m.setdefault("_os_version", platform.release())
        return m
