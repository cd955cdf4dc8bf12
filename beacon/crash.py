"""Crash report formatting for exceptions raised by the host application."""
from __future__ import annotations

import traceback


def format_error(err) -> str:
    """Full traceback text for an exception, str() for anything else."""
    if isinstance(err, BaseException):
        return "".join(traceback.format_exception(type(err), err, err.__traceback__))
    return str(err)


def build_report(err, metrics: dict, run_seconds: int, nonfatal: bool,
                 logs: list[str] | None = None, segments: dict | None = None) -> dict:
    report = {
        "_os": metrics.get("_os"),
        "_os_version": metrics.get("_os_version"),
        "_error": format_error(err),
        "_app_version": metrics.get("_app_version"),
        "_run": run_seconds,
        "_not_os_specific": True,
        "_nonfatal": bool(nonfatal),
    }
    if logs:
        report["_logs"] = "\n".join(logs)
    if segments is not None:
        report["_custom"] = segments
    return report
