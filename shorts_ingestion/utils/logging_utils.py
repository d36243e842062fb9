"""
Line-oriented run logging for the shorts load.

Every line has the form

    [YYYY-MM-DDTHH:MM:SSZ] TAG   <section> | <message>

where TAG is START, DONE, INFO, ERROR or FAIL. FAIL lines carry the failure
category (FetchFailure, CapacitySetFailure, WriteFailure, ...) at the start
of the message, so a single category can be grepped out of a run's output.
"""

from datetime import datetime, UTC
from typing import Optional


def _emit(tag: str, section: str, message: str, flush: bool = False) -> None:
    stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    print(f"[{stamp}] {tag:<5} {section} | {message}", flush=flush)


def log_section_start(section: str) -> None:
    _emit("START", section, "begin")


def log_section_complete(section: str, details: Optional[str] = None) -> None:
    """Close a section, optionally with a one-line outcome."""
    _emit("DONE", section, details or "ok")


def log_progress(section: str, message: str, *, flush: bool = False) -> None:
    _emit("INFO", section, message, flush=flush)


def log_error(section: str, error: Exception | str) -> None:
    _emit("ERROR", section, str(error), flush=True)


def log_failure(category: str, section: str, error: Exception | str) -> None:
    """
    Record a failure of a named category.

    Args:
        category (str): Failure category, e.g. 'FetchFailure' or 'WriteFailure'.
        section (str): Section where the failure occurred.
        error (Exception | str): Exception instance or error message.
    """
    _emit("FAIL", section, f"{category}: {error}", flush=True)
