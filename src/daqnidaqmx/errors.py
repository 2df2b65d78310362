"""Exception types raised by daqnidaqmx.

``DriverError`` carries the numeric NI-DAQmx status code together with the
message the driver reports for it.  ``ConfigError`` is raised before any
driver call when the caller passes an inconsistent set of arguments.
"""

from __future__ import annotations

from typing import Any


class DriverError(Exception):
    """A nonzero status returned by the NI-DAQmx driver.

    Parameters
    ----------
    code : int
        DAQmx status code.  Negative values are errors, positive values
        are warnings.
    message : str
        Human-readable description resolved from the driver.
    """

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"DAQmx status {code}: {message}")
        self.code = code
        self.message = message

    @classmethod
    def from_status(cls, driver: Any, code: int) -> DriverError:
        """Build the exception, looking up the message from *driver*."""
        from .driver import error_message

        return cls(code, error_message(driver, code))

    @property
    def is_warning(self) -> bool:
        """``True`` for positive (warning) status codes."""
        return self.code > 0


class ConfigError(ValueError):
    """Invalid combination of arguments supplied by the caller."""


class AcquisitionTimeout(TimeoutError):
    """The task did not report completion within the requested timeout."""


class AcquisitionAborted(RuntimeError):
    """The completion wait was interrupted by ``stop()`` or ``clear()``."""
