"""Status-code call surface over the nidaqmx Task API.

Every method mirrors one ``DAQmx*`` C function.  Methods return the
integer status (``0`` is success, negative is an error, positive is a
warning), or a ``(status, value)`` tuple when the C function has an output
parameter.  Nothing in this module raises on a nonzero status; converting
status codes into :class:`~daqnidaqmx.errors.DriverError` is done by
:func:`check_status`.

Architecture
------------
:class:`NIDev` only talks to an object implementing :class:`DAQmxDriver`.
:class:`NidaqmxDriver` is the production implementation: the task handle
is a ``nidaqmx.task.Task`` and each call delegates to the matching Task
API method.  A ``DaqError`` raised by nidaqmx is turned back into its
``error_code``, and its text is kept so :meth:`get_error_string` can
report it.  Tests substitute a pure-Python fake with the same methods.

Notes
-----
nidaqmx reports positive (warning) statuses with ``warnings.warn``
instead of raising, so through :class:`NidaqmxDriver` they surface as
Python warnings and the call returns ``0``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import nidaqmx
import numpy as np
from nidaqmx import constants, stream_readers
from nidaqmx.errors import DaqError
from nidaqmx.system.storage import PersistedTask

from .errors import DriverError

logger = logging.getLogger("daqnidaqmx.driver")

ERROR_BUFFER_SIZE = 1000

# Returned by get_error_string when no text is known for a code.
LOOKUP_FAILED = -1


class DAQmxDriver(Protocol):
    """Driver calls required by :class:`~daqnidaqmx.device.NIDev`."""

    def create_task(self, name: str) -> tuple[int, Any]: ...

    def load_task(self, name: str) -> tuple[int, Any]: ...

    def clear_task(self, handle: Any) -> int: ...

    def start_task(self, handle: Any) -> int: ...

    def stop_task(self, handle: Any) -> int: ...

    def is_task_done(self, handle: Any) -> tuple[int, bool]: ...

    def create_ai_voltage_chan(
        self,
        handle: Any,
        physical_channel: str,
        name: str,
        terminal_config: int,
        min_val: float,
        max_val: float,
        units: int,
        custom_scale_name: str,
    ) -> int: ...

    def get_task_num_chans(self, handle: Any) -> tuple[int, int]: ...

    def get_task_channels(self, handle: Any) -> tuple[int, str]: ...

    def cfg_samp_clk_timing(
        self,
        handle: Any,
        source: str,
        rate: float,
        active_edge: int,
        sample_mode: int,
        samps_per_chan: int,
    ) -> int: ...

    def get_samp_clk_rate(self, handle: Any) -> tuple[int, float]: ...

    def get_samp_quant_samp_per_chan(self, handle: Any) -> tuple[int, int]: ...

    def read_analog_f64(
        self,
        handle: Any,
        samps_per_chan: int,
        timeout: float,
        fill_mode: int,
        buffer: np.ndarray,
    ) -> tuple[int, int]: ...

    def get_read_total_samp_per_chan_acquired(
        self, handle: Any
    ) -> tuple[int, int]: ...

    def get_error_string(self, code: int, buflen: int) -> tuple[int, str]: ...


class NidaqmxDriver:
    """:class:`DAQmxDriver` implemented with ``nidaqmx.task.Task``.

    Handles returned by :meth:`create_task` and :meth:`load_task` are the
    ``Task`` objects themselves.

    Raises
    ------
    nidaqmx.errors.DaqNotFoundError
        From :meth:`create_task` / :meth:`load_task` when the NI-DAQmx
        runtime is not installed.
    """

    def __init__(self) -> None:
        self._messages: dict[int, str] = {}

    def _status(self, exc: DaqError) -> int:
        # nidaqmx appends the status code to the text; it is kept separately.
        text = str(exc).split("\n\nStatus Code:")[0].strip()
        self._messages[exc.error_code] = text
        logger.debug("nidaqmx raised %d: %s", exc.error_code, text)
        return exc.error_code

    # -- Task lifecycle ------------------------------------------------------

    def create_task(self, name: str) -> tuple[int, Any]:
        try:
            return 0, nidaqmx.task.Task(new_task_name=name)
        except DaqError as exc:
            return self._status(exc), None

    def load_task(self, name: str) -> tuple[int, Any]:
        try:
            return 0, PersistedTask(name).load()
        except DaqError as exc:
            return self._status(exc), None

    def clear_task(self, handle: Any) -> int:
        try:
            handle.close()
        except DaqError as exc:
            return self._status(exc)
        return 0

    def start_task(self, handle: Any) -> int:
        try:
            handle.start()
        except DaqError as exc:
            return self._status(exc)
        return 0

    def stop_task(self, handle: Any) -> int:
        try:
            handle.stop()
        except DaqError as exc:
            return self._status(exc)
        return 0

    def is_task_done(self, handle: Any) -> tuple[int, bool]:
        try:
            return 0, bool(handle.is_task_done())
        except DaqError as exc:
            return self._status(exc), False

    # -- Channels ------------------------------------------------------------

    def create_ai_voltage_chan(
        self,
        handle: Any,
        physical_channel: str,
        name: str,
        terminal_config: int,
        min_val: float,
        max_val: float,
        units: int,
        custom_scale_name: str,
    ) -> int:
        try:
            handle.ai_channels.add_ai_voltage_chan(
                physical_channel,
                name_to_assign_to_channel=name,
                terminal_config=constants.TerminalConfiguration(terminal_config),
                min_val=min_val,
                max_val=max_val,
                units=constants.VoltageUnits(units),
                custom_scale_name=custom_scale_name,
            )
        except DaqError as exc:
            return self._status(exc)
        return 0

    def get_task_num_chans(self, handle: Any) -> tuple[int, int]:
        try:
            return 0, int(handle.number_of_channels)
        except DaqError as exc:
            return self._status(exc), 0

    def get_task_channels(self, handle: Any) -> tuple[int, str]:
        try:
            return 0, ", ".join(handle.channel_names)
        except DaqError as exc:
            return self._status(exc), ""

    # -- Timing --------------------------------------------------------------

    def cfg_samp_clk_timing(
        self,
        handle: Any,
        source: str,
        rate: float,
        active_edge: int,
        sample_mode: int,
        samps_per_chan: int,
    ) -> int:
        try:
            handle.timing.cfg_samp_clk_timing(
                rate,
                source=source,
                active_edge=constants.Edge(active_edge),
                sample_mode=constants.AcquisitionType(sample_mode),
                samps_per_chan=samps_per_chan,
            )
        except DaqError as exc:
            return self._status(exc)
        return 0

    def get_samp_clk_rate(self, handle: Any) -> tuple[int, float]:
        try:
            return 0, float(handle.timing.samp_clk_rate)
        except DaqError as exc:
            return self._status(exc), 0.0

    def get_samp_quant_samp_per_chan(self, handle: Any) -> tuple[int, int]:
        try:
            return 0, int(handle.timing.samp_quant_samp_per_chan)
        except DaqError as exc:
            return self._status(exc), 0

    # -- Reading -------------------------------------------------------------

    def read_analog_f64(
        self,
        handle: Any,
        samps_per_chan: int,
        timeout: float,
        fill_mode: int,
        buffer: np.ndarray,
    ) -> tuple[int, int]:
        """Read into *buffer* laid out according to *fill_mode*.

        ``GROUP_BY_SCAN_NUMBER`` expects shape ``(samps_per_chan,
        nchannels)``, ``GROUP_BY_CHANNEL`` the transpose.  The multi
        channel stream reader fills channel-major, so scan-major buffers
        are filled through a scratch array.
        """
        scan_major = (
            constants.FillMode(fill_mode) is constants.FillMode.GROUP_BY_SCAN_NUMBER
        )
        if buffer.dtype != np.float64 or buffer.ndim != 2:
            raise ValueError(
                "buffer must be a 2-D float64 array, "
                f"got dtype={buffer.dtype}, ndim={buffer.ndim}."
            )
        if scan_major:
            data = np.zeros((buffer.shape[1], buffer.shape[0]), dtype=np.float64)
        else:
            if not buffer.flags.c_contiguous:
                raise ValueError("buffer must be C-contiguous.")
            data = buffer

        reader = stream_readers.AnalogMultiChannelReader(handle.in_stream)
        try:
            nread = reader.read_many_sample(
                data,
                number_of_samples_per_channel=samps_per_chan,
                timeout=timeout,
            )
        except DaqError as exc:
            return self._status(exc), 0

        if scan_major:
            buffer[:nread] = data[:, :nread].T
        return 0, int(nread)

    def get_read_total_samp_per_chan_acquired(
        self, handle: Any
    ) -> tuple[int, int]:
        try:
            return 0, int(handle.in_stream.total_samp_per_chan_acquired)
        except DaqError as exc:
            return self._status(exc), 0

    # -- Diagnostics ---------------------------------------------------------

    def get_error_string(self, code: int, buflen: int) -> tuple[int, str]:
        """Text of the last ``DaqError`` seen for *code*, cut to *buflen*."""
        if code not in self._messages:
            return LOOKUP_FAILED, ""
        return 0, self._messages[code][: buflen - 1]


def error_message(
    driver: DAQmxDriver, code: int, buflen: int = ERROR_BUFFER_SIZE
) -> str:
    """Return the driver's description of status *code*.

    The lookup is itself a driver call; when it fails the generic
    ``"<code>: unknown error"`` text is returned instead of raising.
    """
    status, message = driver.get_error_string(code, buflen)
    if status != 0:
        logger.debug("Error string lookup for %d failed with %d.", code, status)
        return f"{code}: unknown error"
    return message


def check_status(driver: DAQmxDriver, status: int) -> None:
    """Raise :class:`DriverError` when *status* is nonzero."""
    if status != 0:
        raise DriverError.from_status(driver, status)
