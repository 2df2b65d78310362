"""NI-DAQmx analog input device session.

Provides :class:`NIDev`, which owns one DAQmx task handle and sequences the
calls of a buffered finite acquisition::

    create/load task -> add inputs -> configure timing -> start
    -> wait until done -> read buffer -> stop -> (reconfigure | clear)

Architecture
------------
The session never calls nidaqmx directly.  Every hardware interaction goes
through a driver object implementing
:class:`~daqnidaqmx.driver.DAQmxDriver`, whose methods return raw status
codes; :meth:`NIDev._check` turns nonzero codes into
:class:`~daqnidaqmx.errors.DriverError`.  The channel registry is always
rebuilt from the channel list the task reports, never from caller input.

Operations on one session are not thread-safe and must be serialized by
the caller.  The exceptions are :meth:`NIDev.stop` and :meth:`NIDev.clear`,
which may be called from another thread to abort a pending
:meth:`NIDev.read`.

Examples
--------
>>> with NIDev("pressure") as dev:
...     dev.add_input_indices("Dev1", range(0, 4), names="p",
...                           min_val=-10.0, max_val=10.0)
...     dev.configure(rate=1000.0, duration=2.0)
...     mdata = dev.acquire()
>>> mdata.data.shape
(4, 2000)
"""

from __future__ import annotations

import json
import logging
import pathlib
import threading
import time
import warnings
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Any, Sequence

import numpy as np
from nidaqmx import constants

from .driver import DAQmxDriver, NidaqmxDriver, check_status
from .errors import (
    AcquisitionAborted,
    AcquisitionTimeout,
    ConfigError,
    DriverError,
)
from .measurement import (
    DaqChannels,
    InputConfig,
    MeasData,
    SamplingRate,
    TimingConfig,
)
from .utils import (
    ChannelIndices,
    expand_physical_channels,
    physical_channels,
    split_channel_list,
    synthesize_names,
)

logger = logging.getLogger("daqnidaqmx.device")

POLL_INTERVAL = 0.05


def _toml_str(value: str) -> str:
    # JSON string escapes are valid TOML basic-string escapes.
    return json.dumps(value)


class NIDev:
    """Device session around one NI-DAQmx analog input task.

    Parameters
    ----------
    devname : str
        Task name used by NI-DAQmx.  With ``load_existing=True`` this is
        the name of a task saved in NI MAX.
    load_existing : bool, optional
        Load a task configured in NI MAX instead of creating a new one.
        The channel registry and sampling configuration are read back
        from the loaded task.
    driver : DAQmxDriver, optional
        Driver call surface.  Defaults to :class:`NidaqmxDriver`.

    Raises
    ------
    DriverError
        If the driver refuses to create or load the task.  When a loaded
        task cannot be inspected, the handle is released before the error
        propagates.
    """

    def __init__(
        self,
        devname: str,
        load_existing: bool = False,
        driver: DAQmxDriver | None = None,
    ) -> None:
        self.devname = devname
        self.load_existing = load_existing
        self.driver: DAQmxDriver = driver if driver is not None else NidaqmxDriver()

        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._running = False
        self._handle: Any | None = None

        self.chans = DaqChannels()
        self.sampling: SamplingRate | None = None
        self.timing: TimingConfig | None = None
        self.inputs: list[InputConfig] = []
        self._units: list[str] = []

        if load_existing:
            status, handle = self.driver.load_task(devname)
            self._check(status, "DAQmxLoadTask")
        else:
            status, handle = self.driver.create_task(devname)
            self._check(status, "DAQmxCreateTask")
        self._handle = handle
        logger.debug(
            "Task '%s' %s.", devname, "loaded" if load_existing else "created"
        )

        if load_existing:
            try:
                self._read_back_loaded_task()
            except BaseException:
                self._release()
                raise

    def __repr__(self) -> str:
        state = "cleared" if self._handle is None else (
            "running" if self._running else "idle"
        )
        return (
            f"{self.devtype}({self.devname!r}, channels={len(self.chans)}, "
            f"state={state})"
        )

    # -- Introspection -------------------------------------------------------

    @property
    def devtype(self) -> str:
        return type(self).__name__

    @property
    def handle(self) -> Any:
        """The native task handle.

        Raises
        ------
        RuntimeError
            If the task has been cleared.
        """
        if self._handle is None:
            raise RuntimeError(
                f"Task '{self.devname}' has been cleared. "
                "Create a new NIDev to acquire again."
            )
        return self._handle

    @property
    def is_running(self) -> bool:
        """``True`` between :meth:`start` and :meth:`stop`."""
        return self._running

    def num_channels(self) -> int:
        """Number of channels the task reports."""
        status, num = self.driver.get_task_num_chans(self.handle)
        self._check(status, "DAQmxGetTaskNumChans")
        return num

    def channel_names(self) -> list[str]:
        """Channel names in hardware order."""
        return list(self.chans.names)

    # -- Channel configuration -----------------------------------------------

    def add_input(
        self,
        chans: str,
        names: str = "",
        terminal_config: constants.TerminalConfiguration | int = (
            constants.TerminalConfiguration.DEFAULT
        ),
        min_val: float = 0.0,
        max_val: float = 5.0,
        units: constants.VoltageUnits | int = constants.VoltageUnits.VOLTS,
        custom_scale_name: str = "",
    ) -> None:
        """Add analog voltage input channels to the task.

        Parameters
        ----------
        chans : str
            Physical channels, e.g. ``"Dev1/ai0"`` or ``"Dev1/ai0:3"``.
        names : str, optional
            Comma separated channel names.  ``""`` uses the physical names.
        terminal_config : TerminalConfiguration, optional
            Input wiring mode (default, RSE, NRSE, differential or
            pseudo-differential).
        min_val, max_val : float, optional
            Expected input range, in *units*.
        units : VoltageUnits, optional
            ``VOLTS`` or ``FROM_CUSTOM_SCALE``.
        custom_scale_name : str, optional
            Name of an NI MAX scale, used with ``FROM_CUSTOM_SCALE``.

        Raises
        ------
        DriverError
            If the driver rejects the channels.
        """
        handle = self.handle
        terminal_config = constants.TerminalConfiguration(terminal_config)
        units = constants.VoltageUnits(units)

        status = self.driver.create_ai_voltage_chan(
            handle,
            chans,
            names,
            terminal_config.value,
            float(min_val),
            float(max_val),
            units.value,
            custom_scale_name,
        )
        self._check(status, "DAQmxCreateAIVoltageChan")

        config = InputConfig(
            physical_channels=chans,
            names=names,
            terminal_config=terminal_config,
            min_val=float(min_val),
            max_val=float(max_val),
            units=units,
            custom_scale_name=custom_scale_name,
        )
        # The task owns these channels now, whether or not the registry
        # refresh below succeeds.
        self.inputs.append(config)
        nadded = len(expand_physical_channels(chans))
        self._units.extend([config.unit_label] * nadded)

        self._refresh_channels(
            ",".join(cfg.physical_channels for cfg in self.inputs)
        )
        logger.debug(
            "Added inputs %s to '%s'; channels are now %s.",
            chans, self.devname, list(self.chans.names),
        )

    def add_input_indices(
        self,
        device_name: str,
        indices: ChannelIndices,
        names: str | Sequence[str] = "",
        terminal_config: constants.TerminalConfiguration | int = (
            constants.TerminalConfiguration.DIFF
        ),
        prefix: str = "ai",
        min_val: float = 0.0,
        max_val: float = 5.0,
        units: constants.VoltageUnits | int = constants.VoltageUnits.VOLTS,
        custom_scale_name: str = "",
    ) -> None:
        """Add analog voltage inputs given a device name and channel numbers.

        ``indices`` given as a unit-step ``range`` becomes a compact
        ``Dev1/ai1:4`` specification; lists are spelled out.  A string
        *names* is used as a prefix (``"p"`` -> ``p0, p1, ...``); a
        sequence must hold one name per channel.

        Raises
        ------
        ConfigError
            Empty *indices* or *names* not matching the channel count.
        DriverError
            If the driver rejects the channels.
        """
        chans = physical_channels(device_name, indices, prefix)
        chnames = ",".join(synthesize_names(names, indices))
        self.add_input(
            chans,
            names=chnames,
            terminal_config=terminal_config,
            min_val=min_val,
            max_val=max_val,
            units=units,
            custom_scale_name=custom_scale_name,
        )

    # -- Timing --------------------------------------------------------------

    def configure(
        self,
        source: str = "",
        sample_mode: constants.AcquisitionType | int = (
            constants.AcquisitionType.FINITE
        ),
        active_edge: constants.Edge | int = constants.Edge.RISING,
        *,
        rate: float | None = None,
        period: float | None = None,
        nsamples: int | None = None,
        duration: float | None = None,
    ) -> None:
        """Configure the sample clock.

        At most one of *rate* / *period* and at most one of *nsamples* /
        *duration* may be given.  When a pair is omitted entirely, the
        value stored by the previous successful configuration is reused.
        *duration* is converted with ``round(duration / period)``.

        Parameters
        ----------
        source : str, optional
            Sample clock terminal; ``""`` uses the onboard clock.
        sample_mode : AcquisitionType, optional
            ``FINITE`` by default.
        active_edge : Edge, optional
            ``RISING`` by default.
        rate : float, optional
            Samples per second per channel.
        period : float, optional
            Seconds between samples.
        nsamples : int, optional
            Samples per channel.
        duration : float, optional
            Acquisition length in seconds.

        Raises
        ------
        ConfigError
            Both members of a pair given, nothing stored to reuse, or a
            non-positive rate or sample count.
        DriverError
            If the driver rejects the timing.
        """
        if rate is not None and period is not None:
            raise ConfigError(
                "Parameters 'rate' and 'period' are mutually exclusive."
            )
        if nsamples is not None and duration is not None:
            raise ConfigError(
                "Parameters 'nsamples' and 'duration' are mutually exclusive."
            )

        if rate is not None:
            rate = float(rate)
        elif period is not None:
            if period <= 0:
                raise ConfigError(f"period must be positive, got {period}.")
            rate = 1.0 / period
        elif self.sampling is not None:
            rate = self.sampling.rate
        else:
            raise ConfigError(
                "No sampling rate has been configured yet. Pass rate or period."
            )
        if rate <= 0:
            raise ConfigError(f"rate must be positive, got {rate}.")
        if period is None:
            period = 1.0 / rate

        if nsamples is not None:
            nsamples = int(nsamples)
        elif duration is not None:
            nsamples = round(duration / period)
        elif self.sampling is not None:
            nsamples = self.sampling.nsamples
        else:
            raise ConfigError(
                "No sample count has been configured yet. "
                "Pass nsamples or duration."
            )
        if nsamples < 1:
            raise ConfigError(
                f"The acquisition must have at least one sample, got {nsamples}."
            )

        sample_mode = constants.AcquisitionType(sample_mode)
        active_edge = constants.Edge(active_edge)
        status = self.driver.cfg_samp_clk_timing(
            self.handle,
            source,
            rate,
            active_edge.value,
            sample_mode.value,
            nsamples,
        )
        self._check(status, "DAQmxCfgSampClkTiming")

        self.timing = TimingConfig(
            rate=rate,
            nsamples=nsamples,
            source=source,
            sample_mode=sample_mode,
            active_edge=active_edge,
        )
        self.sampling = SamplingRate(rate, nsamples, datetime.now())
        logger.debug(
            "Configured '%s': rate=%g Hz, nsamples=%d, mode=%s.",
            self.devname, rate, nsamples, sample_mode.name,
        )

    # -- Task lifecycle ------------------------------------------------------

    def start(self) -> None:
        """Start the task and record the start time.

        Channels and timing are not validated here; whatever the driver
        reports is raised as :class:`DriverError`.
        """
        handle = self.handle
        if self.sampling is not None:
            self.sampling = replace(self.sampling, time=datetime.now())
        self._abort.clear()
        status = self.driver.start_task(handle)
        # A warning status still leaves the task running.
        self._running = status >= 0
        self._check(status, "DAQmxStartTask")
        logger.debug("Task '%s' started.", self.devname)

    def is_finished(self) -> bool:
        """Non-blocking check whether the task has completed."""
        status, done = self.driver.is_task_done(self.handle)
        self._check(status, "DAQmxIsTaskDone")
        return done

    def is_reading(self) -> bool:
        return not self.is_finished()

    def wait(
        self, timeout: float | None = None, poll_interval: float = POLL_INTERVAL
    ) -> None:
        """Block until the task reports completion.

        Parameters
        ----------
        timeout : float, optional
            Maximum time to wait in seconds.  ``None`` waits forever.
        poll_interval : float, optional
            Delay between completion checks.

        Raises
        ------
        AcquisitionTimeout
            If *timeout* elapsed.  The task is left running.
        AcquisitionAborted
            If :meth:`stop` or :meth:`clear` was called meanwhile.
        """
        handle = self.handle
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._abort.is_set():
                raise AcquisitionAborted(
                    f"Acquisition on '{self.devname}' was stopped."
                )
            status, done = self.driver.is_task_done(handle)
            if status != 0 and self._handle is None:
                raise AcquisitionAborted(
                    f"Task '{self.devname}' was cleared while waiting."
                )
            self._check(status, "DAQmxIsTaskDone")
            if done:
                # stop() makes the task report done; do not mistake it for data.
                if self._abort.is_set():
                    raise AcquisitionAborted(
                        f"Acquisition on '{self.devname}' was stopped."
                    )
                return

            delay = poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AcquisitionTimeout(
                        f"Task '{self.devname}' did not finish within "
                        f"{timeout} s."
                    )
                delay = min(delay, remaining)
            self._abort.wait(delay)

    def read(
        self, timeout: float | None = None, poll_interval: float = POLL_INTERVAL
    ) -> MeasData:
        """Wait for completion, read the buffer and stop the task.

        Parameters
        ----------
        timeout, poll_interval : float, optional
            Forwarded to :meth:`wait`.

        Returns
        -------
        MeasData
            ``data`` has shape ``(nchannels, nsamples)`` in registry order.

        Raises
        ------
        ConfigError
            If the sampling has never been configured.
        AcquisitionTimeout, AcquisitionAborted
            See :meth:`wait`.
        DriverError
            If any driver call fails.
        """
        if self.sampling is None:
            raise ConfigError(
                f"Sampling of '{self.devname}' is not configured. "
                "Call configure() before reading."
            )
        self.wait(timeout, poll_interval)

        nch = self.num_channels()
        nsamples = self.sampling.nsamples
        # Scan-major: the values of every channel for sample i are contiguous.
        buffer = np.zeros((nsamples, nch), dtype=np.float64)
        status, nread = self.driver.read_analog_f64(
            self.handle,
            nsamples,
            constants.WAIT_INFINITELY,
            constants.FillMode.GROUP_BY_SCAN_NUMBER.value,
            buffer,
        )
        self._check(status, "DAQmxReadAnalogF64")
        if nread < nsamples:
            logger.warning(
                "Task '%s' returned %d of %d samples per channel.",
                self.devname, nread, nsamples,
            )

        self.stop()

        units = (self._units + [""] * nch)[:nch]
        return MeasData(
            devname=self.devname,
            devtype=self.devtype,
            sampling=self.sampling,
            data=buffer[:nread].T,
            chans=self.chans,
            units=tuple(units),
        )

    def acquire(
        self, timeout: float | None = None, poll_interval: float = POLL_INTERVAL
    ) -> MeasData:
        """:meth:`start` followed by :meth:`read`."""
        self.start()
        return self.read(timeout, poll_interval)

    def acquire_async(self, timeout: float | None = None) -> Future:
        """Run :meth:`acquire` on the session's worker thread.

        Returns
        -------
        concurrent.futures.Future
            Resolves to the :class:`MeasData`, or to the exception
            :meth:`acquire` raised.
        """
        self.handle  # raises once cleared
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"daqnidaqmx-{self.devname}"
            )
        return self._executor.submit(self.acquire, timeout)

    def samples_read(self) -> int:
        """Samples per channel acquired so far in the current run."""
        status, total = self.driver.get_read_total_samp_per_chan_acquired(
            self.handle
        )
        self._check(status, "DAQmxGetReadTotalSampPerChanAcquired")
        return total

    def stop(self) -> None:
        """Stop the task, keeping its configuration.

        Safe to call repeatedly and from another thread while
        :meth:`read` is waiting.  The driver is asked to stop even when
        the session believes the task is idle.
        """
        with self._lock:
            handle = self.handle
            self._abort.set()
            # Stopping a stopped task is a no-op for the driver.
            status = self.driver.stop_task(handle)
            self._check(status, "DAQmxStopTask")
            self._running = False
        logger.debug("Task '%s' stopped.", self.devname)

    def clear(self) -> None:
        """Release the task handle.

        The session is unusable afterwards.  Calling :meth:`clear` again
        does nothing.  The handle is forgotten even when the driver
        reports an error, so it is never released twice.
        """
        with self._lock:
            if self._handle is None:
                return
            handle, self._handle = self._handle, None
            self._abort.set()
            self._running = False
            executor, self._executor = self._executor, None

        if executor is not None:
            executor.shutdown(wait=False)
        status = self.driver.clear_task(handle)
        self._check(status, "DAQmxClearTask")
        logger.debug("Task '%s' cleared.", self.devname)

    # -- TOML config persistence --------------------------------------------

    def save_config(self, path: str | pathlib.Path) -> None:
        """Write the session configuration to a TOML file.

        The file lists the task, the last timing configuration and every
        successful :meth:`add_input` call, and can be loaded with
        :meth:`from_config`.  Enum values are written by member name.
        """
        lines: list[str] = []

        lines.append("[task]")
        lines.append(f"name = {_toml_str(self.devname)}")
        lines.append(f"load_existing = {'true' if self.load_existing else 'false'}")
        lines.append("")

        if self.timing is not None:
            timing = self.timing
            lines.append("[timing]")
            lines.append(f"rate = {float(timing.rate)!r}")
            lines.append(f"nsamples = {timing.nsamples}")
            lines.append(f"source = {_toml_str(timing.source)}")
            lines.append(f'sample_mode = "{timing.sample_mode.name}"')
            lines.append(f'active_edge = "{timing.active_edge.name}"')
            lines.append("")

        for cfg in self.inputs:
            lines.append("[[inputs]]")
            lines.append(f"physical_channels = {_toml_str(cfg.physical_channels)}")
            lines.append(f"names = {_toml_str(cfg.names)}")
            lines.append(f'terminal_config = "{cfg.terminal_config.name}"')
            lines.append(f"min_val = {cfg.min_val!r}")
            lines.append(f"max_val = {cfg.max_val!r}")
            lines.append(f'units = "{cfg.units.name}"')
            lines.append(f"custom_scale_name = {_toml_str(cfg.custom_scale_name)}")
            lines.append("")

        pathlib.Path(path).write_text("\n".join(lines), encoding="utf-8")
        logger.debug("Saved configuration of '%s' to %s.", self.devname, path)

    @classmethod
    def from_config(
        cls, path: str | pathlib.Path, driver: DAQmxDriver | None = None
    ) -> NIDev:
        """Create a configured session from a TOML file.

        Parameters
        ----------
        path : str or pathlib.Path
            File written by :meth:`save_config` (or by hand).
        driver : DAQmxDriver, optional
            Forwarded to the constructor.

        Returns
        -------
        NIDev
            Inputs added and timing configured, not started.

        Raises
        ------
        ConfigError
            Missing ``[task]`` section or an unknown enum member name.
        tomllib.TOMLDecodeError
            On syntactically invalid TOML.
        """
        try:
            import tomllib
        except ModuleNotFoundError:
            import tomli as tomllib  # type: ignore[no-redef]

        with open(path, "rb") as fh:
            data = tomllib.load(fh)

        if "task" not in data or "name" not in data["task"]:
            raise ConfigError(
                "TOML file is missing the required [task] section with a name."
            )
        task_section = data["task"]
        inputs = [_input_from_toml(section) for section in data.get("inputs", [])]
        timing = _timing_from_toml(data["timing"]) if "timing" in data else None

        dev = cls(
            task_section["name"],
            load_existing=bool(task_section.get("load_existing", False)),
            driver=driver,
        )
        try:
            for cfg in inputs:
                dev.add_input(
                    cfg.physical_channels,
                    names=cfg.names,
                    terminal_config=cfg.terminal_config,
                    min_val=cfg.min_val,
                    max_val=cfg.max_val,
                    units=cfg.units,
                    custom_scale_name=cfg.custom_scale_name,
                )
            if timing is not None:
                dev.configure(
                    timing.source,
                    timing.sample_mode,
                    timing.active_edge,
                    rate=timing.rate,
                    nsamples=timing.nsamples,
                )
        except BaseException:
            dev._release()
            raise
        return dev

    # -- Internal helpers ----------------------------------------------------

    def _check(self, status: int, call: str) -> None:
        try:
            check_status(self.driver, status)
        except DriverError as exc:
            logger.error("%s failed on task '%s': %s", call, self.devname, exc)
            raise

    def _refresh_channels(self, physical: str = "") -> None:
        status, text = self.driver.get_task_channels(self.handle)
        self._check(status, "DAQmxGetTaskChannels")
        self.chans = DaqChannels(split_channel_list(text), physical)

    def _read_back_loaded_task(self) -> None:
        self._refresh_channels()
        self._units = [""] * len(self.chans)

        status, rate = self.driver.get_samp_clk_rate(self.handle)
        self._check(status, "DAQmxGetSampClkRate")
        status, nsamples = self.driver.get_samp_quant_samp_per_chan(self.handle)
        self._check(status, "DAQmxGetSampQuantSampPerChan")
        # On-demand tasks have no sample clock; leave sampling unset for those.
        if rate > 0 and nsamples > 0:
            self.sampling = SamplingRate(rate, nsamples, datetime.now())

    def _release(self) -> None:
        """Clear the handle on an error path without masking the error."""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        status = self.driver.clear_task(handle)
        if status != 0:
            logger.warning(
                "DAQmxClearTask returned %d while releasing '%s'.",
                status, self.devname,
            )

    # -- Context manager ------------------------------------------------------

    def __enter__(self) -> NIDev:
        """Enter the runtime context; return ``self``."""
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        """Clear the task.

        A failure while clearing is reported as a warning so it does not
        mask an exception raised in the ``with`` block.
        """
        try:
            self.clear()
        except Exception as exc:
            warnings.warn(str(exc), stacklevel=2)


def _enum_member(enum_cls: Any, name: str, field: str) -> Any:
    try:
        return enum_cls[name]
    except KeyError:
        raise ConfigError(
            f"Invalid {field}: '{name}'. "
            f"Valid values: {[m.name for m in enum_cls]}"
        ) from None


def _input_from_toml(section: dict[str, Any]) -> InputConfig:
    if "physical_channels" not in section:
        raise ConfigError("Every [[inputs]] entry needs physical_channels.")
    return InputConfig(
        physical_channels=section["physical_channels"],
        names=section.get("names", ""),
        terminal_config=_enum_member(
            constants.TerminalConfiguration,
            section.get("terminal_config", "DEFAULT"),
            "terminal_config",
        ),
        min_val=float(section.get("min_val", 0.0)),
        max_val=float(section.get("max_val", 5.0)),
        units=_enum_member(
            constants.VoltageUnits, section.get("units", "VOLTS"), "units"
        ),
        custom_scale_name=section.get("custom_scale_name", ""),
    )


def _timing_from_toml(section: dict[str, Any]) -> TimingConfig:
    if "rate" not in section or "nsamples" not in section:
        raise ConfigError("The [timing] section needs rate and nsamples.")
    return TimingConfig(
        rate=float(section["rate"]),
        nsamples=int(section["nsamples"]),
        source=section.get("source", ""),
        sample_mode=_enum_member(
            constants.AcquisitionType,
            section.get("sample_mode", "FINITE"),
            "sample_mode",
        ),
        active_edge=_enum_member(
            constants.Edge, section.get("active_edge", "RISING"), "active_edge"
        ),
    )
