"""Shared test fixtures: a fake DAQmx driver and the simulated device.

Mock Strategy
-------------
Unit tests never touch the NI-DAQmx runtime.  ``NIDev`` receives a
:class:`FakeDriver`, a pure-Python implementation of the status-code
driver surface that keeps just enough task state (channels, timing,
running flag) to answer the session's queries.  NI MAX discovery is
patched per test in test_utils.py.

Fixtures
--------
fake_driver
    A fresh :class:`FakeDriver`.
make_dev
    Factory creating an ``NIDev`` bound to ``fake_driver``.
simulated_device_name
    Name of the simulated device, or skip when it is not configured.
"""

from __future__ import annotations

import re
from typing import Any

import numpy as np
import pytest


# ---------------------------------------------------------------------------
# FakeDriver — status-code driver surface without hardware
# ---------------------------------------------------------------------------

ERR_INVALID_TASK = -200088
ERR_NAME_COUNT = -200461
ERR_TASK_NOT_FOUND = -200089
WARN_READ_OVERWRITE = 200526

ERROR_MESSAGES = {
    ERR_INVALID_TASK: "Task specified is invalid or does not exist.",
    ERR_NAME_COUNT: "Number of channel names does not match number of channels.",
    ERR_TASK_NOT_FOUND: "Task cannot be loaded. It does not exist in NI MAX.",
    WARN_READ_OVERWRITE: "Samples were overwritten before they were read.",
}

_RANGE_RE = re.compile(r"^(?P<base>.*?)(?P<first>\d+):(?P<last>\d+)$")


def expand_physical(spec: str) -> list[str]:
    """Expand ``Dev1/ai0:2,Dev1/ai5`` into individual physical channels."""
    out = []
    for part in (p.strip() for p in spec.split(",") if p.strip()):
        m = _RANGE_RE.match(part)
        if m:
            base = m.group("base")
            first, last = int(m.group("first")), int(m.group("last"))
            out.extend(f"{base}{i}" for i in range(first, last + 1))
        else:
            out.append(part)
    return out


def scan_pattern(nchannels: int, nsamples: int) -> np.ndarray:
    """Known data: channel ``c`` sample ``s`` has value ``100 * c + s``."""
    return 100.0 * np.arange(nchannels)[:, None] + np.arange(nsamples)[None, :]


class FakeDriver:
    """In-memory stand-in for :class:`daqnidaqmx.driver.NidaqmxDriver`.

    Attributes
    ----------
    fail : dict[str, int]
        Method name -> status returned instead of success.
    done_sequence : list[bool]
        Successive ``is_task_done`` answers while running; ``True`` once
        exhausted.
    saved_tasks : dict[str, dict]
        NI MAX tasks available to ``load_task`` (``channels``, ``rate``,
        ``nsamples``).
    calls : list[tuple[str, tuple]]
        Every call in order.
    """

    def __init__(self) -> None:
        self.fail: dict[str, int] = {}
        self.done_sequence: list[bool] = [False, True]
        self.saved_tasks: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.error_messages = dict(ERROR_MESSAGES)

        self._next_handle = 1
        self.tasks: dict[int, dict[str, Any]] = {}
        self.cleared: list[int] = []

    # -- helpers -------------------------------------------------------------

    def _record(self, name: str, *args: Any) -> int:
        self.calls.append((name, args))
        return self.fail.get(name, 0)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _new_task(self, **state: Any) -> int:
        handle = self._next_handle
        self._next_handle += 1
        task = {
            "channels": [],
            "rate": 0.0,
            "nsamples": 0,
            "running": False,
            "polls": [],
            "acquired": 0,
        }
        task.update(state)
        self.tasks[handle] = task
        return handle

    # -- task lifecycle ------------------------------------------------------

    def create_task(self, name):
        status = self._record("create_task", name)
        if status != 0:
            return status, None
        return 0, self._new_task(name=name)

    def load_task(self, name):
        status = self._record("load_task", name)
        if status != 0:
            return status, None
        if name not in self.saved_tasks:
            return ERR_TASK_NOT_FOUND, None
        saved = self.saved_tasks[name]
        return 0, self._new_task(
            name=name,
            channels=list(saved.get("channels", [])),
            rate=saved.get("rate", 0.0),
            nsamples=saved.get("nsamples", 0),
        )

    def clear_task(self, handle):
        status = self._record("clear_task", handle)
        if handle not in self.tasks:
            return ERR_INVALID_TASK
        self.cleared.append(handle)
        del self.tasks[handle]
        return status

    def start_task(self, handle):
        status = self._record("start_task", handle)
        # A warning status still starts the task.
        if status >= 0:
            task = self.tasks[handle]
            task["running"] = True
            task["polls"] = list(self.done_sequence)
        return status

    def stop_task(self, handle):
        status = self._record("stop_task", handle)
        if status == 0:
            # Stopping a stopped task is a no-op success.
            self.tasks[handle]["running"] = False
        return status

    def is_task_done(self, handle):
        status = self._record("is_task_done", handle)
        if handle not in self.tasks:
            return ERR_INVALID_TASK, False
        task = self.tasks[handle]
        if not task["running"]:
            return status, True
        done = task["polls"].pop(0) if task["polls"] else True
        if done:
            task["acquired"] = task["nsamples"]
        return status, done

    # -- channels ------------------------------------------------------------

    def create_ai_voltage_chan(self, handle, physical_channel, name,
                               terminal_config, min_val, max_val, units,
                               custom_scale_name):
        status = self._record(
            "create_ai_voltage_chan", handle, physical_channel, name,
            terminal_config, min_val, max_val, units, custom_scale_name,
        )
        if status != 0:
            return status
        physical = expand_physical(physical_channel)
        names = [n.strip() for n in name.split(",") if n.strip()]
        if not names:
            names = physical
        elif len(names) != len(physical):
            return ERR_NAME_COUNT
        self.tasks[handle]["channels"].extend(names)
        return 0

    def get_task_num_chans(self, handle):
        status = self._record("get_task_num_chans", handle)
        return status, len(self.tasks[handle]["channels"])

    def get_task_channels(self, handle):
        status = self._record("get_task_channels", handle)
        return status, ", ".join(self.tasks[handle]["channels"])

    # -- timing --------------------------------------------------------------

    def cfg_samp_clk_timing(self, handle, source, rate, active_edge,
                            sample_mode, samps_per_chan):
        status = self._record(
            "cfg_samp_clk_timing", handle, source, rate, active_edge,
            sample_mode, samps_per_chan,
        )
        if status == 0:
            self.tasks[handle]["rate"] = rate
            self.tasks[handle]["nsamples"] = samps_per_chan
        return status

    def get_samp_clk_rate(self, handle):
        status = self._record("get_samp_clk_rate", handle)
        return status, self.tasks[handle]["rate"]

    def get_samp_quant_samp_per_chan(self, handle):
        status = self._record("get_samp_quant_samp_per_chan", handle)
        return status, self.tasks[handle]["nsamples"]

    # -- reading -------------------------------------------------------------

    def read_analog_f64(self, handle, samps_per_chan, timeout, fill_mode, buffer):
        status = self._record(
            "read_analog_f64", handle, samps_per_chan, timeout, fill_mode,
            buffer.shape,
        )
        if status < 0:
            return status, 0
        nch = len(self.tasks[handle]["channels"])
        # Scan-major fill, as with DAQmx_Val_GroupByScanNumber.
        flat = scan_pattern(nch, samps_per_chan).T.ravel()
        buffer.reshape(-1)[: flat.size] = flat
        return status, samps_per_chan

    def get_read_total_samp_per_chan_acquired(self, handle):
        status = self._record("get_read_total_samp_per_chan_acquired", handle)
        return status, self.tasks[handle]["acquired"]

    # -- diagnostics ---------------------------------------------------------

    def get_error_string(self, code, buflen):
        self.calls.append(("get_error_string", (code, buflen)))
        if code not in self.error_messages:
            return -200000, ""
        return 0, self.error_messages[code][: buflen - 1]


@pytest.fixture
def fake_driver():
    """Provide a fresh :class:`FakeDriver`."""
    return FakeDriver()


@pytest.fixture
def make_dev(fake_driver):
    """Factory creating an ``NIDev`` that talks to ``fake_driver``."""
    from daqnidaqmx import NIDev

    def _make(name: str = "TestTask", load_existing: bool = False):
        return NIDev(name, load_existing=load_existing, driver=fake_driver)

    return _make


# ===========================================================================
# Simulated Device Fixtures — real NI-DAQmx runtime with a simulated device
# ===========================================================================

SIMULATED_DEVICE_NAME = "SimDev1"

SKIP_MSG = (
    f"Simulated device '{SIMULATED_DEVICE_NAME}' not found. "
    "Create a simulated PCIe-6361 named SimDev1 in NI MAX "
    "(or with nidaqmxconfig --import on Linux)."
)


@pytest.fixture(scope="session")
def simulated_device_name():
    """Provide the simulated device name if it exists, otherwise skip."""
    try:
        import nidaqmx.system

        devices = [d.name for d in nidaqmx.system.System.local().devices]
    except Exception as exc:
        pytest.skip(f"NI-DAQmx runtime not available: {exc}")
    if SIMULATED_DEVICE_NAME not in devices:
        pytest.skip(SKIP_MSG)
    return SIMULATED_DEVICE_NAME
