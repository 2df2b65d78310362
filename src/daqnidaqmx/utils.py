"""Channel specification helpers and NI MAX discovery.

The string helpers build the physical channel and channel name lists that
``DAQmxCreateAIVoltageChan`` expects from a device name and channel
indices.  The discovery helpers query the local NI-DAQmx system and are
useful for finding tasks that can be opened with ``load_existing=True``.
"""

from __future__ import annotations

import logging
import re
from typing import Sequence, Union

import nidaqmx.system

from .errors import ConfigError

logger = logging.getLogger("daqnidaqmx.utils")

ChannelIndices = Union[range, Sequence[int]]

_RANGE_RE = re.compile(r"^(?P<base>.*?)(?P<first>\d+):(?P<last>\d+)$")


# ---------------------------------------------------------------------------
# Channel specifications
# ---------------------------------------------------------------------------


def physical_channels(
    device_name: str, indices: ChannelIndices, prefix: str = "ai"
) -> str:
    """Build a DAQmx physical channel specification.

    Parameters
    ----------
    device_name : str
        Device name as shown in NI MAX (e.g. ``"Dev1"``).
    indices : range or sequence of int
        Channel numbers.  A ``range`` with unit step collapses to the
        compact ``first:last`` form; anything else is listed explicitly.
    prefix : str, optional
        Channel type prefix, ``"ai"`` by default.

    Returns
    -------
    str
        E.g. ``"Dev1/ai1:4"`` or ``"Dev1/ai1,Dev1/ai3,Dev1/ai5"``.

    Raises
    ------
    ConfigError
        If *indices* is empty.

    Examples
    --------
    >>> physical_channels("Dev1", range(1, 5))
    'Dev1/ai1:4'
    >>> physical_channels("Dev1", [1, 3, 5])
    'Dev1/ai1,Dev1/ai3,Dev1/ai5'
    """
    if len(indices) == 0:
        raise ConfigError("At least one channel index is required.")

    if isinstance(indices, range) and indices.step == 1:
        return f"{device_name}/{prefix}{indices[0]}:{indices[-1]}"
    return ",".join(f"{device_name}/{prefix}{i}" for i in indices)


def synthesize_names(
    names: str | Sequence[str], indices: ChannelIndices
) -> list[str]:
    """Resolve the channel names for *indices*.

    Parameters
    ----------
    names : str or sequence of str
        ``""`` keeps the physical names (an empty list is returned).  A
        string used with several indices is a prefix and produces
        ``prefix + str(index)`` for every index; with a single index it
        is used as the name itself.  A sequence must hold exactly one
        name per index.
    indices : range or sequence of int
        Channel numbers the names belong to.

    Returns
    -------
    list[str]

    Raises
    ------
    ConfigError
        If a sequence of names does not match the number of indices, or
        *names* is neither a string nor a sequence of strings.

    Examples
    --------
    >>> synthesize_names("ch", [0, 1, 2])
    ['ch0', 'ch1', 'ch2']
    """
    if isinstance(names, str):
        if names == "":
            return []
        if len(indices) == 1:
            return [names]
        return [f"{names}{i}" for i in indices]

    if not isinstance(names, Sequence) or not all(
        isinstance(n, str) for n in names
    ):
        raise ConfigError(
            f"names must be a string or a sequence of strings, got {names!r}."
        )

    if len(names) != len(indices):
        raise ConfigError(
            f"Got {len(names)} channel names for {len(indices)} channels. "
            "Provide exactly one name per channel."
        )
    return list(names)


def expand_physical_channels(spec: str) -> list[str]:
    """Expand a physical channel specification into single channels.

    Ranges may run downwards, as DAQmx allows.

    >>> expand_physical_channels("Dev1/ai0:2, Dev2/ai5")
    ['Dev1/ai0', 'Dev1/ai1', 'Dev1/ai2', 'Dev2/ai5']
    >>> expand_physical_channels("Dev1/ai3:2")
    ['Dev1/ai3', 'Dev1/ai2']
    """
    channels = []
    for part in split_channel_list(spec):
        match = _RANGE_RE.match(part)
        if match is None:
            channels.append(part)
            continue
        base = match.group("base")
        first, last = int(match.group("first")), int(match.group("last"))
        step = 1 if last >= first else -1
        channels.extend(f"{base}{i}" for i in range(first, last + step, step))
    return channels


def split_channel_list(text: str) -> list[str]:
    """Split a DAQmx comma separated list, dropping blanks.

    >>> split_channel_list("ai0, ai1,")
    ['ai0', 'ai1']
    """
    return [item.strip() for item in text.split(",") if item.strip()]


# ---------------------------------------------------------------------------
# NI MAX discovery
# ---------------------------------------------------------------------------


def list_tasks() -> list[str]:
    """List the task names saved in NI MAX.

    Returns
    -------
    list[str]
        Task names; empty when no tasks are saved.

    Examples
    --------
    >>> list_tasks()
    ['PressureScan']
    """
    system = nidaqmx.system.System.local()
    return list(system.tasks.task_names)


def list_devices() -> list[dict[str, str]]:
    """List the NI-DAQmx devices known to the local system.

    Returns
    -------
    list[dict[str, str]]
        One dict per device with the keys ``"name"`` and
        ``"product_type"``.  Empty when no devices are present.

    Examples
    --------
    >>> list_devices()
    [{'name': 'Dev1', 'product_type': 'USB-6218'}]
    """
    system = nidaqmx.system.System.local()
    devices = [
        {"name": dev.name, "product_type": dev.product_type}
        for dev in system.devices
    ]
    logger.debug("Found %d NI-DAQmx devices.", len(devices))
    return devices
