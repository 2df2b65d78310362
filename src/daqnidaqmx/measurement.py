"""Typed records describing a session's configuration and its results.

``SamplingRate`` and ``DaqChannels`` are the bookkeeping a device session
keeps in sync with the hardware task.  ``InputConfig`` and ``TimingConfig``
record the arguments of successful configuration calls so that a session
can be written to, and rebuilt from, a TOML file.  ``MeasData`` is what a
read returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Sequence

import numpy as np
from nidaqmx import constants

from .errors import ConfigError


@dataclass(frozen=True)
class SamplingRate:
    """Sampling rate, samples per channel and the time of the last
    configuration or start event."""

    rate: float
    nsamples: int
    time: datetime

    @property
    def period(self) -> float:
        return 1.0 / self.rate

    @property
    def duration(self) -> float:
        """Length of one acquisition in seconds."""
        return self.nsamples / self.rate


class DaqChannels:
    """Ordered channel names and the derived name -> column index map.

    The order of *names* is the hardware enumeration order, i.e. the row
    order of :attr:`MeasData.data`.

    Parameters
    ----------
    names : sequence of str
        Channel names as reported by the task.
    physical_channels : str, optional
        Physical channel specification the channels were created from.

    Raises
    ------
    ConfigError
        If *names* contains duplicates.
    """

    def __init__(self, names: Sequence[str] = (), physical_channels: str = "") -> None:
        self.names: tuple[str, ...] = tuple(names)
        self.physical_channels = physical_channels
        self.chanmap: dict[str, int] = {
            name: i for i, name in enumerate(self.names)
        }
        if len(self.chanmap) != len(self.names):
            raise ConfigError(f"Duplicate channel names in {list(self.names)}.")

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self.chanmap

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DaqChannels):
            return NotImplemented
        return (
            self.names == other.names
            and self.physical_channels == other.physical_channels
        )

    def __repr__(self) -> str:
        return f"DaqChannels({list(self.names)!r}, {self.physical_channels!r})"

    def index(self, name: str) -> int:
        """Zero-based column index of channel *name*."""
        try:
            return self.chanmap[name]
        except KeyError:
            raise KeyError(
                f"Unknown channel '{name}'. Available channels: {list(self.names)}"
            ) from None


@dataclass(frozen=True)
class InputConfig:
    """Arguments of one successful ``add_input`` call."""

    physical_channels: str
    names: str = ""
    terminal_config: constants.TerminalConfiguration = (
        constants.TerminalConfiguration.DEFAULT
    )
    min_val: float = 0.0
    max_val: float = 5.0
    units: constants.VoltageUnits = constants.VoltageUnits.VOLTS
    custom_scale_name: str = ""

    @property
    def unit_label(self) -> str:
        """Unit string attached to the channels of this input."""
        if self.units == constants.VoltageUnits.VOLTS:
            return "V"
        return self.custom_scale_name


@dataclass(frozen=True)
class TimingConfig:
    """Resolved arguments of the last successful sample clock configuration."""

    rate: float
    nsamples: int
    source: str = ""
    sample_mode: constants.AcquisitionType = constants.AcquisitionType.FINITE
    active_edge: constants.Edge = constants.Edge.RISING


@dataclass(frozen=True, eq=False)
class MeasData:
    """Result of one buffered acquisition.

    ``data`` has shape ``(nchannels, nsamples)``; row *i* belongs to
    ``chans.names[i]``.  The array is made read-only on construction.
    """

    devname: str
    devtype: str
    sampling: SamplingRate
    data: np.ndarray
    chans: DaqChannels
    units: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.float64)
        if data.ndim != 2:
            raise ValueError(
                f"data must be 2-D (nchannels, nsamples), got shape {data.shape}."
            )
        if data.shape[0] != len(self.chans):
            raise ValueError(
                f"data has {data.shape[0]} rows but {len(self.chans)} "
                "channels are registered."
            )
        data.flags.writeable = False
        object.__setattr__(self, "data", data)

        units = tuple(self.units) if self.units else ("",) * len(self.chans)
        object.__setattr__(self, "units", units)

    @property
    def nchannels(self) -> int:
        return self.data.shape[0]

    @property
    def nsamples(self) -> int:
        return self.data.shape[1]

    def __getitem__(self, name: str) -> np.ndarray:
        return self.data[self.chans.index(name)]

    def times(self) -> np.ndarray:
        """Sample times in seconds relative to the start of acquisition."""
        return np.arange(self.nsamples) / self.sampling.rate
