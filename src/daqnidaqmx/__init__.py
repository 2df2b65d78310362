"""daqnidaqmx: NI-DAQmx analog input device sessions."""

import logging

__version__ = "0.1.0"

logger = logging.getLogger("daqnidaqmx")

from .device import NIDev
from .driver import NidaqmxDriver, check_status, error_message
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
    expand_physical_channels,
    list_devices,
    list_tasks,
    physical_channels,
    split_channel_list,
    synthesize_names,
)

__all__ = [
    "__version__",
    "NIDev",
    "NidaqmxDriver",
    "check_status",
    "error_message",
    "AcquisitionAborted",
    "AcquisitionTimeout",
    "ConfigError",
    "DriverError",
    "DaqChannels",
    "InputConfig",
    "MeasData",
    "SamplingRate",
    "TimingConfig",
    "expand_physical_channels",
    "list_devices",
    "list_tasks",
    "physical_channels",
    "split_channel_list",
    "synthesize_names",
]
