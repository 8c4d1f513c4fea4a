"""
obis_power_lib - Active power acquisition for OBIS smart meters (SML and D0).

The platform controller lives in obis_power_lib.controller, since it pulls
in the accessories and data_store sink packages.
"""

from obis_power_lib.acquisition import AcquisitionCycle, read_once
from obis_power_lib.errors import (
    CycleTimeout,
    InvalidOptionValue,
    ObisPowerError,
    ReadError,
    ResolutionNotFound,
    TransportOpenError,
    ValidationFailed,
)
from obis_power_lib.models import (
    DeviceIdentity,
    Failed,
    LoopState,
    Measurement,
    ObisOptions,
    PlatformConfig,
    PowerSource,
    ResolvedPower,
    Settled,
    TimedOut,
    ValidationState,
)
from obis_power_lib.poller import PollingLoop
from obis_power_lib.resolver import resolve_active_power
from obis_power_lib.validation import ValidationPhase

__version__ = "0.1.0"

__all__ = [
    "AcquisitionCycle",
    "read_once",
    "PollingLoop",
    "ValidationPhase",
    "resolve_active_power",
    "ObisOptions",
    "PlatformConfig",
    "Measurement",
    "DeviceIdentity",
    "PowerSource",
    "ResolvedPower",
    "Settled",
    "Failed",
    "TimedOut",
    "LoopState",
    "ValidationState",
    "ObisPowerError",
    "InvalidOptionValue",
    "TransportOpenError",
    "ReadError",
    "CycleTimeout",
    "ResolutionNotFound",
    "ValidationFailed",
]
