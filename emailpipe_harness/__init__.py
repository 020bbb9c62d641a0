from emailpipe_harness.config import HarnessConfig
from emailpipe_harness.lifecycle import ProcessLifecycle
from emailpipe_harness.linestream import ByteSource, FdByteSource, LineStream
from emailpipe_harness.scenario import (
    DualScenarioRunner,
    Probe,
    RoundResult,
    ScenarioRunner,
    Session,
)

__version__ = "0.3.0"
__all__ = [
    "ByteSource",
    "DualScenarioRunner",
    "FdByteSource",
    "HarnessConfig",
    "LineStream",
    "Probe",
    "ProcessLifecycle",
    "RoundResult",
    "ScenarioRunner",
    "Session",
]
