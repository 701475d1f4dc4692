"""Off-peak classification and capacity sampling."""

from ecodefer.scheduling.scheduler import (
    CapacityCheck,
    EcoScheduler,
    LoadSample,
    LoadSampler,
    psutil_sampler,
)

__all__ = [
    "CapacityCheck",
    "EcoScheduler",
    "LoadSample",
    "LoadSampler",
    "psutil_sampler",
]
