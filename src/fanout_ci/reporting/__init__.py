"""Coverage reporting: the aggregator and its sinks."""

from fanout_ci.reporting.coverage import (
    CommandCoverageSink,
    CoverageAck,
    CoverageAggregator,
    CoverageSink,
    DirectoryCoverageSink,
)

__all__ = [
    "CommandCoverageSink",
    "CoverageAck",
    "CoverageAggregator",
    "CoverageSink",
    "DirectoryCoverageSink",
]
