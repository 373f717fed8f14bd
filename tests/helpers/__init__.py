"""Test helpers for yield-allocator test suite"""

from tests.helpers.pipeline_stubs import (
    FakeClock,
    FailingFeed,
    RaisingProposer,
    RecordingExecutor,
    SlowProposer,
    build_pipeline,
    make_opportunity,
    make_strategy,
)

__all__ = [
    "FakeClock",
    "FailingFeed",
    "RaisingProposer",
    "RecordingExecutor",
    "SlowProposer",
    "build_pipeline",
    "make_opportunity",
    "make_strategy",
]
