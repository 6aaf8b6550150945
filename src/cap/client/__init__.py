"""
Caller-side consumer of the pipeline event stream.
"""

from cap.client.sse import (
    AnalysisProgress,
    EventSubscription,
    PipelineCallbacks,
    SSEDecoder,
    StreamConsumer,
    run_pipeline_analysis,
)

__all__ = [
    "AnalysisProgress",
    "EventSubscription",
    "PipelineCallbacks",
    "SSEDecoder",
    "StreamConsumer",
    "run_pipeline_analysis",
]
