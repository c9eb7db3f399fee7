"""Runtime services around the executor: events, persistence tracking, queueing."""

from flowengine.runtime.analytics import AnalyticsCollector, DataPointCollector, DataPointConfig
from flowengine.runtime.debug_artifacts import DebugArtifactCollector, build_debug_artifact
from flowengine.runtime.event_bus import EventBus, ExecutionEventBus, ProgressEvent, ProgressEventType
from flowengine.runtime.execution_queue import ExecutionQueue, QueueTask, TaskStatus
from flowengine.runtime.http_forwarder import HttpEventForwarder
from flowengine.runtime.runtime_logger import RuntimeLogger

__all__ = [
    "AnalyticsCollector",
    "DataPointCollector",
    "DataPointConfig",
    "DebugArtifactCollector",
    "EventBus",
    "ExecutionEventBus",
    "ExecutionQueue",
    "HttpEventForwarder",
    "ProgressEvent",
    "ProgressEventType",
    "QueueTask",
    "RuntimeLogger",
    "TaskStatus",
    "build_debug_artifact",
]
