"""Background handlers for dealroom.

The expiry sweeper runs on its own periodic loop; notification sinks
receive every event the bus dispatches.
"""

from dealroom.handlers.expiry_sweeper import ExpirySweeper, validate_expiry_config
from dealroom.handlers.notifier import DatabaseSink, HttpSink

__all__ = ["DatabaseSink", "ExpirySweeper", "HttpSink", "validate_expiry_config"]
