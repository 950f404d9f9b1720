"""
The Supervisor package.
Builds and supervises the process tree of a pipeline.

This package contains the central ProcessManager class and its helper modules,
which together handle spawning, wiring, respawning and stopping of every
pipeline stage.
"""
from .errors import MasterAlreadyRegisteredError, SupervisorError
from .node import EnclosingProgram, NodeState, Origin, ProcessNode
from .relay import BufferedRelay, StreamFanout
from .supervisor import ProcessManager

__all__ = [
    "ProcessManager",
    "ProcessNode",
    "EnclosingProgram",
    "NodeState",
    "Origin",
    "BufferedRelay",
    "StreamFanout",
    "SupervisorError",
    "MasterAlreadyRegisteredError",
]
