import os
import sys
import enum
import itertools
from typing import TYPE_CHECKING, Any, List, Optional, Set

if TYPE_CHECKING:
    from .relay import StreamFanout

_node_ids = itertools.count(1)


class Origin(enum.Enum):
    """Where the process behind a node comes from."""

    ENCLOSING_PROGRAM = "enclosing"
    SPAWNED_PROCESS = "spawned"


class NodeState(enum.Enum):
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


class EnclosingProgram:
    """
    Stands in for the supervisor's own process when it acts as the master.

    Its standard input is the data source of the pipeline. It never exits
    from the supervisor's point of view, so `poll()` always returns None.
    """

    def __init__(self, stdin=None) -> None:
        self.pid = os.getpid()
        # Unbuffered: the pump thread may still be blocked in read() at interpreter exit.
        self.stdin = stdin if stdin is not None else open(sys.stdin.fileno(), "rb", buffering=0, closefd=False)

    def poll(self) -> Optional[int]:
        return None


class ProcessNode:
    """
    One position in the pipeline tree.

    The node keeps its identity for the whole life of the pipeline while the
    process handle behind it may be swapped by a respawn. Children are
    referenced by node id; the supervisor owns the id -> node mapping.
    """

    def __init__(
        self,
        handle: Any,
        origin: Origin = Origin.SPAWNED_PROCESS,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        keep_alive: bool = True,
        parent_id: Optional[int] = None,
        is_master: bool = False,
    ) -> None:
        self.id = next(_node_ids)
        self.handle = handle
        self.origin = origin
        self.command = command
        self.args: List[str] = list(args or [])
        self.keep_alive = keep_alive
        self.parent_id = parent_id
        self.is_master = is_master
        self.children: Set[int] = set()
        self.output: Optional["StreamFanout"] = None
        self.state = NodeState.RUNNING
        self.restarts = 0

    @property
    def pid(self) -> Optional[int]:
        """The OS pid of the process currently behind this node."""
        return getattr(self.handle, "pid", None)

    @property
    def is_running(self) -> bool:
        return self.state is NodeState.RUNNING

    def replace_handle(self, handle: Any) -> None:
        """Swaps in the process of a respawn. Children and tree position are kept."""
        self.handle = handle
        self.state = NodeState.RUNNING
        self.restarts += 1

    def describe(self) -> str:
        if self.origin is Origin.ENCLOSING_PROGRAM:
            return f"stdin (PID {self.pid})"
        return f"'{self.command}' (node {self.id}, PID {self.pid})"

    def __repr__(self) -> str:
        return (
            f"ProcessNode(id={self.id}, pid={self.pid}, command={self.command!r}, "
            f"state={self.state.value}, children={sorted(self.children)})"
        )
