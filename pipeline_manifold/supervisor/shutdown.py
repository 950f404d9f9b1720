import time
import logging
from typing import TYPE_CHECKING, List

from pipeline_manifold.supervisor import process_utils
from pipeline_manifold.supervisor.node import NodeState, Origin, ProcessNode

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL = 0.05  # seconds


def terminate_node(node: ProcessNode) -> None:
    """
    Sends a termination signal to a single node. The node is considered dead
    from here on; its exit is reaped later by the supervisor's poll.
    """
    if node.state is not NodeState.RUNNING:
        return
    status = process_utils.get_proc_status_string(node.pid)
    log.debug(f"Stopping {node.describe()} (status: {status})")
    node.state = NodeState.TERMINATING
    process_utils.terminate_process(node.handle)


def stop_subtree(manager: "ProcessManager", node: ProcessNode) -> None:
    """
    Terminates a node and everything below it, depth-first post-order:
    every child subtree is stopped before the node itself.

    :param manager: The ProcessManager instance.
    :param node: Root of the subtree to stop.
    """
    for child_id in list(node.children):
        child = manager.nodes.get(child_id)
        if child is not None:
            stop_subtree(manager, child)
    terminate_node(node)


def stop_children(manager: "ProcessManager", node: ProcessNode) -> None:
    """Stops every subtree below `node`, leaving `node` itself alone."""
    for child_id in list(node.children):
        child = manager.nodes.get(child_id)
        if child is not None:
            stop_subtree(manager, child)


def _draining_nodes(manager: "ProcessManager") -> List[ProcessNode]:
    return [
        node for node in manager.nodes.values()
        if not node.is_master and node.state is NodeState.RUNNING
    ]


def drain_tree(manager: "ProcessManager", timeout: float) -> bool:
    """
    Lets the pipeline finish consuming its input after the source has ended.

    Waits for the source pump to hand over its last bytes (terminating the
    master's children if it cannot within `timeout`), ends the relay so
    that the master's children see EOF, then waits up to `timeout` seconds
    for the tree to exit on its own. Once a stage has exited and its output
    is exhausted, its fan-out is ended so the EOF travels further down.
    Expects `manager.shutting_down` to be set so exits are not respawned.

    :param manager: The ProcessManager instance.
    :param timeout: Seconds to wait in total.
    :return bool: True if every child exited before the deadline.
    """
    deadline = time.monotonic() + max(timeout, 0)

    if not manager.relay.wait_for_source(max(timeout, 0)):
        # The pump may be blocked writing to a stage that stopped reading, holding
        # the relay's write lock. Stop the consumers first so the write fails.
        log.warning("Pipeline source did not finish in time; stopping the pipeline stages.")
        root = manager.master or manager.root
        if root is not None:
            stop_children(manager, root)
    manager.relay.end()

    pending = _draining_nodes(manager)
    log.info(f"Draining {len(pending)} pipeline stage(s) for up to {timeout:.1f}s...")
    while pending:
        for node in pending:
            if node.handle.poll() is not None and node.output is not None and node.output.wait_for_source(0):
                node.output.end()
        pending = [
            node for node in pending
            if node.handle.poll() is None or (node.output is not None and not node.output.ended)
        ]
        if not pending:
            break
        if time.monotonic() >= deadline:
            log.warning(f"{len(pending)} stage(s) did not finish draining in time.")
            return False
        time.sleep(DRAIN_POLL_INTERVAL)

    log.debug("Pipeline drained.")
    return True


def shutdown_sequence(manager: "ProcessManager") -> None:
    """
    Runs the ordered termination of the whole tree.

    Children of the master are stopped first (each subtree post-order), then
    the master's input is closed and the master itself is stopped. When the
    master is the enclosing program nothing is signalled; the caller exits
    with the recorded exit code instead.

    :param manager: The ProcessManager instance.
    """
    root = manager.master or manager.root
    if root is None:
        log.info("No master process registered; nothing to stop.")
        return

    log.debug("Stopping children")
    stop_children(manager, root)

    if root.origin is Origin.SPAWNED_PROCESS:
        process_utils.close_stdin(root.handle)
        terminate_node(root)
    elif root.state is NodeState.RUNNING:
        root.state = NodeState.EXITED

    manager.relay.end()
