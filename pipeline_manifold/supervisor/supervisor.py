import sys
import time
import atexit
import logging
import threading
from typing import Any, BinaryIO, Dict, List, Optional

from pipeline_manifold.config import effective_settings as config
from pipeline_manifold.supervisor import process_utils, shutdown
from pipeline_manifold.supervisor.errors import MasterAlreadyRegisteredError, SupervisorError
from pipeline_manifold.supervisor.node import NodeState, Origin, ProcessNode
from pipeline_manifold.supervisor.relay import BufferedRelay, StreamFanout

log = logging.getLogger(__name__)

# Seconds a respawn waits for the dead process's last output to reach its children.
OUTPUT_FLUSH_TIMEOUT = 0.5


class ProcessManager:
    """
    Builds and supervises the process tree of a pipeline.

    Register the data source with `register_master` (the supervisor's own
    stdin) or `spawn_master` (a program), attach stages with `spawn_child`,
    then call `start()` to let the buffered master output flow and
    `supervision_loop()` to react to process exits until the pipeline ends.

    While spawning, the manager wires the pipes: the master's output goes
    through the buffered relay to the program's stdout and to every child of
    the master; deeper children read their parent's stdout.

    All tree mutation happens on the thread that calls `poll()`. Pump threads
    and signal handlers only set the `source_closed` and
    `shutdown_signal_received` events.
    """

    def __init__(
        self,
        output: Optional[BinaryIO] = None,
        poll_interval: Optional[float] = None,
        drain_timeout: Optional[float] = None,
    ) -> None:
        """Initializes the ProcessManager state."""
        self.output = output if output is not None else sys.stdout.buffer
        self.poll_interval = config.SUPERVISOR_SLEEP_INTERVAL if poll_interval is None else poll_interval
        self.drain_timeout = config.DRAIN_TIMEOUT if drain_timeout is None else drain_timeout

        self.relay = BufferedRelay()
        self.master: Optional[ProcessNode] = None
        self.root: Optional[ProcessNode] = None
        self.nodes: Dict[int, ProcessNode] = {}

        self.started = False
        self.shutting_down = False
        self.exit_code: Optional[int] = None

        self.shutdown_signal_received = threading.Event()
        self.source_closed = threading.Event()

    #* --- Tree Construction ---
    def register_master(self, source: Any, command: Optional[str] = None, args: Optional[List[str]] = None) -> ProcessNode:
        """
        Registers the master process. Without `command`, `source` is taken to
        be the enclosing program (an `EnclosingProgram`): its stdin feeds the
        relay, and the end of that stdin shuts the pipeline down. Otherwise
        the stdout of the spawned `source` feeds the relay.

        :param source: An `EnclosingProgram` or a `subprocess.Popen`.
        :param command: The command `source` was spawned from.
        :param args: The arguments of `command`.
        :return ProcessNode: The master node.
        :raises MasterAlreadyRegisteredError: If a master is already registered.
        """
        log.debug(f"Adding master process: ({getattr(source, 'pid', None)}, {command}, {args})")
        if self.master is not None:
            raise MasterAlreadyRegisteredError("master process already added")

        origin = Origin.SPAWNED_PROCESS if command else Origin.ENCLOSING_PROGRAM
        if self.root is None:
            node = ProcessNode(source, origin, command, args, is_master=True)
            self.root = node
            self.nodes[node.id] = node
        else:
            # A respawned master takes over the existing root and its children.
            node = self.root
            node.origin, node.command, node.args = origin, command, list(args or [])
            node.replace_handle(source)
        self.master = node

        self.relay.pause()
        if origin is Origin.ENCLOSING_PROGRAM:
            self.relay.attach_source(source.stdin, on_eof=self.source_closed.set, close_source=False)
            atexit.register(self._shutdown_at_exit)
        else:
            self.relay.attach_source(source.stdout)
        self.relay.pipe(self.output, end=False)

        log.info(f"Registered master {node.describe()}")
        return node

    def spawn_master(self, command: str, args: Optional[List[str]] = None) -> ProcessNode:
        """
        Spawns a new process and registers it as the master process.

        :param command: The command to spawn as the master process.
        :param args: Arguments for `command`.
        :return ProcessNode: The master node.
        """
        log.debug(f"Spawning master: ({command}, {args})")
        if self.master is not None:
            raise MasterAlreadyRegisteredError("master process already created")
        handle = process_utils.spawn_process(command, args)
        return self.register_master(handle, command, args)

    def spawn_child(
        self,
        parent: ProcessNode,
        command: str,
        args: Optional[List[str]] = None,
        keep_alive: bool = True,
    ) -> ProcessNode:
        """
        Spawns a new process below `parent`. Its stdin is fed from the relay
        when `parent` is the master, otherwise from `parent`'s stdout.

        :param parent: The node whose output feeds the new process.
        :param command: The command to execute. A full path is recommended.
        :param args: Arguments for `command`.
        :param keep_alive: Respawn the process when it dies unexpectedly.
        :return ProcessNode: The new child node.
        """
        log.debug(f"Spawning child ({command}, {args}) for parent {parent.describe()}")
        if parent.id not in self.nodes:
            raise SupervisorError(f"Parent {parent.describe()} is not part of this process tree")

        handle = process_utils.spawn_process(command, args)
        node = ProcessNode(handle, Origin.SPAWNED_PROCESS, command, args, keep_alive=keep_alive, parent_id=parent.id)
        self.nodes[node.id] = node
        parent.children.add(node.id)

        self._input_source(parent).pipe(handle.stdin)
        node.output = self._open_output(node)

        log.info(f"Spawned child {node.describe()} under {parent.describe()}")
        return node

    def start(self) -> None:
        """Lets the master's output flow once the initial topology is in place."""
        if self.master is None:
            log.warning("Starting pipeline without a master process.")
        self.started = True
        self.relay.resume()

    def children_of(self, node: ProcessNode) -> List[ProcessNode]:
        return [self.nodes[child_id] for child_id in sorted(node.children) if child_id in self.nodes]

    def _input_source(self, parent: Optional[ProcessNode]) -> StreamFanout:
        if self.master is None or parent is None or parent.is_master:
            return self.relay
        return parent.output

    def _open_output(self, node: ProcessNode) -> StreamFanout:
        fanout = StreamFanout(f"{process_utils.process_label(node.command)}[{node.pid}]")
        fanout.attach_source(node.handle.stdout, on_eof=lambda: self._on_output_eof(fanout))
        return fanout

    def _on_output_eof(self, fanout: StreamFanout) -> None:
        # Runs on the pump thread. While shutting down, pass EOF on to the children.
        if self.shutting_down:
            fanout.end()

    #* --- Exit Handling ---
    def poll(self) -> Optional[int]:
        """
        Runs one pass of exit handling.

        :return: The program exit code once the pipeline has ended, else None.
        """
        if not self.shutting_down:
            if self.shutdown_signal_received.is_set():
                log.info("Shutdown signal received.")
                self.shutdown()
            elif self.source_closed.is_set():
                self._on_source_closed()

        for node in list(self.nodes.values()):
            if node.origin is Origin.ENCLOSING_PROGRAM or node.state is NodeState.EXITED:
                continue
            if node.id not in self.nodes:
                continue  # dropped earlier in this pass
            returncode = node.handle.poll()
            if returncode is None:
                continue

            if node.state is NodeState.TERMINATING:
                self._forget(node)
            elif node.is_master:
                self._on_master_exit(node, returncode)
            else:
                self._on_child_exit(node, returncode)

        return self.exit_code

    def _on_source_closed(self) -> None:
        log.info("Pipeline input reached end of stream. Shutting down.")
        self.shutting_down = True
        shutdown.drain_tree(self, self.drain_timeout)
        self.shutdown()

    def _on_master_exit(self, node: ProcessNode, returncode: int) -> None:
        log.info(f"Master {node.describe()} exited with {process_utils.describe_exit(returncode)}")
        if returncode == 0 or process_utils.was_terminated(returncode):
            self.shutting_down = True
            shutdown.drain_tree(self, self.drain_timeout)
            shutdown.stop_children(self, node)
            node.state = NodeState.EXITED
            self.relay.end()
            self.exit_code = process_utils.exit_status(returncode)
            return

        log.warning(f"Master crashed. Respawning '{node.command}' with {node.args}")
        command, args = node.command, list(node.args)
        self.master = None
        try:
            self.spawn_master(command, args)
        except OSError as e:
            log.critical(f"Could not respawn master '{command}': {e}")
            self.shutdown(exit_code=1)
            return
        if self.started:
            self.relay.resume()

    def _on_child_exit(self, node: ProcessNode, returncode: int) -> None:
        reason = process_utils.describe_exit(returncode)
        if process_utils.was_terminated(returncode) or not node.keep_alive or self.shutting_down:
            log.info(f"Child {node.describe()} exited with {reason}; stopping its children.")
            self._retire(node)
            return

        log.warning(f"Child {node.describe()} exited unexpectedly with {reason}. Respawning...")
        self._respawn_child(node)

    def _respawn_child(self, node: ProcessNode) -> None:
        """
        Replaces the process behind `node` in place. The new stdin is wired
        like in `spawn_child`, and every live child is moved onto the new
        process's output.
        """
        source = self._input_source(self.nodes.get(node.parent_id))
        old_handle, old_output = node.handle, node.output
        if old_output is not None and not old_output.wait_for_source(OUTPUT_FLUSH_TIMEOUT):
            log.debug(f"Output of {node.describe()} still open; re-wiring its children anyway.")
        try:
            handle = process_utils.spawn_process(node.command, node.args)
        except OSError as e:
            log.error(f"Failed to respawn {node.describe()}: {e}")
            self._retire(node)
            return

        source.unpipe(old_handle.stdin)
        process_utils.close_stdin(old_handle)
        node.replace_handle(handle)
        source.pipe(handle.stdin)
        node.output = self._open_output(node)

        for child in self.children_of(node):
            if not child.is_running:
                continue
            if old_output is not None:
                old_output.unpipe(child.handle.stdin)
            log.debug(f"Piping {node.describe()} stdout to child {child.describe()} stdin")
            node.output.pipe(child.handle.stdin)

        log.info(f"Respawned {node.describe()} (restart #{node.restarts})")

    def _retire(self, node: ProcessNode) -> None:
        """Final exit of a child: stop its subtree and take it out of the tree."""
        shutdown.stop_children(self, node)
        node.state = NodeState.EXITED
        self._forget(node)

    def _forget(self, node: ProcessNode) -> None:
        if node.is_master:
            node.state = NodeState.EXITED
            return
        parent = self.nodes.get(node.parent_id)
        if parent is not None:
            parent.children.discard(node.id)
            self._input_source(parent).unpipe(node.handle.stdin)
        process_utils.close_stdin(node.handle)
        node.state = NodeState.EXITED
        self.nodes.pop(node.id, None)
        log.debug(f"Removed {node.describe()} from the process tree")

    #* --- Shutdown ---
    def shutdown(self, exit_code: int = 0) -> None:
        """
        Stops all of the child processes and then the master process.

        :param exit_code: Exit code for the program, unless one is already set.
        """
        log.info("Shutting down processes")
        self.shutting_down = True
        shutdown.shutdown_sequence(self)
        if self.exit_code is None:
            self.exit_code = exit_code

    def _shutdown_at_exit(self) -> None:
        if self.exit_code is None:
            self.shutdown()

    def supervision_loop(self) -> int:
        """Main supervisor loop: handles process exits until the pipeline ends."""
        log.info("Supervisor started. Monitoring pipeline processes.")
        try:
            while self.poll() is None:
                time.sleep(self.poll_interval)
        except KeyboardInterrupt:
            log.info("Supervisor loop interrupted by user.")
            self.shutdown()
        except Exception as e:
            log.critical(f"Critical error in supervisor loop: {e}", exc_info=True)
            self.shutdown(exit_code=1)

        log.info(f"Supervisor stopped with exit code {self.exit_code}.")
        return self.exit_code
