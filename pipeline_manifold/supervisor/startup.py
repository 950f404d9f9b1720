import signal
import logging
from typing import TYPE_CHECKING

from pipeline_manifold.pipeline_config import PipelineConfig, StageConfig
from pipeline_manifold.supervisor.node import EnclosingProgram, ProcessNode

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


def add_stage(manager: "ProcessManager", parent: ProcessNode, stage: StageConfig) -> ProcessNode:
    """
    Spawns a stage below `parent`, then its own downstream stages below it.

    :param manager: The ProcessManager instance.
    :param parent: The node whose output feeds the stage.
    :param stage: The stage definition.
    :return ProcessNode: The node created for `stage`.
    """
    log.debug(f"Adding stage ({stage.bin}, {stage.args}) to parent {parent.describe()}")
    node = manager.spawn_child(parent, stage.bin, stage.args, keep_alive=stage.keep_alive)
    for downstream in stage.stages:
        add_stage(manager, node, downstream)
    return node


def build_pipeline(manager: "ProcessManager", pipeline: PipelineConfig, stdin=None) -> ProcessNode:
    """
    Registers the pipeline's source as the master, spawns every stage and
    finally lets the buffered master output flow.

    :param manager: The ProcessManager instance.
    :param pipeline: The parsed pipeline configuration.
    :param stdin: Input stream used when the pipeline reads standard input.
    :return ProcessNode: The master node.
    """
    if pipeline.reads_stdin:
        master = manager.register_master(EnclosingProgram(stdin))
    else:
        master = manager.spawn_master(pipeline.input.bin, pipeline.input.args)

    for stage in pipeline.stages:
        add_stage(manager, master, stage)

    manager.start()
    log.info(f"Pipeline started with {len(manager.nodes) - 1} stage(s).")
    return master


def install_signal_handlers(manager: "ProcessManager") -> None:
    """
    Routes SIGINT and SIGTERM to the supervisor. The handler only flags the
    request; the supervision loop performs the shutdown.
    """
    def _request_shutdown(signum, frame):
        log.info(f"Received {signal.Signals(signum).name}.")
        manager.shutdown_signal_received.set()

    for name in ("SIGINT", "SIGTERM"):
        if hasattr(signal, name):
            signal.signal(getattr(signal, name), _request_shutdown)
