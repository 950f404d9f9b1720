import os
import sys
import psutil
import signal
import logging
import threading
import subprocess
from typing import Any, Dict, List, Optional

from pipeline_manifold.config import effective_settings as config

log = logging.getLogger(__name__)


#* --- Exit Status ---
def exit_signal(returncode: Optional[int]) -> Optional[int]:
    """Returns the signal number that killed a process, if any."""
    if returncode is not None and returncode < 0:
        return -returncode
    return None

def was_terminated(returncode: Optional[int]) -> bool:
    """True if the process was stopped by SIGTERM or SIGKILL, i.e. on purpose."""
    return exit_signal(returncode) in config.TERMINATION_SIGNALS

def exit_status(returncode: int) -> int:
    """Converts a Popen return code to a shell-style exit status (128 + signal for signal deaths)."""
    signum = exit_signal(returncode)
    return 128 + signum if signum is not None else returncode

def describe_exit(returncode: int) -> str:
    signum = exit_signal(returncode)
    if signum is None:
        return f"code {returncode}"
    try:
        return f"signal {signal.Signals(signum).name}"
    except ValueError:
        return f"signal {signum}"

def get_proc_status_string(pid: Optional[int]) -> str:
    """Gets a string representation of a process status."""
    if pid is None:
        return "unknown"
    try:
        if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
            return "zombie"
        return "running"
    except psutil.NoSuchProcess:
        return "stopped"
    except psutil.Error:
        return "unknown"


#* --- Process Creation ---
def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    # Own session, so a terminal Ctrl-C reaches only the supervisor, which then shuts the tree down.
    return {"start_new_session": True}

def process_label(command: str) -> str:
    """Short name of a command for log prefixes, e.g. '/usr/bin/tee' -> 'tee'."""
    return os.path.basename(command) or command

def _log_stream_lines(stream, stage_name: str, level: int) -> None:
    """Reader thread target: logs each non-empty line of `stream` to `proc.<stage_name>`."""
    stage_log = logging.getLogger(f"proc.{stage_name}")
    try:
        for raw in iter(stream.readline, b""):
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                stage_log.log(level, text)
    except (OSError, ValueError) as e:
        stage_log.debug(f"Stopped reading stderr of {stage_name}: {e}")
    finally:
        stream.close()

def log_process_errors(process: subprocess.Popen, name: str) -> None:
    """
    Starts a background thread that consumes a process's stderr and logs each line.

    Stdout is not touched here: it carries pipeline data and belongs to the
    node's stream fan-out.
    """
    if process.stderr is None:
        return
    reader = threading.Thread(
        target=_log_stream_lines,
        args=(process.stderr, name, logging.ERROR),
        daemon=True,
        name=f"Stderr[{name}:{process.pid}]",
    )
    reader.start()

def spawn_process(command: str, args: Optional[List[str]] = None) -> subprocess.Popen:
    """
    Spawns one pipeline stage with piped stdin, stdout and stderr.

    :param command: The program to run. A full path is recommended.
    :param args: Arguments for `command`.
    :return subprocess.Popen: The running process.
    :raises OSError: If the program cannot be started.
    """
    argv = [command, *(args or [])]
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **_get_popen_creation_flags(),
        )
    except OSError as e:
        log.error(f"Failed to start process {argv}: {e}")
        raise

    log_process_errors(proc, process_label(command))
    log.debug(f"Started {argv} with PID: {proc.pid}")
    return proc


#* --- Process Termination ---
def terminate_process(proc: Any) -> None:
    """
    Sends SIGTERM to a stage and to any OS-level descendants it started.

    Fire-and-forget: the exit is picked up later by the supervisor's poll.
    """
    if proc is None or proc.poll() is not None:
        return

    try:
        descendants = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        descendants = []

    for child in descendants:
        try:
            log.debug(f"Sending SIGTERM to descendant {child.pid} of PID {proc.pid}")
            child.terminate()
        except psutil.NoSuchProcess:
            continue

    try:
        proc.terminate()
    except ProcessLookupError:
        log.debug(f"Process {proc.pid} no longer exists, skipping termination.")

def close_stdin(proc: Any) -> None:
    stdin = getattr(proc, "stdin", None)
    if stdin is None:
        return
    try:
        stdin.close()
    except (OSError, ValueError) as e:
        log.debug(f"Could not close stdin of PID {getattr(proc, 'pid', None)}: {e}")
