"""Start subordinate processes in their own group and kill them with all children."""

import logging
import os
import signal
import subprocess
import sys
from typing import Any, Dict

logger = logging.getLogger(__name__)


def process_group_kwargs() -> Dict[str, Any]:
    """Popen kwargs that put the child in a new process group/session."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def terminate_process_tree(process: subprocess.Popen) -> bool:
    """Ask `process` and every child it spawned to exit, without waiting.

    POSIX: SIGTERM to the process group.
    Windows: taskkill /T /F on the PID.
    Returns False when the process was already gone.
    """
    if process.poll() is not None:
        return False

    pid = process.pid
    if sys.platform == "win32":
        result = subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            logger.warning(f"taskkill failed for PID {pid} (rc={result.returncode}): {result.stderr.strip()}")
            process.kill()
        return True

    try:
        os.killpg(os.getpgid(pid), signal.SIGTERM)
    except ProcessLookupError:
        return False
    return True


def kill_process_tree(process: subprocess.Popen, grace_s: float = 3.0) -> None:
    """Terminate `process` and every child it spawned, escalating to SIGKILL after `grace_s`."""
    if not terminate_process_tree(process):
        return

    pid = process.pid
    try:
        process.wait(timeout=grace_s)
        return
    except subprocess.TimeoutExpired:
        pass

    if sys.platform == "win32":
        logger.error(f"PID {pid} still alive after taskkill")
        return

    try:
        pgid = os.getpgid(pid)
        logger.warning(f"PID {pid} ignored SIGTERM, sending SIGKILL to group {pgid}")
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return
    process.wait()
