"""
Resource usage of the supervised process.

Used by the status endpoint; includes the whole process tree since the main
command is often a wrapper (npm start, sh -c ...) around the real server.
"""

import logging

import psutil

logger = logging.getLogger(__name__)


def process_metrics(pid: int | None) -> dict:
    """Current CPU and memory usage of ``pid`` and its children."""
    result = {
        "cpuPercent": 0.0,
        "memoryMb": 0.0,
        "childProcesses": 0,
    }
    if not pid:
        return result

    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / 1024 / 1024

        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=0)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        result.update({
            "cpuPercent": round(cpu_percent, 1),
            "memoryMb": round(memory_mb, 1),
            "childProcesses": child_count,
        })
    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} no longer exists")
    except psutil.AccessDenied:
        logger.warning(f"Access denied reading metrics of process {pid}")

    return result

