import os
import time
from typing import Any, Dict

import psutil

_PROCESS_STARTED = time.time()


def _safe_get_loadavg() -> Dict[str, Any]:
    try:
        if hasattr(os, "getloadavg"):
            la1, la5, la15 = os.getloadavg()
            return {"loadavg": {"1m": la1, "5m": la5, "15m": la15}}
    except OSError:
        pass
    return {"loadavg": None}


def get_health() -> Dict[str, Any]:
    """Host memory, CPU, disk and daemon uptime for the health endpoint."""
    mb = 1024 * 1024
    vm = psutil.virtual_memory()
    used_mb = round((vm.total - vm.available) / mb)
    disk = psutil.disk_usage("/")
    proc = psutil.Process()
    info = {
        "memoryUsageMB": used_mb,
        "memoryUsagePercent": round(vm.percent),
        "memoryUsageTotal": round(vm.total / mb),
        "memoryUsageFree": round(vm.available / mb),
        "processMemoryMB": round(proc.memory_info().rss / mb, 2),
        "cpuUsagePercent": psutil.cpu_percent(interval=None),
        "cpuCount": psutil.cpu_count(logical=True) or 0,
        "uptime": round(time.time() - _PROCESS_STARTED, 2),
        "storageTotalSpace": disk.total,
        "storageUsedSpace": disk.used,
        "storageFreeSpace": disk.free,
        "storageUsedPercent": disk.percent,
    }
    info.update(_safe_get_loadavg())
    return info
