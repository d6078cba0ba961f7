"""Combined disk usage across the configured *arr services.

Sonarr and Radarr frequently see the same mounts; disks are merged by
path with the first service listed winning, so shared storage is only
counted once in the totals.
"""

import logging

from error_handler import ExternalServiceError
from rule_filters import BYTES_PER_GB

logger = logging.getLogger(__name__)


def _gb(size: int) -> float:
    return round(size / BYTES_PER_GB, 2)


def collect_disk_space(clients: list[tuple[str, object]]) -> dict:
    """Query each (name, client) pair and combine their disks.

    A failing service is reported under errors and does not hide the
    disks of the others.

    Returns:
        dict with disks (each tagged with its source), totals and errors
    """
    disks: list[dict] = []
    seen: set[str] = set()
    errors: list[dict] = []

    for name, client in clients:
        try:
            reported = client.get_disk_space()
        except ExternalServiceError as e:
            logger.warning("Disk space from %s unavailable: %s", name, e)
            errors.append({"source": name, "error": str(e)})
            continue
        for disk in reported:
            if disk["path"] in seen:
                continue
            seen.add(disk["path"])
            used = max(disk["total_space"] - disk["free_space"], 0)
            disks.append(dict(disk, source=name, used_space=used,
                              percentage=round(used / disk["total_space"] * 100)
                              if disk["total_space"] else 0))

    capacity = sum(d["total_space"] for d in disks)
    used = sum(d["used_space"] for d in disks)
    return {
        "disks": disks,
        "totals": {
            "capacity": capacity,
            "used": used,
            "free": capacity - used,
            "capacity_gb": _gb(capacity),
            "used_gb": _gb(used),
            "free_gb": _gb(capacity - used),
            "percentage": round(used / capacity * 100) if capacity else 0,
        },
        "errors": errors,
    }
