"""Utilisation feedback between containers that share a device.

Every container publishes its recent kernel activity and task priority in
its shared region.  The observer counts, per device, how many containers of
each priority are active and flips the blocking and utilisation switches in
the regions accordingly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .shared_region import SharedRegion

logger = logging.getLogger(__name__)

CGROUP_DRIVER_UNKNOWN = 0
CGROUP_DRIVER_CGROUPFS = 1
CGROUP_DRIVER_SYSTEMD = 2

KUBELET_CONFIG = "/hostvar/lib/kubelet/config.yaml"
PRIORITY_LEVELS = 2


@dataclass
class PodUsage:
    """A container directory name and the shared region found in it."""

    idstr: str
    sr: SharedRegion | None = None


def detect_cgroup_driver(config_path: str | os.PathLike[str] = KUBELET_CONFIG) -> int:
    """The cgroup driver named in the kubelet configuration.

    Returns 1 for cgroupfs, 2 for systemd and 0 when it cannot be told.
    """
    try:
        content = Path(config_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return CGROUP_DRIVER_UNKNOWN
    if "cgroupDriver:" not in content:
        return CGROUP_DRIVER_UNKNOWN
    if "systemd" in content:
        return CGROUP_DRIVER_SYSTEMD
    if "cgroupfs" in content:
        return CGROUP_DRIVER_CGROUPFS
    return CGROUP_DRIVER_UNKNOWN


def task_file_path(driver: int, qos: str, pod_uid: str, container_id: str) -> str:
    """Path of the cgroup ``tasks`` file that lists a container's processes."""
    qos = qos.lower()
    container = container_id.removeprefix("docker://")
    if driver == CGROUP_DRIVER_CGROUPFS:
        return f"/sysinfo/fs/cgroup/memory/kubepods/{qos}/pod{pod_uid}/{container}/tasks"
    if driver == CGROUP_DRIVER_SYSTEMD:
        cgroup_uid = pod_uid.replace("-", "_")
        return (
            f"/sysinfo/fs/cgroup/systemd/kubepods.slice/kubepods-{qos}.slice/"
            f"kubepods-{qos}-pod{cgroup_uid}.slice/docker-{container}.scope/tasks"
        )
    raise ValueError("can not identify cgroup driver")


def check_blocking(
    ut_switch_on: dict[str, list[int]], priority: int, usage: PodUsage
) -> bool:
    """Whether a task of higher priority is active on the container's device."""
    if usage.sr is None:
        return False
    for uuid in usage.sr.uuid_strings():
        counts = ut_switch_on.get(uuid)
        if counts is not None:
            return any(counts[i] > 0 for i in range(priority))
    return False


def check_priority(
    ut_switch_on: dict[str, list[int]], priority: int, usage: PodUsage
) -> bool:
    """Whether a higher priority task or another task of the same priority is active."""
    if usage.sr is None:
        return False
    for uuid in usage.sr.uuid_strings():
        counts = ut_switch_on.get(uuid)
        if counts is None:
            continue
        if any(counts[i] > 0 for i in range(priority)):
            return True
        if counts[priority] > 1:
            return True
    return False


def observe(srlist: dict[str, PodUsage]) -> None:
    """Update the blocking and utilisation switches of every shared region."""
    ut_switch_on: dict[str, list[int]] = {}

    for usage in srlist.values():
        region = usage.sr
        if region is None or region.recent_kernel <= 0:
            continue
        region.recent_kernel -= 1
        if region.recent_kernel <= 0:
            continue
        for uuid in region.uuid_strings():
            if not uuid:
                continue
            counts = ut_switch_on.setdefault(uuid, [0] * PRIORITY_LEVELS)
            counts[region.priority] += 1

    for key, usage in srlist.items():
        region = usage.sr
        if region is None:
            continue
        if check_blocking(ut_switch_on, region.priority, usage):
            if region.recent_kernel >= 0:
                logger.info("utSwitchOn=%s; setting blocking on for %s", ut_switch_on, key)
                region.recent_kernel = -1
        elif region.recent_kernel < 0:
            logger.info("utSwitchOn=%s; setting blocking off for %s", ut_switch_on, key)
            region.recent_kernel = 0

        if check_priority(ut_switch_on, region.priority, usage):
            if region.utilization_switch != 1:
                logger.info(
                    "utSwitchOn=%s; setting utilization switch on for %s", ut_switch_on, key
                )
                region.utilization_switch = 1
        elif region.utilization_switch != 0:
            logger.info(
                "utSwitchOn=%s; setting utilization switch off for %s", ut_switch_on, key
            )
            region.utilization_switch = 0