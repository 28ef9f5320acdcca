"""Tracks the per-container cache directories written by the vGPU library."""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from collections.abc import Iterable, MutableMapping

from .feedback import PodUsage
from .shared_region import SharedRegion, load_shared_region

logger = logging.getLogger(__name__)

CONTAINER_PATH = "/usr/local/vgpu/containers"
STALE_AFTER = 300.0

_lock = threading.Lock()


def check_files(fpath: str | os.PathLike[str]) -> SharedRegion | None:
    """The shared region cached in a container directory, if there is one.

    Raises ``ValueError`` when the directory holds more than two entries.
    """
    logger.info("Checking path %s", fpath)
    names = sorted(os.listdir(fpath))
    if len(names) > 2:
        raise ValueError("cache num not matched")
    for name in names:
        if "libvgpu.so" in name or ".cache" not in name:
            continue
        cachefile = os.path.join(fpath, name)
        try:
            region = load_shared_region(cachefile)
        except (OSError, ValueError) as exc:
            logger.error("err=%s", exc)
            continue
        logger.info(
            "sr=%s %s %s", region.utilization_switch, region.recent_kernel, region.priority
        )
        return region
    return None


def check_pod_valid(name: str, pod_uids: Iterable[str]) -> bool:
    """Whether the directory name contains the uid of a running pod."""
    return any(uid in name for uid in pod_uids)


def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


def monitor_path(
    podmap: MutableMapping[str, PodUsage],
    pod_uids: Iterable[str],
    container_path: str | os.PathLike[str] = CONTAINER_PATH,
) -> None:
    """Bring ``podmap`` in line with the container directories on disk.

    Directories of pods that are gone are removed once they are older than
    five minutes; new directories with a cache file are added.
    """
    uids = list(pod_uids)
    root = os.fspath(container_path)
    with _lock:
        for name in sorted(os.listdir(root)):
            dirname = os.path.join(root, name)
            try:
                info = os.stat(dirname)
            except OSError:
                podmap.pop(dirname, None)
                continue
            if not check_pod_valid(name, uids):
                if info.st_mtime + STALE_AFTER < time.time():
                    logger.info("removing %s", dirname)
                    podmap.pop(dirname, None)
                    _remove(dirname)
                continue
            if dirname in podmap:
                continue
            logger.info("Adding ctr %s", dirname)
            region = check_files(dirname)
            if region is None:
                continue
            podmap[dirname] = PodUsage(name, region)