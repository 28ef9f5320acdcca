import pytest

from vgpushare.feedback import (
    CGROUP_DRIVER_CGROUPFS,
    CGROUP_DRIVER_SYSTEMD,
    CGROUP_DRIVER_UNKNOWN,
    PodUsage,
    check_blocking,
    check_priority,
    detect_cgroup_driver,
    observe,
    task_file_path,
)
from vgpushare.shared_region import SharedRegion


def _usage(uuid: str, priority: int = 0, recent_kernel: int = 0) -> PodUsage:
    region = SharedRegion(priority=priority, recent_kernel=recent_kernel)
    region.uuids = list(region.uuids)
    region.uuids[0] = uuid.encode()
    return PodUsage("uid_ctr", region)


def test_detect_systemd(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("kind: KubeletConfiguration\ncgroupDriver: systemd\n")
    assert detect_cgroup_driver(cfg) == CGROUP_DRIVER_SYSTEMD


def test_detect_cgroupfs(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("cgroupDriver: cgroupfs\n")
    assert detect_cgroup_driver(cfg) == CGROUP_DRIVER_CGROUPFS


def test_detect_without_key_or_file(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("systemd: true\n")
    assert detect_cgroup_driver(cfg) == CGROUP_DRIVER_UNKNOWN
    assert detect_cgroup_driver(tmp_path / "missing.yaml") == CGROUP_DRIVER_UNKNOWN


def test_task_file_path_cgroupfs():
    path = task_file_path(CGROUP_DRIVER_CGROUPFS, "Burstable", "ab-cd", "docker://f00")
    assert path.startswith("/sysinfo/fs/cgroup/memory/kubepods/burstable/")
    assert "podab-cd" in path
    assert path.endswith("/f00/tasks")
    assert "docker://" not in path


def test_task_file_path_systemd():
    path = task_file_path(CGROUP_DRIVER_SYSTEMD, "BestEffort", "ab-cd", "docker://f00")
    assert "kubepods-besteffort-podab_cd.slice" in path
    assert path.endswith("docker-f00.scope/tasks")


def test_task_file_path_unknown_driver():
    with pytest.raises(ValueError):
        task_file_path(CGROUP_DRIVER_UNKNOWN, "burstable", "uid", "docker://x")


def test_check_blocking():
    usage = _usage("GPU-a")
    ut = {"GPU-a": [1, 0]}
    assert check_blocking(ut, 1, usage) is True
    assert check_blocking(ut, 0, usage) is False
    assert check_blocking({"GPU-b": [1, 0]}, 1, usage) is False


def test_check_priority():
    usage = _usage("GPU-a")
    assert check_priority({"GPU-a": [0, 2]}, 1, usage) is True
    assert check_priority({"GPU-a": [0, 1]}, 1, usage) is False
    assert check_priority({"GPU-a": [1, 0]}, 1, usage) is True


def test_observe_blocks_lower_priority():
    high = _usage("GPU-a", priority=0, recent_kernel=2)
    low = _usage("GPU-a", priority=1, recent_kernel=2)
    srlist = {"high": high, "low": low, "empty": PodUsage("none", None)}
    observe(srlist)
    assert high.sr.recent_kernel == 1
    assert high.sr.utilization_switch == 0
    assert low.sr.recent_kernel == -1
    assert low.sr.utilization_switch == 1
    assert srlist["empty"].sr is None


def test_observe_releases_blocking():
    usage = _usage("GPU-a", priority=1, recent_kernel=-1)
    usage.sr.utilization_switch = 1
    observe({"only": usage})
    assert usage.sr.recent_kernel == 0
    assert usage.sr.utilization_switch == 0


def test_observe_same_priority_turns_switch_on():
    first = _usage("GPU-a", priority=1, recent_kernel=3)
    second = _usage("GPU-a", priority=1, recent_kernel=3)
    observe({"a": first, "b": second})
    assert first.sr.utilization_switch == 1
    assert second.sr.utilization_switch == 1
    assert first.sr.recent_kernel == 2