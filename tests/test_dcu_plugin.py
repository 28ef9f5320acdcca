import os
import subprocess

import pytest

from vgpushare.corealloc import alloc_core_usage, init_core_usage
from vgpushare.dcu_plugin import (
    ContainerDevice,
    DcuPlugin,
    DeviceSpec,
    index_from_uuid,
    simple_health_check,
)

MEM = 16384 * 1024 * 1024

MEMINFO = (
    "========== Memory Usage ==========\n"
    f"DCU[0] \t\t: vram Total Memory (B): {MEM}\n"
    "DCU[0] \t\t: vram Total Used Memory (B): 1024\n"
    f"DCU[1] \t\t: vram Total Memory (B): {MEM}\n"
    "DCU[1] \t\t: vram Total Used Memory (B): 2048\n"
)
PRODUCT = (
    "DCU[0] \t\t: Card series:\t\tZ100L\n"
    "DCU[0] \t\t: Card vendor:\t\tExample\n"
    "DCU[1] \t\t: Card series:\t\tZ100\n"
    "DCU[1] \t\t: Card vendor:\t\tExample\n"
)
BUS = "DCU[0] \t\t: PCI Bus: 0000:19:00.0\nDCU[1] \t\t: PCI Bus: 0000:1a:00.0\n"
DEVICE_INFO = (
    "Device info\n"
    "\tActual Device: 0\n"
    "\tCompute units: 60\n"
    "\tActual Device: 1\n"
    "\tCompute units: 64\n"
)


def _runner(args):
    outputs = {
        ("hy-smi", "--showmeminfo", "vram"): MEMINFO,
        ("hy-smi", "--showproduct"): PRODUCT,
        ("hy-smi", "--showbus"): BUS,
        ("hdmcli", "--show-device-info"): DEVICE_INFO,
    }
    return outputs[tuple(args)]


@pytest.fixture
def plugin():
    p = DcuPlugin(runner=_runner)
    p.start()
    return p


def test_start_reads_memory_and_count(plugin):
    assert plugin.totalmem[:3] == [16384, 16384, 0]
    assert plugin.count == 4


def test_start_reads_product_and_bus(plugin):
    assert plugin.cardtype[0] == "DCU-Z100L"
    assert plugin.cardtype[1] == "DCU-Z100"
    assert plugin.pcibusid[:2] == ["0000:19:00.0", "0000:1a:00.0"]


def test_start_reads_cores_and_masks(plugin):
    assert plugin.totalcores[:2] == [60, 64]
    assert plugin.coremask[0] == "000000000000000"
    assert plugin.coremask[1] == init_core_usage(64)
    assert plugin.coremask[2] == ""


def test_start_failure_raises():
    def failing(args):
        raise subprocess.CalledProcessError(1, list(args))

    with pytest.raises(RuntimeError):
        DcuPlugin(runner=failing).start()


def test_malformed_meminfo_raises():
    with pytest.raises(ValueError):
        DcuPlugin(runner=_runner).parse_meminfo("DCU[0] : something else\n")


def test_api_devices(plugin):
    devices = plugin.api_devices()
    assert [d.id for d in devices] == ["DCU-0", "DCU-1"]
    assert all(d.count == 30 and d.devcore == 100 and d.health for d in devices)
    assert devices[0].type == "DCU-Z100L"
    assert devices[1].devmem == 16384


def test_generate_fake_devs(plugin):
    devices = plugin.api_devices()
    fakes = plugin.generate_fake_devs(devices)
    assert len(fakes) == 30 * len(devices)
    assert fakes[0] == {"ID": "DCU-0-fake-0", "Health": "Healthy"}
    assert len({f["ID"] for f in fakes}) == len(fakes)


def test_allocate_vidx_sequential_and_exhaust():
    p = DcuPlugin(runner=_runner)
    assert [p.allocate_vidx() for _ in range(3)] == [0, 1, 2]
    p.vidx[1] = False
    assert p.allocate_vidx() == 1
    p.vidx = [True] * len(p.vidx)
    with pytest.raises(RuntimeError):
        p.allocate_vidx()


def test_allocate_pipe_id_exhaust():
    p = DcuPlugin(runner=_runner)
    ids = [p.allocate_pipe_id(2) for _ in range(20)]
    assert ids == list(range(20))
    assert p.allocate_pipe_id(3) == 0
    with pytest.raises(RuntimeError):
        p.allocate_pipe_id(2)


def test_index_from_uuid():
    assert index_from_uuid("DCU-3") == 3
    assert index_from_uuid("DCU-12") == 12
    assert index_from_uuid("DCU-x") == 0


def test_simple_health_check(tmp_path):
    kfd = tmp_path / "kfd"
    kfd.write_bytes(b"")
    assert simple_health_check(kfd) is True
    assert simple_health_check(tmp_path / "missing") is False


def test_device_specs():
    specs = DcuPlugin(runner=_runner).device_specs([ContainerDevice("DCU-1")])
    assert specs[0] == DeviceSpec("/dev/kfd", "/dev/kfd", "rwm")
    assert specs[1] == DeviceSpec("/dev/mkfd", "/dev/mkfd", "rwm")
    assert specs[2] == DeviceSpec("/dev/dri/card1", "/dev/dri/card1", "rw")
    assert specs[3].host_path == "/dev/dri/renderD129"
    assert len(specs) == 4


def test_create_vdev_file(tmp_path):
    p = DcuPlugin(runner=_runner)
    p.totalcores[0] = 100
    p.coremask[0] = "50200fff4000000"
    p.pcibusid[0] = "0000:19:00.0"
    req = ContainerDevice("DCU-0", usedmem=2048, usedcores=16)
    directory = p.create_vdev_file("pod-uid", "main", [req], tmp_path)
    assert os.path.basename(directory) == "pod-uid_main_0_0_0_afdfe0000000000"
    content = (tmp_path / os.path.basename(directory) / "vdev0.conf").read_text()
    lines = content.splitlines()
    assert lines[0] == "PciBusId: 0000:19:00.0"
    assert lines[1] == "cu_mask: 0xafdfe0000000000"
    assert "mem: 2048 MiB" in lines
    assert lines[-1] == "enable: 1"
    assert p.vidx[0] is True and p.pipeid[0][0] is True


def test_create_vdev_file_multiple_devices(tmp_path):
    p = DcuPlugin(runner=_runner)
    whole = [ContainerDevice("DCU-0"), ContainerDevice("DCU-1")]
    assert p.create_vdev_file("uid", "c", whole, tmp_path) == ""
    shared = [ContainerDevice("DCU-0", usedmem=10), ContainerDevice("DCU-1")]
    with pytest.raises(ValueError):
        p.create_vdev_file("uid", "c", shared, tmp_path)


def test_refresh_keeps_live_and_removes_dead(tmp_path, plugin):
    live = tmp_path / "live-uid_main_0_2_5_abc000000000000"
    dead = tmp_path / "dead-uid_main_1_3_7_000000000000000"
    live.mkdir()
    dead.mkdir()
    plugin.vidx[7] = True
    plugin.pipeid[1][3] = True
    plugin.refresh_container_devices(["live-uid"], tmp_path)
    assert plugin.coremask[0] == "abc000000000000"
    assert plugin.vidx[5] is True and plugin.pipeid[0][2] is True
    assert plugin.vidx[7] is False and plugin.pipeid[1][3] is False
    assert live.exists() and not dead.exists()


def test_vdev_round_trip_through_refresh(tmp_path, plugin):
    req = ContainerDevice("DCU-0", usedmem=1024, usedcores=50)
    plugin.create_vdev_file("uid-1", "ctr", [req], tmp_path)
    fresh = DcuPlugin(runner=_runner)
    fresh.start()
    fresh.refresh_container_devices(["uid-1"], tmp_path)
    expected = alloc_core_usage(init_core_usage(60), 30)
    assert fresh.coremask[0] == expected
    assert fresh.vidx[0] is True
    assert fresh.pipeid[0][0] is True
    assert fresh.allocate_vidx() == 1