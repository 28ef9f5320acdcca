"""Device plugin state for Hygon DCU cards shared between containers."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .corealloc import add_core_usage, alloc_core_usage, init_core_usage

logger = logging.getLogger(__name__)

MAX_CARDS = 16
MAX_VDEVS = 200
MAX_PIPES = 20
SHARES_PER_DEVICE = 30
DEVICE_CORES = 100
DCU_DIR = "/usr/local/vgpu/dcu"
KFD_PATH = "/dev/kfd"
HEALTHY = "Healthy"

_INT_RE = re.compile(r"[+-]?\d+")
_UUID_RE = re.compile(r"DCU-([+-]?\d+)")
_MEM_TOTAL_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*vram Total Memory \(B\):\s*(\d+)")
_MEM_USED_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*vram Total Used Memory \(B\):\s*(\d+)")
_PRODUCT_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*Card series:\s*(\S+)")
_BUS_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*PCI Bus:\s*(\S+)")
_ACTUAL_DEVICE_RE = re.compile(r"\s*Actual Device:\s*([+-]?\d+)")
_COMPUTE_UNITS_RE = re.compile(r"\s*Compute units:\s*([+-]?\d+)")

Runner = Callable[[Sequence[str]], str]


@dataclass
class DeviceInfo:
    """A device as reported to the scheduler."""

    index: int
    id: str
    count: int
    devmem: int
    devcore: int
    type: str
    health: bool


@dataclass
class ContainerDevice:
    """A device share requested by one container."""

    uuid: str
    type: str = ""
    usedmem: int = 0
    usedcores: int = 0


@dataclass
class DeviceSpec:
    """A device node to expose inside a container."""

    host_path: str
    container_path: str
    permissions: str


def _atoi(text: str) -> int:
    """Decimal value of ``text``, or 0 when it is not a number."""
    return int(text) if _INT_RE.fullmatch(text) else 0


def index_from_uuid(uid: str) -> int:
    """Card index of a ``DCU-<n>`` identifier, 0 when it has none."""
    return _atoi(uid[4:])


def simple_health_check(path: str | os.PathLike[str] = KFD_PATH) -> bool:
    """Whether the kfd device can be opened."""
    try:
        with open(path, "rb"):
            return True
    except OSError:
        logger.error("Error opening %s", path)
        return False


def _run_command(args: Sequence[str]) -> str:
    result = subprocess.run(
        list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        check=True,
        text=True,
    )
    return result.stdout


def _dcu_lines(output: str) -> Iterable[str]:
    return (line for line in output.split("\n") if "DCU[" in line)


class DcuPlugin:
    """Bookkeeping of DCU cards, virtual device ids, pipes and core masks."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner = runner or _run_command
        self._reset()

    def _reset(self) -> None:
        self.pcibusid = [""] * MAX_CARDS
        self.totalcores = [0] * MAX_CARDS
        self.totalmem = [0] * MAX_CARDS
        self.cardtype = [""] * MAX_CARDS
        self.coremask = [""] * MAX_CARDS
        self.vidx = [False] * MAX_VDEVS
        self.pipeid = [[False] * MAX_PIPES for _ in range(MAX_CARDS)]
        self.count = 0
        self._line_index = 0

    def parse_meminfo(self, output: str) -> None:
        """Read total memory per card, in MiB, from ``hy-smi --showmeminfo vram``."""
        for line in _dcu_lines(output):
            if self._line_index % 2 == 0:
                match = _MEM_TOTAL_RE.search(line)
                if match is None:
                    raise ValueError(f"unexpected memory line: {line!r}")
                idx, memory = int(match.group(1)), int(match.group(2))
                self.totalmem[idx] = memory // 1024 // 1024
            elif _MEM_USED_RE.search(line) is None:
                raise ValueError(f"unexpected memory line: {line!r}")
            self._line_index += 1
            self.count += 1

    def parse_product(self, output: str) -> None:
        """Read each card's series from ``hy-smi --showproduct``."""
        for line in _dcu_lines(output):
            if self._line_index % 2 == 0:
                match = _PRODUCT_RE.search(line)
                if match is None:
                    raise ValueError(f"unexpected product line: {line!r}")
                self.cardtype[int(match.group(1))] = f"DCU-{match.group(2)}"
            self._line_index += 1

    def parse_bus(self, output: str) -> None:
        """Read each card's PCI bus id from ``hy-smi --showbus``."""
        for line in _dcu_lines(output):
            match = _BUS_RE.search(line)
            if match is None:
                raise ValueError(f"unexpected bus line: {line!r}")
            self.pcibusid[int(match.group(1))] = match.group(2)
        logger.info("collecting pcibus=%s", self.pcibusid)

    def parse_device_info(self, output: str) -> None:
        """Read compute units per card from ``hdmcli --show-device-info``."""
        idx = 0
        for line in output.split("\n"):
            if "Actual Device:" in line:
                match = _ACTUAL_DEVICE_RE.match(line)
                if match is None:
                    raise ValueError(f"unexpected device line: {line!r}")
                idx = int(match.group(1))
            elif "Compute units:" in line:
                match = _COMPUTE_UNITS_RE.match(line)
                if match is None:
                    raise ValueError(f"unexpected compute units line: {line!r}")
                self.totalcores[idx] = int(match.group(1))
        logger.info("collecting pcibus=%s cores=%s", self.pcibusid, self.totalcores)
        self.coremask = [init_core_usage(cores) for cores in self.totalcores]

    def _query(self, *args: str) -> str:
        try:
            return self._runner(args)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise RuntimeError(f"cmd.Run() failed with {exc}") from exc

    def start(self) -> None:
        """Discover the cards through the vendor tools."""
        self._reset()
        self.parse_meminfo(self._query("hy-smi", "--showmeminfo", "vram"))
        self.parse_product(self._query("hy-smi", "--showproduct"))
        self.parse_bus(self._query("hy-smi", "--showbus"))
        self.parse_device_info(self._query("hdmcli", "--show-device-info"))

    def api_devices(self) -> list[DeviceInfo]:
        """The cards with memory, as reported to the scheduler."""
        return [
            DeviceInfo(
                index=idx,
                id=f"DCU-{idx}",
                count=SHARES_PER_DEVICE,
                devmem=mem,
                devcore=DEVICE_CORES,
                type=self.cardtype[idx],
                health=True,
            )
            for idx, mem in enumerate(self.totalmem)
            if mem > 0
        ]

    def generate_fake_devs(self, devices: Iterable[DeviceInfo]) -> list[dict[str, str]]:
        """One kubelet device entry for every share of every card."""
        return [
            {"ID": f"{dev.id}-fake-{i}", "Health": HEALTHY}
            for dev in devices
            for i in range(dev.count)
        ]

    def allocate_vidx(self) -> int:
        """Claim the lowest free virtual device id."""
        for idx, used in enumerate(self.vidx):
            if not used:
                self.vidx[idx] = True
                return idx
        raise RuntimeError(f"vidx out of bound (>{MAX_VDEVS})")

    def allocate_pipe_id(self, devidx: int) -> int:
        """Claim the lowest free pipe of card ``devidx``."""
        pipes = self.pipeid[devidx]
        for idx, used in enumerate(pipes):
            if not used:
                pipes[idx] = True
                return idx
        raise RuntimeError(f"pipidx out of bound:{devidx}")

    def refresh_container_devices(
        self, pod_uids: Iterable[str], dcu_dir: str | os.PathLike[str] = DCU_DIR
    ) -> None:
        """Rebuild core masks and ids from the vdev directories on disk.

        Directories of pods that no longer exist are removed and their ids freed.
        """
        root = os.fspath(dcu_dir)
        names = sorted(os.listdir(root))
        uids = list(pod_uids)
        self.coremask = [init_core_usage(cores) for cores in self.totalcores]
        for name in names:
            parts = name.split("_")
            if len(parts) < 6:
                raise ValueError(f"unexpected vdev directory name: {name!r}")
            didx, pid, vdidx = (_atoi(part) for part in parts[2:5])
            if any(uid in name for uid in uids):
                self.coremask[didx] = add_core_usage(self.coremask[didx], parts[5])
                self.vidx[vdidx] = True
                self.pipeid[didx][pid] = True
            else:
                self.vidx[vdidx] = False
                self.pipeid[didx][pid] = False
                shutil.rmtree(os.path.join(root, name), ignore_errors=True)
            logger.debug("%s", name)
        logger.info("coremask=%s", self.coremask)

    def create_vdev_file(
        self,
        pod_uid: str,
        ctr_name: str,
        requests: Sequence[ContainerDevice],
        dcu_dir: str | os.PathLike[str] = DCU_DIR,
    ) -> str:
        """Write the vdev configuration of a container and return its directory.

        Returns an empty string when several whole cards are requested.
        """
        if len(requests) > 1:
            if any(req.usedcores > 0 or req.usedmem > 0 for req in requests):
                logger.error("vdev only support one device per container")
                raise ValueError("vdev only support one device per container")
            return ""
        content = ""
        devidx = pipeid = vdevidx = 0
        coremsk = ""
        for req in requests:
            if not req.uuid:
                continue
            idx = index_from_uuid(req.uuid)
            reqcores = (req.usedcores * self.totalcores[idx]) // 100
            coremsk = alloc_core_usage(self.coremask[idx], reqcores)
            devidx = idx
            vdevidx = self.allocate_vidx()
            pipeid = self.allocate_pipe_id(idx)
            content = (
                f"PciBusId: {self.pcibusid[idx]}\n"
                f"cu_mask: 0x{coremsk}\n"
                f"cu_count: {self.totalcores[idx]}\n"
                f"mem: {req.usedmem} MiB\n"
                "device_id: 0\n"
                f"vdev_id: {vdevidx}\n"
                f"pipe_id: {pipeid}\n"
                "enable: 1\n"
            )
        directory = os.path.join(
            os.fspath(dcu_dir),
            f"{pod_uid}_{ctr_name}_{devidx}_{pipeid}_{vdevidx}_{coremsk}",
        )
        os.makedirs(directory, exist_ok=True)
        os.chmod(directory, 0o777)
        Path(directory, "vdev0.conf").write_text(content, encoding="utf-8")
        return directory

    def device_specs(self, requests: Iterable[ContainerDevice]) -> list[DeviceSpec]:
        """The device nodes a container with these requests needs."""
        specs = [
            DeviceSpec("/dev/kfd", "/dev/kfd", "rwm"),
            DeviceSpec("/dev/mkfd", "/dev/mkfd", "rwm"),
        ]
        for req in requests:
            logger.info("Allocating device ID: %s", req.uuid)
            match = _UUID_RE.match(req.uuid)
            card = int(match.group(1)) if match else 0
            for path in (f"/dev/dri/card{card}", f"/dev/dri/renderD{card + 128}"):
                specs.append(DeviceSpec(path, path, "rw"))
        return specs