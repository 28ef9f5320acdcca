"""The shared memory region written by the in-container vGPU library."""

from __future__ import annotations

import os
import struct
from dataclasses import astuple, dataclass, field

TASK_PRIORITY = "CUDA_TASK_PRIORITY"
CORE_LIMIT_SWITCH = "GPU_CORE_UTILIZATION_POLICY"

MAGIC = 19920718
MAX_DEVICES = 16
MAX_PROCS = 1024
UUID_SIZE = 96
SEM_SIZE = 32

_HEADER = struct.Struct(f"<iiI{SEM_SIZE}s4xQ")
_UUIDS_SIZE = MAX_DEVICES * UUID_SIZE
_LIMITS = struct.Struct(f"<{MAX_DEVICES}Q")
_MEMORY_FIELDS = 5
_SLOT = struct.Struct(f"<ii{MAX_DEVICES * _MEMORY_FIELDS}Q{MAX_DEVICES}Qi4x")
_TAIL = struct.Struct("<iiii")

REGION_SIZE = (
    _HEADER.size
    + _UUIDS_SIZE
    + 2 * _LIMITS.size
    + MAX_PROCS * _SLOT.size
    + _TAIL.size
)


def _check_len(name: str, values, expected: int) -> None:
    if len(values) != expected:
        raise ValueError(f"{name} must hold {expected} entries, not {len(values)}")


@dataclass
class DeviceMemory:
    """Device memory used by one process on one device, in bytes."""

    context_size: int = 0
    module_size: int = 0
    buffer_size: int = 0
    offset: int = 0
    total: int = 0


@dataclass
class ProcSlot:
    """One process registered in the region."""

    pid: int = 0
    hostpid: int = 0
    used: list[DeviceMemory] = field(
        default_factory=lambda: [DeviceMemory() for _ in range(MAX_DEVICES)]
    )
    monitorused: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    status: int = 0

    @classmethod
    def _unpack(cls, values: tuple[int, ...]) -> ProcSlot:
        pid, hostpid = values[0], values[1]
        mem_end = 2 + MAX_DEVICES * _MEMORY_FIELDS
        memory = values[2:mem_end]
        used = [
            DeviceMemory(*memory[start:start + _MEMORY_FIELDS])
            for start in range(0, len(memory), _MEMORY_FIELDS)
        ]
        monitorused = list(values[mem_end:mem_end + MAX_DEVICES])
        return cls(pid, hostpid, used, monitorused, values[-1])

    def _pack(self) -> bytes:
        _check_len("used", self.used, MAX_DEVICES)
        _check_len("monitorused", self.monitorused, MAX_DEVICES)
        memory = [value for dev in self.used for value in astuple(dev)]
        return _SLOT.pack(self.pid, self.hostpid, *memory, *self.monitorused, self.status)


@dataclass
class SharedRegion:
    """The whole shared region of one container."""

    initialized_flag: int = 0
    sm_init_flag: int = 0
    owner_pid: int = 0
    sem: bytes = bytes(SEM_SIZE)
    num: int = 0
    uuids: list[bytes] = field(default_factory=lambda: [bytes(UUID_SIZE)] * MAX_DEVICES)
    limit: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    sm_limit: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    procs: list[ProcSlot] = field(
        default_factory=lambda: [ProcSlot() for _ in range(MAX_PROCS)]
    )
    procnum: int = 0
    utilization_switch: int = 0
    recent_kernel: int = 0
    priority: int = 0

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview) -> SharedRegion:
        """Decode a region from its in-memory layout."""
        view = memoryview(data)
        if len(view) < REGION_SIZE:
            raise ValueError(
                f"shared region needs {REGION_SIZE} bytes, got {len(view)}"
            )
        initialized, sm_init, owner, sem, num = _HEADER.unpack_from(view, 0)
        pos = _HEADER.size
        uuids = [
            bytes(view[start:start + UUID_SIZE])
            for start in range(pos, pos + _UUIDS_SIZE, UUID_SIZE)
        ]
        pos += _UUIDS_SIZE
        limit = list(_LIMITS.unpack_from(view, pos))
        pos += _LIMITS.size
        sm_limit = list(_LIMITS.unpack_from(view, pos))
        pos += _LIMITS.size
        procs_end = pos + MAX_PROCS * _SLOT.size
        procs = [ProcSlot._unpack(values) for values in _SLOT.iter_unpack(view[pos:procs_end])]
        procnum, switch, recent, priority = _TAIL.unpack_from(view, procs_end)
        return cls(
            initialized_flag=initialized,
            sm_init_flag=sm_init,
            owner_pid=owner,
            sem=sem,
            num=num,
            uuids=uuids,
            limit=limit,
            sm_limit=sm_limit,
            procs=procs,
            procnum=procnum,
            utilization_switch=switch,
            recent_kernel=recent,
            priority=priority,
        )

    def to_bytes(self) -> bytes:
        """Encode the region in its in-memory layout."""
        _check_len("uuids", self.uuids, MAX_DEVICES)
        _check_len("limit", self.limit, MAX_DEVICES)
        _check_len("sm_limit", self.sm_limit, MAX_DEVICES)
        _check_len("procs", self.procs, MAX_PROCS)
        if len(self.sem) > SEM_SIZE:
            raise ValueError(f"sem must be at most {SEM_SIZE} bytes")
        for uuid in self.uuids:
            if len(uuid) > UUID_SIZE:
                raise ValueError(f"uuid must be at most {UUID_SIZE} bytes")
        parts = [
            _HEADER.pack(
                self.initialized_flag, self.sm_init_flag, self.owner_pid, self.sem, self.num
            ),
            *(uuid.ljust(UUID_SIZE, b"\0") for uuid in self.uuids),
            _LIMITS.pack(*self.limit),
            _LIMITS.pack(*self.sm_limit),
            *(slot._pack() for slot in self.procs),
            _TAIL.pack(self.procnum, self.utilization_switch, self.recent_kernel, self.priority),
        ]
        return b"".join(parts)

    def uuid_strings(self) -> list[str]:
        """The device uuids as text, each cut at its first NUL byte."""
        return [
            uuid.split(b"\0", 1)[0].decode("utf-8", "replace") for uuid in self.uuids
        ]


def load_shared_region(path: str | os.PathLike[str]) -> SharedRegion:
    """Read the shared region stored in a cache file."""
    if not os.fspath(path):
        raise ValueError("not found path")
    with open(path, "rb") as handle:
        data = handle.read(REGION_SIZE)
    return SharedRegion.from_bytes(data)


def device_used_memory(idx: int, region: SharedRegion) -> int:
    """Total memory used on device ``idx`` by all processes of the region."""
    if idx < 0 or idx >= MAX_DEVICES:
        raise IndexError("out of device idx")
    return sum(slot.used[idx].total for slot in region.procs)