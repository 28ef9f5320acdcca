"""Helpers that read DCU device properties from sysfs, kfd topology and debugfs."""

from __future__ import annotations

import glob
import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_FAMILY_NAMES = {
    110: "SI",
    120: "CI",
    125: "KV",
    130: "VI",
    135: "CZ",
    141: "AI",
    142: "RV",
    143: "NV",
}

_VENDOR_ID = "0x1d94"
_INT32_MAX = 2**31 - 1
_INT32_MIN = -(2**31)

_FW_VERSION_RE = re.compile(
    r"(\w+) feature version: (\d+), firmware version: (0x[0-9a-fA-F]+)", re.ASCII
)
_TOPO_SIMD_RE = re.compile(r"simd_count\s(\d+)", re.ASCII)


def _parse_int_base0(text: str) -> int:
    """Parse an integer whose base is given by its prefix (0x, 0o, 0b, or 0 for octal)."""
    sign = 1
    body = text
    if body[:1] in "+-" and body:
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    lowered = body.lower()
    if lowered.startswith(("0x", "0o", "0b")):
        value = int(lowered, 0)
    elif len(lowered) > 1 and lowered.startswith("0"):
        value = int(lowered, 8)
    else:
        value = int(lowered, 10)
    return sign * value


def _lines(path: str | os.PathLike[str]):
    with open(path, encoding="utf-8", errors="replace") as handle:
        for line in handle:
            yield line.rstrip("\r\n")


def family_id_to_string(family_id: int) -> str:
    """Name of an AMDGPU family id."""
    try:
        return _FAMILY_NAMES[family_id]
    except KeyError:
        raise ValueError(f"Unknown Family ID: {family_id}") from None


def get_amd_gpus(sysfs_root: str | os.PathLike[str] = "/sys") -> dict[str, dict[str, int]]:
    """Map each DCU PCI address to the minor numbers of its card and render nodes."""
    root = os.fspath(sysfs_root)
    drivers = os.path.join(root, "module", "hydcu", "drivers")
    if not os.path.exists(drivers):
        logger.warning("DCU driver unavailable: %s not found", drivers)
        return {}

    pattern = os.path.join(
        glob.escape(os.path.join(drivers, "pci:hydcu")), "[0-9a-fA-F]" * 4 + ":*"
    )
    devices: dict[str, dict[str, int]] = {}
    for path in sorted(glob.glob(pattern)):
        logger.info("%s", path)
        nodes: dict[str, int] = {}
        devices[os.path.basename(path)] = nodes
        for dev_path in sorted(glob.glob(os.path.join(glob.escape(path), "drm", "*"))):
            name = os.path.basename(dev_path)
            for prefix in ("card", "renderD"):
                if name.startswith(prefix):
                    try:
                        nodes[prefix] = int(name[len(prefix):])
                    except ValueError:
                        nodes[prefix] = 0
                    break
    return devices


def is_amd_gpu(card_name: str, sysfs_root: str | os.PathLike[str] = "/sys") -> bool:
    """Whether the DRM card reports the DCU vendor id."""
    vendor_path = Path(sysfs_root) / "class" / "drm" / card_name / "device" / "vendor"
    try:
        vendor = vendor_path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError as exc:
        logger.error("Error opening %s: %s", vendor_path, exc)
        return False
    return vendor == _VENDOR_ID


def parse_topology_properties(
    path: str | os.PathLike[str], pattern: str | re.Pattern[str]
) -> int:
    """Value of the first line of a kfd topology file that matches ``pattern``.

    The pattern's first group holds the number. Raises ``ValueError`` when no
    line matches or the value is not a number, ``OSError`` when the file
    cannot be read.
    """
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    for line in _lines(path):
        match = regex.search(line)
        if match is None:
            continue
        try:
            return _parse_int_base0(match.group(1))
        except ValueError:
            raise ValueError(
                f"invalid topology property value {match.group(1)!r}"
            ) from None
    raise ValueError(f"Topology property not found.  Regex: {regex.pattern}")


def _as_uint32(text: str) -> int:
    try:
        value = _parse_int_base0(text)
    except ValueError:
        return 0
    value = min(max(value, _INT32_MIN), _INT32_MAX)
    return value & 0xFFFFFFFF


def parse_debugfs_firmware_info(
    path: str | os.PathLike[str],
) -> tuple[dict[str, int], dict[str, int]]:
    """Feature and firmware versions listed in an amdgpu_firmware_info file."""
    features: dict[str, int] = {}
    firmware: dict[str, int] = {}
    logger.info("Parsing %s", path)
    try:
        lines = list(_lines(path))
    except OSError:
        logger.error("Fail to open %s", path)
        return features, firmware
    for line in lines:
        match = _FW_VERSION_RE.search(line)
        if match is not None:
            name = match.group(1)
            features[name] = _as_uint32(match.group(2))
            firmware[name] = _as_uint32(match.group(3))
    return features, firmware


def count_gpu_dev_from_topology(
    topo_root: str | os.PathLike[str] = "/sys/class/kfd/kfd",
) -> int:
    """Number of topology nodes that report at least one SIMD unit."""
    pattern = os.path.join(
        glob.escape(os.fspath(topo_root)), "topology", "nodes", "*", "properties"
    )
    count = 0
    for node_file in sorted(glob.glob(pattern)):
        logger.info("Parsing %s", node_file)
        try:
            lines = list(_lines(node_file))
        except OSError:
            continue
        for line in lines:
            match = _TOPO_SIMD_RE.search(line)
            if match is not None and int(match.group(1)) > 0:
                count += 1
                break
    return count