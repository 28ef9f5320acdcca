"""Per-container vGPU memory metrics in the Prometheus text format."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from .feedback import PodUsage
from .shared_region import MAX_DEVICES, DeviceMemory

logger = logging.getLogger(__name__)

ZONE = "vGPU"

USAGE_METRIC = "vGPU_device_memory_usage_in_bytes"
LIMIT_METRIC = "vGPU_device_memory_limit_in_bytes"
DESC_METRIC = "Device_memory_desc_of_container"

_HELP = {
    "HostGPUMemoryUsage": "GPU device memory usage",
    "HostCoreUtilization": "GPU core utilization",
    USAGE_METRIC: "vGPU device usage",
    LIMIT_METRIC: "vGPU device limit",
    DESC_METRIC: "Container device meory description",
}


@dataclass
class Sample:
    """One metric value with its labels."""

    name: str
    labels: dict[str, str]
    value: float
    kind: str = "gauge"


@dataclass
class PodInfo:
    """The parts of a pod the collector needs."""

    uid: str
    name: str
    namespace: str = ""
    containers: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)


def parse_id_str(podusage: str) -> tuple[str, str]:
    """Split a container directory name into pod uid and container name."""
    parts = podusage.split("_")
    if len(parts) > 1:
        return parts[0], parts[1]
    raise ValueError("parse error")


def total_usage(usage: PodUsage, vidx: int) -> DeviceMemory:
    """Memory used on virtual device ``vidx`` summed over all processes."""
    added = DeviceMemory()
    if usage.sr is None:
        return added
    for slot in usage.sr.procs:
        used = slot.used[vidx]
        added.buffer_size += used.buffer_size
        added.context_size += used.context_size
        added.module_size += used.module_size
        added.offset += used.offset
        added.total += used.total
    return added


def container_samples(
    podmap: Mapping[str, PodUsage], pods: Iterable[PodInfo]
) -> list[Sample]:
    """Usage and limit samples for every container that has a shared region."""
    samples: list[Sample] = []
    for pod in pods:
        for usage in podmap.values():
            region = usage.sr
            if region is None:
                continue
            try:
                pod_uid, ctr_name = parse_id_str(usage.idstr)
            except ValueError:
                logger.warning("unexpected container directory %s", usage.idstr)
                continue
            if pod.uid != pod_uid or ctr_name not in pod.containers:
                continue
            logger.info("container matched %s/%s %s", pod.namespace, pod.name, ctr_name)
            for i in range(min(region.num, MAX_DEVICES)):
                value = total_usage(usage, i)
                uuid = region.uuids[i][:40].decode("utf-8", "replace").rstrip("\x00")
                labels = {
                    "podnamespace": pod.namespace,
                    "podname": pod.name,
                    "ctrname": ctr_name,
                    "vdeviceid": str(i),
                    "deviceuuid": uuid,
                }
                samples.append(Sample(USAGE_METRIC, dict(labels), float(value.total)))
                samples.append(Sample(LIMIT_METRIC, dict(labels), float(region.limit[i])))
                samples.append(
                    Sample(
                        DESC_METRIC,
                        {
                            **labels,
                            "context": str(value.context_size),
                            "module": str(value.module_size),
                            "data": str(value.buffer_size),
                            "offset": str(value.offset),
                        },
                        float(value.total),
                        kind="counter",
                    )
                )
    return samples


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign, digit_tuple, exponent = Decimal(repr(value)).normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    exp = len(digits) + exponent - 1
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{prefix}{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp):02d}"
    if exp < 0:
        return f"{prefix}0.{'0' * (-exp - 1)}{digits}"
    if len(digits) <= exp + 1:
        return prefix + digits + "0" * (exp + 1 - len(digits))
    return f"{prefix}{digits[:exp + 1]}.{digits[exp + 1:]}"


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def render_exposition(samples: Iterable[Sample]) -> str:
    """Samples in the Prometheus text exposition format, zone label added."""
    families: dict[str, list[Sample]] = {}
    for sample in samples:
        families.setdefault(sample.name, []).append(sample)

    lines: list[str] = []
    for name in sorted(families):
        group = families[name]
        help_text = _HELP.get(name, "")
        if help_text:
            lines.append(f"# HELP {name} {_escape_help(help_text)}")
        lines.append(f"# TYPE {name} {group[0].kind}")
        rendered = []
        for sample in group:
            pairs = sorted({**sample.labels, "zone": ZONE}.items())
            rendered.append((tuple(v for _, v in pairs), pairs, sample.value))
        for _, pairs, value in sorted(rendered, key=lambda item: item[0]):
            label_text = ",".join(f'{k}="{_escape_label(v)}"' for k, v in pairs)
            lines.append(f"{name}{{{label_text}}} {_format_value(value)}")
    return "\n".join(lines) + "\n" if lines else ""