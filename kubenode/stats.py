"""Node and pod resource statistics served on the kubelet summary endpoint.

The classes mirror the wire format of the ``/stats/summary`` document. Every
class is a dataclass. Its JSON encoding follows the field names,
``omitempty`` rules and inlined structures of that format.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

SYSTEM_CONTAINER_KUBELET = "kubelet"
SYSTEM_CONTAINER_RUNTIME = "runtime"
SYSTEM_CONTAINER_MISC = "misc"
SYSTEM_CONTAINER_PODS = "pods"


def _json(name: str, *, omitempty: bool = False, inline: bool = False, **kwargs: Any) -> Any:
    metadata = {"json": name, "omitempty": omitempty, "inline": inline}
    return field(metadata=metadata, **kwargs)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _encode_struct(value)
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    return value


def _encode_struct(obj: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if f.metadata.get("inline"):
            for key, item in _encode_struct(value).items():
                out.setdefault(key, item)
            continue
        if f.metadata.get("omitempty") and _is_empty(value):
            continue
        out[f.metadata.get("json", f.name)] = _encode(value)
    return out


class UserDefinedMetricType(str, Enum):
    """How a user defined metric is to be interpreted."""

    GAUGE = "gauge"
    CUMULATIVE = "cumulative"
    DELTA = "delta"


@dataclass
class CPUStats:
    """CPU usage."""

    time: Optional[datetime] = _json("time", default=None)
    usage_nano_cores: Optional[int] = _json("usageNanoCores", omitempty=True, default=None)
    usage_core_nano_seconds: Optional[int] = _json("usageCoreNanoSeconds", omitempty=True, default=None)


@dataclass
class MemoryStats:
    """Memory usage."""

    time: Optional[datetime] = _json("time", default=None)
    available_bytes: Optional[int] = _json("availableBytes", omitempty=True, default=None)
    usage_bytes: Optional[int] = _json("usageBytes", omitempty=True, default=None)
    working_set_bytes: Optional[int] = _json("workingSetBytes", omitempty=True, default=None)
    rss_bytes: Optional[int] = _json("rssBytes", omitempty=True, default=None)
    page_faults: Optional[int] = _json("pageFaults", omitempty=True, default=None)
    major_page_faults: Optional[int] = _json("majorPageFaults", omitempty=True, default=None)


@dataclass
class FsStats:
    """Filesystem usage."""

    time: Optional[datetime] = _json("time", default=None)
    available_bytes: Optional[int] = _json("availableBytes", omitempty=True, default=None)
    capacity_bytes: Optional[int] = _json("capacityBytes", omitempty=True, default=None)
    used_bytes: Optional[int] = _json("usedBytes", omitempty=True, default=None)
    inodes_free: Optional[int] = _json("inodesFree", omitempty=True, default=None)
    inodes: Optional[int] = _json("inodes", omitempty=True, default=None)
    inodes_used: Optional[int] = _json("inodesUsed", omitempty=True, default=None)


@dataclass
class InterfaceStats:
    """Traffic counters of one network interface."""

    name: str = _json("name", default="")
    rx_bytes: Optional[int] = _json("rxBytes", omitempty=True, default=None)
    rx_errors: Optional[int] = _json("rxErrors", omitempty=True, default=None)
    tx_bytes: Optional[int] = _json("txBytes", omitempty=True, default=None)
    tx_errors: Optional[int] = _json("txErrors", omitempty=True, default=None)


@dataclass
class NetworkStats:
    """Network usage; the default interface's counters are inlined."""

    time: Optional[datetime] = _json("time", default=None)
    interface: InterfaceStats = _json("", inline=True, default_factory=InterfaceStats)
    interfaces: list[InterfaceStats] = _json("interfaces", omitempty=True, default_factory=list)


@dataclass
class RlimitStats:
    """Process limits of the operating system."""

    time: Optional[datetime] = _json("time", default=None)
    max_pid: Optional[int] = _json("maxpid", omitempty=True, default=None)
    num_of_running_processes: Optional[int] = _json("curproc", omitempty=True, default=None)


@dataclass
class RuntimeStats:
    """Stats about the container runtime."""

    image_fs: Optional[FsStats] = _json("imageFs", omitempty=True, default=None)


@dataclass
class ProcessStats:
    """Process counts."""

    process_count: Optional[int] = _json("process_count", omitempty=True, default=None)


@dataclass
class AcceleratorStats:
    """Stats of one accelerator attached to a container."""

    make: str = _json("make", default="")
    model: str = _json("model", default="")
    id: str = _json("id", default="")
    memory_total: int = _json("memoryTotal", default=0)
    memory_used: int = _json("memoryUsed", default=0)
    duty_cycle: int = _json("dutyCycle", default=0)


@dataclass
class PVCReference:
    """Locates a persistent volume claim."""

    name: str = _json("name")
    namespace: str = _json("namespace")


@dataclass
class VolumeStats:
    """Volume filesystem usage; the filesystem figures are inlined."""

    fs: FsStats = _json("", inline=True, default_factory=FsStats)
    name: str = _json("name", omitempty=True, default="")
    pvc_ref: Optional[PVCReference] = _json("pvcRef", omitempty=True, default=None)


@dataclass
class UserDefinedMetricDescriptor:
    """Describes a metric defined by a user."""

    name: str = _json("name")
    type: UserDefinedMetricType = _json("type")
    units: str = _json("units", default="")
    labels: dict[str, str] = _json("labels", omitempty=True, default_factory=dict)


@dataclass
class UserDefinedMetric:
    """A metric defined and generated by users; the descriptor is inlined."""

    descriptor: UserDefinedMetricDescriptor = _json("", inline=True)
    time: Optional[datetime] = _json("time", default=None)
    value: float = _json("value", default=0.0)


@dataclass
class ContainerStats:
    """Container-level sample stats."""

    name: str = _json("name")
    start_time: Optional[datetime] = _json("startTime", default=None)
    cpu: Optional[CPUStats] = _json("cpu", omitempty=True, default=None)
    memory: Optional[MemoryStats] = _json("memory", omitempty=True, default=None)
    accelerators: list[AcceleratorStats] = _json("accelerators", omitempty=True, default_factory=list)
    rootfs: Optional[FsStats] = _json("rootfs", omitempty=True, default=None)
    logs: Optional[FsStats] = _json("logs", omitempty=True, default=None)
    user_defined_metrics: list[UserDefinedMetric] = _json(
        "userDefinedMetrics", omitempty=True, default_factory=list
    )


@dataclass
class PodReference:
    """Locates a pod."""

    name: str = _json("name")
    namespace: str = _json("namespace")
    uid: str = _json("uid", default="")


@dataclass
class PodStats:
    """Pod-level sample stats."""

    pod_ref: PodReference = _json("podRef")
    start_time: Optional[datetime] = _json("startTime", default=None)
    containers: list[ContainerStats] = _json("containers", default_factory=list)
    cpu: Optional[CPUStats] = _json("cpu", omitempty=True, default=None)
    memory: Optional[MemoryStats] = _json("memory", omitempty=True, default=None)
    network: Optional[NetworkStats] = _json("network", omitempty=True, default=None)
    volume_stats: list[VolumeStats] = _json("volume", omitempty=True, default_factory=list)
    ephemeral_storage: Optional[FsStats] = _json("ephemeral-storage", omitempty=True, default=None)
    process_stats: Optional[ProcessStats] = _json("process_stats", omitempty=True, default=None)


@dataclass
class NodeStats:
    """Node-level sample stats."""

    node_name: str = _json("nodeName", default="")
    system_containers: list[ContainerStats] = _json("systemContainers", omitempty=True, default_factory=list)
    start_time: Optional[datetime] = _json("startTime", default=None)
    cpu: Optional[CPUStats] = _json("cpu", omitempty=True, default=None)
    memory: Optional[MemoryStats] = _json("memory", omitempty=True, default=None)
    network: Optional[NetworkStats] = _json("network", omitempty=True, default=None)
    fs: Optional[FsStats] = _json("fs", omitempty=True, default=None)
    runtime: Optional[RuntimeStats] = _json("runtime", omitempty=True, default=None)
    rlimit: Optional[RlimitStats] = _json("rlimit", omitempty=True, default=None)


@dataclass
class Summary:
    """Top-level document holding node and pod stats."""

    node: NodeStats = _json("node", default_factory=NodeStats)
    pods: list[PodStats] = _json("pods", default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the document as plain JSON-compatible data."""
        return _encode_struct(self)

    def to_json(self) -> str:
        """Return the document as compact JSON text."""
        return json.dumps(self.to_dict(), separators=(",", ":"))