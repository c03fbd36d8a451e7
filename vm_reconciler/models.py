import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vm_reconciler.errors import MalformedConfigError


DISK_BUS = "scsi"
DEFAULT_BOOT_DISK = "scsi0"
DEFAULT_SCSI_CONTROLLER = "lsi"

_DISK_KEY_RE = re.compile(r"^(scsi|virtio|sata|ide)\d+$")
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)$")


class PowerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class VmRef:
    vmid: int
    node: str
    vm_type: str = "qemu"
    name: str | None = None
    template: bool = False


@dataclass(frozen=True)
class DiskSlot:
    slot: int
    storage: str
    size_gb: int | None
    volume: str = ""

    @property
    def key(self) -> str:
        return f"{DISK_BUS}{self.slot}"


def as_int(raw: dict[str, Any], key: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedConfigError(key, value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise MalformedConfigError(key, value)


def as_bool(raw: dict[str, Any], key: str, default: bool = False) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if value in (0, 1, "0", "1"):
        return int(value) == 1
    raise MalformedConfigError(key, value)


def as_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedConfigError(key, value)
    return value


def size_to_gb(size: str) -> int:
    match = _SIZE_RE.match(size.strip().upper())
    if not match:
        raise MalformedConfigError("size", size)
    amount = float(match.group(1))
    unit = match.group(2) or "G"
    factor = {"K": 1 / (1024 * 1024), "M": 1 / 1024, "G": 1, "T": 1024}[unit]
    return int(amount * factor)


def is_cdrom(value: object) -> bool:
    return isinstance(value, str) and "media=cdrom" in value.split(",")[1:]


def parse_disk(slot: int, value: str) -> DiskSlot:
    volume, _, options = value.partition(",")
    if not volume:
        raise MalformedConfigError(f"{DISK_BUS}{slot}", value)
    storage, sep, _ = volume.partition(":")
    if not sep or not storage:
        # Pass-through device such as /dev/disk/by-id/...
        storage = volume
    size_gb = None
    for option in options.split(","):
        name, _, option_value = option.partition("=")
        if name == "size" and option_value:
            size_gb = size_to_gb(option_value)
    return DiskSlot(slot=slot, storage=storage, size_gb=size_gb, volume=volume)


def parse_boot_disk(raw: dict[str, Any]) -> str:
    bootdisk = as_str(raw, "bootdisk")
    if bootdisk:
        return bootdisk
    boot = as_str(raw, "boot") or ""
    if boot.startswith("order="):
        for device in boot[len("order=") :].split(";"):
            device = device.strip()
            if not _DISK_KEY_RE.match(device) or device not in raw:
                continue
            # Install media and the cloud-init drive also appear in the order.
            if is_cdrom(raw[device]):
                continue
            return device
    return DEFAULT_BOOT_DISK


def agent_enabled(agent: str | None) -> bool:
    if not agent:
        return False
    return "enabled=1" in agent or agent.split(",", 1)[0].strip() == "1"


@dataclass
class VmConfig:
    """Typed view of the attribute map returned by the cluster."""

    name: str | None
    cores: int | None
    memory: int | None
    onboot: bool
    agent: str | None
    cicustom: str | None
    scsihw: str
    boot_disk: str
    disks: list[DiskSlot] = field(default_factory=list)
    cdrom_slots: list[int] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "VmConfig":
        disks: list[DiskSlot] = []
        cdrom_slots: list[int] = []
        slot = 1
        # Extra disks occupy contiguous slots starting at 1.
        while f"{DISK_BUS}{slot}" in raw:
            value = as_str(raw, f"{DISK_BUS}{slot}") or ""
            if is_cdrom(value):
                cdrom_slots.append(slot)
            else:
                disks.append(parse_disk(slot, value))
            slot += 1
        memory = raw.get("memory")
        if isinstance(memory, str) and memory.startswith("current="):
            memory = memory.split(",", 1)[0][len("current=") :]
        return cls(
            name=as_str(raw, "name"),
            cores=as_int(raw, "cores"),
            memory=as_int({"memory": memory}, "memory"),
            onboot=as_bool(raw, "onboot"),
            agent=as_str(raw, "agent"),
            cicustom=as_str(raw, "cicustom"),
            scsihw=as_str(raw, "scsihw") or DEFAULT_SCSI_CONTROLLER,
            boot_disk=parse_boot_disk(raw),
            disks=disks,
            cdrom_slots=cdrom_slots,
            raw=dict(raw),
        )

    @property
    def agent_enabled(self) -> bool:
        return agent_enabled(self.agent)

    @property
    def has_custom_cloud_init(self) -> bool:
        return bool(self.cicustom and self.cicustom.strip())

    def find_unused(self, volume: str) -> str | None:
        for key, value in self.raw.items():
            if key.startswith("unused") and isinstance(value, str):
                if value.split(",", 1)[0] == volume:
                    return key
        return None


@dataclass
class ObservedVm:
    vmid: int
    node: str
    name: str | None
    cores: int | None
    memory: int | None
    onboot: bool
    status: str
    disks: list[DiskSlot]
    cicustom: str | None
    agent_enabled: bool
    ipv4_address: str | None = None
