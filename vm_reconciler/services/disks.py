from dataclasses import dataclass, field
from typing import Iterable, Sequence

from vm_reconciler.models import DISK_BUS, DiskSlot
from vm_reconciler.schemas import DiskRequest


@dataclass
class DiskPlan:
    attach: dict[str, str] = field(default_factory=dict)
    detach: list[str] = field(default_factory=list)
    remove_unused: list[str] = field(default_factory=list)
    # Slots whose storage or size differ from the request. Reported only;
    # existing disks are never moved or resized.
    drifted: list[int] = field(default_factory=list)


def disk_volume(storage: str, size_gb: int, disk_format: str) -> str:
    return f"{storage}:{size_gb},format={disk_format}"


def plan_disks(
    current: Sequence[DiskSlot],
    desired: Sequence[DiskRequest],
    disk_format: str = "qcow2",
    reserved: Iterable[int] = (),
) -> DiskPlan:
    plan = DiskPlan()
    if len(desired) > len(current):
        # Slots held by disks or cdrom drives are skipped.
        taken = {disk.slot for disk in current} | set(reserved)
        slot = 0
        for request in desired[len(current) :]:
            slot += 1
            while slot in taken:
                slot += 1
            taken.add(slot)
            plan.attach[f"{DISK_BUS}{slot}"] = disk_volume(
                request.storage, request.size, disk_format
            )
    elif len(desired) < len(current):
        # Last attached, first detached.
        plan.detach = [disk.key for disk in reversed(current[len(desired) :])]
        # Detaching without erasing leaves unusedN placeholders behind.
        removed = len(current) - len(desired)
        plan.remove_unused = [f"unused{index}" for index in range(removed)]

    for existing, request in zip(current, desired):
        if existing.storage != request.storage or (
            existing.size_gb is not None and existing.size_gb != request.size
        ):
            plan.drifted.append(existing.slot)
    return plan
