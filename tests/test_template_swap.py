from typing import Any, cast

import pytest

from fake_cluster import FakeCluster
from vm_reconciler.errors import IncompatibleTemplateError, TaskFailedError
from vm_reconciler.metrics import metrics
from vm_reconciler.services.template_swap import TemplateSwapper


def _cluster(template_config: dict | None = None) -> FakeCluster:
    cluster = FakeCluster()
    cluster.add_vm(
        100,
        "debian-13",
        template_config
        or {
            "scsi0": "local-lvm:base-100-disk-0,size=10G",
            "scsihw": "virtio-scsi-pci",
            "boot": "order=scsi0;net0",
            "ostype": "l26",
            "cpu": "host",
        },
        template=True,
    )
    cluster.add_vm(
        101,
        "web-1",
        {
            "scsi0": "local-lvm:vm-101-disk-0,size=8G",
            "scsi1": "local-lvm:vm-101-disk-1,size=20G",
            "scsihw": "virtio-scsi-pci",
            "boot": "order=scsi0;net0",
            "ostype": "l26",
            "vga": "std",
        },
    )
    return cluster


def setup_function() -> None:
    metrics.reset()


def test_swap_moves_boot_disk_and_removes_auxiliary_vm():
    cluster = _cluster()
    swapper = TemplateSwapper(cast(Any, cluster))

    swapper.swap(
        cluster.get_vm_ref(101), cluster.get_vm_ref(100), "web-1", storage="local-lvm"
    )

    assert cluster.calls == [
        ("clone", 100, 102, "web-1-upgrade", "pve", "local-lvm"),
        ("update_config", 101, {}, ["scsi0"]),
        ("move_disk", 102, "scsi0", 101, True),
        ("update_config", 101, {}, ["unused0"]),
        ("update_config", 101, {"cpu": "host"}, ["vga"]),
        ("delete", 102),
    ]
    config = cluster.vms[101]["config"]
    assert config["scsi0"] == "local-lvm:base-100-disk-0,size=10G"
    assert config["scsi1"] == "local-lvm:vm-101-disk-1,size=20G"
    assert not any(key.startswith("unused") for key in config)
    assert 102 not in cluster.vms
    assert metrics.get("template_swaps_total") == 1


def test_incompatible_template_is_refused_before_any_mutation():
    cluster = _cluster(
        {
            "scsi0": "local-lvm:base-100-disk-0,size=10G",
            "boot": "order=scsi0;net0",
        }
    )
    swapper = TemplateSwapper(cast(Any, cluster))

    with pytest.raises(IncompatibleTemplateError) as excinfo:
        swapper.swap(cluster.get_vm_ref(101), cluster.get_vm_ref(100), "web-1")
    assert excinfo.value.kind == "refuse_incompatible"
    assert cluster.calls == []


def test_boot_disk_mismatch_is_refused():
    cluster = _cluster(
        {
            "virtio0": "local-lvm:base-100-disk-0,size=10G",
            "scsihw": "virtio-scsi-pci",
            "boot": "order=virtio0",
        }
    )
    swapper = TemplateSwapper(cast(Any, cluster))

    with pytest.raises(IncompatibleTemplateError):
        swapper.check_compatibility(cluster.get_vm_ref(101), cluster.get_vm_ref(100))


def test_auxiliary_vm_is_deleted_when_move_fails():
    cluster = _cluster()
    cluster.fail_on["move_disk"] = TaskFailedError("UPID:pve:move", "storage full")
    swapper = TemplateSwapper(cast(Any, cluster))

    with pytest.raises(TaskFailedError):
        swapper.swap(cluster.get_vm_ref(101), cluster.get_vm_ref(100), "web-1")

    assert cluster.ops("delete") == ["delete"]
    assert 102 not in cluster.vms
    assert metrics.get("template_swaps_total") == 0


def test_failed_auxiliary_cleanup_is_counted_not_raised():
    cluster = _cluster()
    cluster.fail_on["delete"] = RuntimeError("cluster unavailable")
    swapper = TemplateSwapper(cast(Any, cluster))

    swapper.swap(cluster.get_vm_ref(101), cluster.get_vm_ref(100), "web-1")

    assert cluster.ops("delete") == ["delete"]
    assert metrics.get("cleanup_failures_total") == 1
    assert metrics.get("template_swaps_total") == 1


@pytest.mark.parametrize(
    "failing_write",
    [
        pytest.param(1, id="detach-boot-disk"),
        pytest.param(2, id="remove-placeholder"),
        pytest.param(3, id="propagate-attributes"),
    ],
)
def test_auxiliary_vm_is_deleted_once_when_a_config_write_fails(failing_write):
    cluster = _cluster()
    cluster.fail_on["update_config"] = RuntimeError("config locked")
    cluster.fail_nth["update_config"] = failing_write
    swapper = TemplateSwapper(cast(Any, cluster))

    with pytest.raises(RuntimeError, match="config locked"):
        swapper.swap(cluster.get_vm_ref(101), cluster.get_vm_ref(100), "web-1")

    assert len(cluster.ops("update_config")) == failing_write
    assert cluster.ops("delete") == ["delete"]
    assert 102 not in cluster.vms
    assert metrics.get("template_swaps_total") == 0


def test_swap_replaces_root_disk_when_cdrom_boots_first():
    boot_order = "order=ide2;scsi0;net0"
    cluster = _cluster(
        {
            "scsi0": "local-lvm:base-100-disk-0,size=10G",
            "ide2": "local-lvm:base-100-cloudinit,media=cdrom",
            "scsihw": "virtio-scsi-pci",
            "boot": boot_order,
            "ostype": "l26",
        }
    )
    target = cluster.vms[101]["config"]
    target["boot"] = boot_order
    target["ide2"] = "local-lvm:vm-101-cloudinit,media=cdrom"
    swapper = TemplateSwapper(cast(Any, cluster))

    swapper.swap(cluster.get_vm_ref(101), cluster.get_vm_ref(100), "web-1")

    assert ("update_config", 101, {}, ["scsi0"]) in cluster.calls
    assert ("move_disk", 102, "scsi0", 101, True) in cluster.calls
    assert target["scsi0"] == "local-lvm:base-100-disk-0,size=10G"
    assert target["ide2"] == "local-lvm:vm-101-cloudinit,media=cdrom"
