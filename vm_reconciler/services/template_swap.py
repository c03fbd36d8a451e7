import logging
from collections.abc import Iterator
from contextlib import contextmanager

from vm_reconciler.clients.proxmox import ProxmoxClient
from vm_reconciler.errors import IncompatibleTemplateError
from vm_reconciler.metrics import metrics
from vm_reconciler.models import VmConfig, VmRef


logger = logging.getLogger(__name__)

TEMPLATE_ATTRIBUTES = ("ostype", "vga", "cpu")


class TemplateSwapper:
    def __init__(self, cluster: ProxmoxClient):
        self.cluster = cluster

    def check_compatibility(
        self, target: VmRef, template: VmRef
    ) -> tuple[VmConfig, VmConfig]:
        target_config = VmConfig.from_api(self.cluster.get_vm_config(target))
        template_config = VmConfig.from_api(self.cluster.get_vm_config(template))
        if target_config.boot_disk != template_config.boot_disk:
            raise IncompatibleTemplateError(
                target.vmid,
                template.vmid,
                f"boot disk {target_config.boot_disk} != {template_config.boot_disk}",
            )
        if target_config.scsihw != template_config.scsihw:
            raise IncompatibleTemplateError(
                target.vmid,
                template.vmid,
                f"scsi controller {target_config.scsihw} != {template_config.scsihw}",
            )
        return target_config, template_config

    @contextmanager
    def _auxiliary_vm(
        self, template: VmRef, node: str, vm_name: str, storage: str | None
    ) -> Iterator[VmRef]:
        newid = self.cluster.next_vmid()
        name = f"{vm_name}-upgrade"
        self.cluster.clone_vm(template, newid, name, node, storage)
        aux = VmRef(vmid=newid, node=node, vm_type=template.vm_type, name=name)
        logger.info(
            "auxiliary vm cloned vmid=%s template=%s node=%s",
            newid,
            template.vmid,
            node,
        )
        try:
            yield aux
        finally:
            try:
                self.cluster.delete_vm(aux)
                logger.info("auxiliary vm deleted vmid=%s", newid)
            except Exception as exc:  # noqa: BLE001
                metrics.inc("cleanup_failures_total")
                logger.warning("failed to delete auxiliary vm vmid=%s: %s", newid, exc)

    def swap(
        self,
        target: VmRef,
        template: VmRef,
        vm_name: str,
        storage: str | None = None,
    ) -> None:
        """Move the boot disk of ``template`` into the stopped VM ``target``."""
        target_config, template_config = self.check_compatibility(target, template)
        boot_disk = target_config.boot_disk
        old_volume = str(target_config.raw.get(boot_disk) or "").split(",", 1)[0]

        with self._auxiliary_vm(template, target.node, vm_name, storage) as aux:
            self.cluster.update_vm_config(target, delete=[boot_disk])
            self.cluster.move_disk(aux, boot_disk, target.vmid, delete_source=True)

            detached = VmConfig.from_api(self.cluster.get_vm_config(target))
            placeholder = detached.find_unused(old_volume) or "unused0"
            self.cluster.update_vm_config(target, delete=[placeholder])

            self._propagate_attributes(target, target_config, template_config)

        metrics.inc("template_swaps_total")
        logger.info(
            "template swapped vmid=%s template=%s boot_disk=%s",
            target.vmid,
            template.vmid,
            boot_disk,
        )

    def _propagate_attributes(
        self, target: VmRef, target_config: VmConfig, template_config: VmConfig
    ) -> None:
        updates = {}
        delete = []
        for key in TEMPLATE_ATTRIBUTES:
            if key in template_config.raw:
                if template_config.raw[key] != target_config.raw.get(key):
                    updates[key] = template_config.raw[key]
            elif key in target_config.raw:
                delete.append(key)
        if updates or delete:
            self.cluster.update_vm_config(target, updates, delete)
