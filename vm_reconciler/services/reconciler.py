import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from vm_reconciler.clients.proxmox import ProxmoxClient
from vm_reconciler.clients.termproxy import TerminalCommandExecutor
from vm_reconciler.config import Settings
from vm_reconciler.errors import (
    AmbiguousTemplateError,
    OperationCancelledError,
    RequiresReplacementError,
    TemplateNotFoundError,
    VmNotFoundError,
    WrongTemplateTypeError,
)
from vm_reconciler.metrics import metrics
from vm_reconciler.models import ObservedVm, PowerStatus, VmConfig, VmRef
from vm_reconciler.schemas import VmSpec
from vm_reconciler.services.disks import plan_disks
from vm_reconciler.services.snippets import SnippetStore
from vm_reconciler.services.template_swap import TemplateSwapper
from vm_reconciler.services.waiters import AgentAddressWaiter, PowerStateWaiter


logger = logging.getLogger(__name__)


@dataclass
class ConfigUpdate:
    updates: dict[str, Any] = field(default_factory=dict)
    delete: list[str] = field(default_factory=list)
    remove_unused: list[str] = field(default_factory=list)
    restart_required: bool = False
    drifted_disks: list[int] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.updates or self.delete or self.remove_unused)


def plan_config_update(
    desired: VmSpec,
    config: VmConfig,
    *,
    disk_format: str = "qcow2",
    cicustom: str | None = None,
) -> ConfigUpdate:
    change = ConfigUpdate()
    if config.name != desired.name:
        change.updates["name"] = desired.name
    # Hardware cannot be hot-resized.
    if config.cores != desired.cores:
        change.updates["cores"] = desired.cores
        change.restart_required = True
    if config.memory != desired.memory:
        change.updates["memory"] = desired.memory
        change.restart_required = True
    if config.onboot != desired.onboot:
        change.updates["onboot"] = int(desired.onboot)
    if cicustom is not None and config.cicustom != cicustom:
        change.updates["cicustom"] = cicustom

    disks = plan_disks(config.disks, desired.disks, disk_format, config.cdrom_slots)
    change.updates.update(disks.attach)
    change.delete.extend(disks.detach)
    change.remove_unused = disks.remove_unused
    change.drifted_disks = disks.drifted
    return change


class VmReconciler:
    def __init__(
        self,
        cluster: ProxmoxClient,
        executor: TerminalCommandExecutor,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self.settings = settings
        self.snippets = SnippetStore(
            executor, settings.snippet_storage, settings.snippet_dir
        )
        self.power = PowerStateWaiter(cluster, settings.poll_interval_sec, clock=clock)
        self.agent = AgentAddressWaiter(
            cluster,
            settings.poll_interval_sec,
            settings.primary_interface,
            clock=clock,
        )
        self.swapper = TemplateSwapper(cluster)

    def resolve_template(self, template_name: str) -> VmRef:
        refs = self.cluster.find_vm_refs_by_name(template_name)
        if not refs:
            raise TemplateNotFoundError(template_name)
        if len(refs) > 1:
            raise AmbiguousTemplateError(template_name, [ref.vmid for ref in refs])
        template = refs[0]
        if template.vm_type != "qemu":
            raise WrongTemplateTypeError(template_name, template.vm_type)
        return template

    def create(self, spec: VmSpec, cancel: threading.Event | None = None) -> ObservedVm:
        template = self.resolve_template(spec.template_name)
        newid = self.cluster.next_vmid()
        self.cluster.clone_vm(
            template, newid, spec.name, spec.target_node, spec.target_storage
        )
        logger.info(
            "vm cloned vmid=%s name=%s template=%s", newid, spec.name, template.vmid
        )
        ref = self.cluster.get_vm_ref(newid)

        cicustom = None
        if spec.user_data:
            cicustom = self.snippets.write(ref, spec.user_data)

        config = VmConfig.from_api(self.cluster.get_vm_config(ref))
        change = plan_config_update(
            spec, config, disk_format=self.settings.disk_format, cicustom=cicustom
        )
        self._apply(ref, change)

        ipv4 = None
        if spec.status == PowerStatus.RUNNING:
            ipv4 = self._start(ref, cancel)
        metrics.inc("vms_created_total")
        return self._observe(ref, ipv4)

    def read(
        self,
        vmid: int,
        last_ipv4: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ObservedVm | None:
        try:
            ref = self.cluster.get_vm_ref(vmid)
        except VmNotFoundError:
            logger.info("vm no longer exists vmid=%s", vmid)
            return None

        observed = self._observe(ref, last_ipv4)
        if observed.status == PowerStatus.RUNNING.value and observed.agent_enabled:
            try:
                observed.ipv4_address = self.agent.wait_for_ipv4(
                    ref, self.settings.read_ip_timeout_sec, cancel
                )
            except OperationCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.debug("ip refresh skipped vmid=%s: %s", vmid, exc)
        return observed

    def update(
        self,
        vmid: int,
        desired: VmSpec,
        prior: VmSpec,
        last_ipv4: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ObservedVm:
        changed = desired.changed_immutable_fields(prior)
        if changed:
            raise RequiresReplacementError(changed)

        ref = self.cluster.get_vm_ref(vmid)
        template = None
        if desired.template_name != prior.template_name:
            template = self.resolve_template(desired.template_name)
            self.swapper.check_compatibility(ref, template)

        config = VmConfig.from_api(self.cluster.get_vm_config(ref))
        change = plan_config_update(
            desired, config, disk_format=self.settings.disk_format
        )
        self._apply(ref, change)

        status = self.power.current(ref)
        ipv4 = last_ipv4
        if template is not None:
            if status != PowerStatus.STOPPED.value:
                self._shutdown(ref, cancel)
            self.swapper.swap(
                ref, template, desired.name, storage=desired.target_storage
            )
            status = PowerStatus.STOPPED.value
            ipv4 = None
        elif (
            change.restart_required
            and status == PowerStatus.RUNNING.value
            and desired.status == PowerStatus.RUNNING
        ):
            self._shutdown(ref, cancel)
            status = PowerStatus.STOPPED.value

        if desired.status == PowerStatus.RUNNING and status != PowerStatus.RUNNING.value:
            address = self._start(ref, cancel)
            if address:
                ipv4 = address
        elif desired.status == PowerStatus.STOPPED and status == PowerStatus.RUNNING.value:
            self._shutdown(ref, cancel)

        metrics.inc("vms_updated_total")
        return self._observe(ref, ipv4)

    def delete(self, vmid: int, cancel: threading.Event | None = None) -> None:
        ref = self.cluster.get_vm_ref(vmid)
        config = VmConfig.from_api(self.cluster.get_vm_config(ref))
        if config.has_custom_cloud_init:
            try:
                self.snippets.remove(ref)
            except Exception as exc:  # noqa: BLE001
                metrics.inc("cleanup_failures_total")
                logger.warning("failed to delete snippet vmid=%s: %s", vmid, exc)

        if self.power.current(ref) != PowerStatus.STOPPED.value:
            logger.debug("shutdown vm vmid=%s", vmid)
            self.cluster.shutdown_vm(ref)
        self.power.wait_for(
            ref, PowerStatus.STOPPED, self.settings.wait_stopped_timeout_sec, cancel
        )
        self.cluster.delete_vm(ref)
        metrics.inc("vms_deleted_total")
        logger.info("vm deleted vmid=%s", vmid)

    def _apply(self, ref: VmRef, change: ConfigUpdate) -> None:
        if change.drifted_disks:
            logger.warning(
                "disk drift ignored vmid=%s slots=%s", ref.vmid, change.drifted_disks
            )
        if change.empty:
            return
        if change.updates or change.delete:
            self.cluster.update_vm_config(ref, change.updates, change.delete)
        if change.remove_unused:
            self.cluster.update_vm_config(ref, delete=change.remove_unused)
        logger.info(
            "vm config updated vmid=%s keys=%s delete=%s",
            ref.vmid,
            sorted(change.updates),
            change.delete + change.remove_unused,
        )

    def _start(self, ref: VmRef, cancel: threading.Event | None) -> str | None:
        logger.debug("start vm vmid=%s", ref.vmid)
        self.cluster.start_vm(ref)
        config = VmConfig.from_api(self.cluster.get_vm_config(ref))
        if not config.agent_enabled:
            return None
        return self.agent.wait_for_ipv4(
            ref, self.settings.wait_boot_timeout_sec, cancel
        )

    def _shutdown(self, ref: VmRef, cancel: threading.Event | None) -> None:
        logger.debug("shutdown vm vmid=%s", ref.vmid)
        self.cluster.shutdown_vm(ref)
        self.power.wait_for(
            ref, PowerStatus.STOPPED, self.settings.wait_stopped_timeout_sec, cancel
        )

    def _observe(self, ref: VmRef, ipv4: str | None) -> ObservedVm:
        config = VmConfig.from_api(self.cluster.get_vm_config(ref))
        return ObservedVm(
            vmid=ref.vmid,
            node=ref.node,
            name=config.name,
            cores=config.cores,
            memory=config.memory,
            onboot=config.onboot,
            status=str(self.power.current(ref) or ""),
            disks=config.disks,
            cicustom=config.cicustom,
            agent_enabled=config.agent_enabled,
            ipv4_address=ipv4,
        )
