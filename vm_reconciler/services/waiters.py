import ipaddress
import logging
import threading
import time
from typing import Any, Callable

from vm_reconciler.clients.proxmox import ProxmoxClient
from vm_reconciler.errors import (
    AgentNotRunningError,
    AgentTimeoutError,
    OperationCancelledError,
    WaitTimeoutError,
)
from vm_reconciler.models import PowerStatus, VmRef


logger = logging.getLogger(__name__)


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("operation cancelled")


def _pause(cancel: threading.Event | None, seconds: float) -> None:
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise OperationCancelledError("operation cancelled while waiting")


def first_ipv4(interfaces: list[dict[str, Any]], interface: str) -> str | None:
    for iface in interfaces:
        if iface.get("name") != interface:
            continue
        for entry in iface.get("ip-addresses") or []:
            raw = entry.get("ip-address") if isinstance(entry, dict) else None
            if not isinstance(raw, str):
                continue
            try:
                address = ipaddress.ip_address(raw)
            except ValueError:
                continue
            if address.version == 4:
                return str(address)
    return None


class PowerStateWaiter:
    def __init__(
        self,
        cluster: ProxmoxClient,
        poll_interval_sec: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self.poll_interval_sec = poll_interval_sec
        self._clock = clock

    def current(self, ref: VmRef) -> str | None:
        return self.cluster.get_vm_status(ref).get("status")

    def wait_for(
        self,
        ref: VmRef,
        target: PowerStatus,
        timeout_sec: float,
        cancel: threading.Event | None = None,
    ) -> None:
        deadline = self._clock() + timeout_sec
        while True:
            _check_cancelled(cancel)
            status = self.current(ref)
            if status == target.value:
                return
            logger.debug(
                "waiting for vm state vmid=%s status=%s target=%s",
                ref.vmid,
                status,
                target.value,
            )
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise WaitTimeoutError(ref.vmid, target.value, timeout_sec)
            _pause(cancel, min(self.poll_interval_sec, remaining))


class AgentAddressWaiter:
    def __init__(
        self,
        cluster: ProxmoxClient,
        poll_interval_sec: float = 2.0,
        interface: str = "eth0",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self.poll_interval_sec = poll_interval_sec
        self.interface = interface
        self._clock = clock

    def wait_for_ipv4(
        self,
        ref: VmRef,
        timeout_sec: float,
        cancel: threading.Event | None = None,
    ) -> str:
        deadline = self._clock() + timeout_sec
        while True:
            _check_cancelled(cancel)
            try:
                interfaces = self.cluster.agent_network_interfaces(ref)
            except AgentNotRunningError:
                logger.debug("guest agent not running yet vmid=%s", ref.vmid)
                interfaces = []
            address = first_ipv4(interfaces, self.interface)
            if address:
                logger.debug("guest agent reported vmid=%s ipv4=%s", ref.vmid, address)
                return address
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise AgentTimeoutError(ref.vmid, timeout_sec)
            _pause(cancel, min(self.poll_interval_sec, remaining))
