import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote, urlencode, urlparse, urlunparse

import httpx

from vm_reconciler.clients.http import RequestFailure, RetryPolicy, request_with_retry
from vm_reconciler.errors import AgentNotRunningError, TaskFailedError, VmNotFoundError
from vm_reconciler.models import VmRef


logger = logging.getLogger(__name__)

AGENT_NOT_RUNNING = "guest agent is not running"


@dataclass(frozen=True)
class ClusterCredentials:
    """Credential shared by the REST client and the terminal proxy channel."""

    api_token: str | None = None
    auth_ticket: str | None = None
    csrf_token: str | None = None

    def headers(self) -> dict[str, str]:
        if self.api_token:
            return {"Authorization": f"PVEAPIToken={self.api_token}"}
        if self.auth_ticket:
            headers = {"Cookie": f"PVEAuthCookie={self.auth_ticket}"}
            if self.csrf_token:
                headers["CSRFPreventionToken"] = self.csrf_token
            return headers
        return {}


@dataclass(frozen=True)
class TermProxyTicket:
    port: int
    ticket: str
    upid: str
    user: str


class ProxmoxClient:
    def __init__(
        self,
        endpoint: str,
        credentials: ClusterCredentials,
        retry: RetryPolicy,
        *,
        verify_tls: bool = True,
        timeout: float = 30.0,
        task_poll_interval_sec: float = 2.0,
        task_timeout_sec: float = 600.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_url = f"{self.endpoint}/api2/json"
        self.credentials = credentials
        self.verify_tls = verify_tls
        self.retry = retry
        self.task_poll_interval_sec = task_poll_interval_sec
        self.task_timeout_sec = task_timeout_sec
        self._clock = clock
        self.client = httpx.Client(
            base_url=self.api_url,
            headers=credentials.headers(),
            timeout=timeout,
            verify=verify_tls,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        response = request_with_retry(self.client, method, path, self.retry, **kwargs)
        payload = response.json()
        if not isinstance(payload, dict):
            return None
        return payload.get("data")

    def _vm_path(self, ref: VmRef, suffix: str = "") -> str:
        return f"/nodes/{ref.node}/{ref.vm_type}/{ref.vmid}{suffix}"

    @staticmethod
    def _ref_from_resource(resource: dict) -> VmRef:
        return VmRef(
            vmid=int(resource["vmid"]),
            node=str(resource["node"]),
            vm_type=str(resource.get("type") or "qemu"),
            name=resource.get("name"),
            template=bool(resource.get("template")),
        )

    def _vm_resources(self) -> list[dict]:
        resources = self._call("GET", "/cluster/resources", params={"type": "vm"})
        return [item for item in resources or [] if isinstance(item, dict)]

    def find_vm_refs_by_name(self, name: str) -> list[VmRef]:
        return [
            self._ref_from_resource(item)
            for item in self._vm_resources()
            if item.get("name") == name
        ]

    def get_vm_ref(self, vmid: int) -> VmRef:
        for item in self._vm_resources():
            if str(item.get("vmid")) == str(vmid):
                return self._ref_from_resource(item)
        raise VmNotFoundError(vmid)

    def next_vmid(self) -> int:
        return int(self._call("GET", "/cluster/nextid"))

    def clone_vm(
        self,
        template: VmRef,
        newid: int,
        name: str,
        target_node: str,
        storage: str | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "newid": newid,
            "full": 1,
            "name": name,
            "target": target_node,
        }
        if storage:
            data["storage"] = storage
        upid = self._call("POST", self._vm_path(template, "/clone"), data=data)
        self.wait_for_task(template.node, upid)

    def get_vm_config(self, ref: VmRef) -> dict[str, Any]:
        return self._call("GET", self._vm_path(ref, "/config")) or {}

    def update_vm_config(
        self,
        ref: VmRef,
        updates: dict[str, Any] | None = None,
        delete: list[str] | None = None,
    ) -> None:
        data: dict[str, Any] = dict(updates or {})
        if delete:
            data["delete"] = ",".join(delete)
        if not data:
            return
        self._call("PUT", self._vm_path(ref, "/config"), data=data)

    def get_vm_status(self, ref: VmRef) -> dict[str, Any]:
        return self._call("GET", self._vm_path(ref, "/status/current")) or {}

    def start_vm(self, ref: VmRef) -> None:
        upid = self._call("POST", self._vm_path(ref, "/status/start"))
        self.wait_for_task(ref.node, upid)

    def shutdown_vm(self, ref: VmRef) -> str | None:
        return self._call("POST", self._vm_path(ref, "/status/shutdown"))

    def delete_vm(self, ref: VmRef) -> None:
        upid = self._call("DELETE", self._vm_path(ref))
        self.wait_for_task(ref.node, upid)

    def agent_network_interfaces(self, ref: VmRef) -> list[dict[str, Any]]:
        try:
            data = self._call(
                "GET", self._vm_path(ref, "/agent/network-get-interfaces")
            )
        except RequestFailure as exc:
            if exc.mentions(AGENT_NOT_RUNNING):
                raise AgentNotRunningError(str(exc)) from exc
            raise
        if isinstance(data, dict):
            return [item for item in data.get("result") or [] if isinstance(item, dict)]
        return []

    def move_disk(
        self,
        ref: VmRef,
        disk: str,
        target_vmid: int,
        *,
        delete_source: bool = True,
    ) -> None:
        data = {
            "disk": disk,
            "delete": 1 if delete_source else 0,
            "target-vmid": target_vmid,
        }
        upid = self._call("POST", self._vm_path(ref, "/move_disk"), data=data)
        self.wait_for_task(ref.node, upid)

    def termproxy(self, node: str) -> TermProxyTicket:
        data = self._call("POST", f"/nodes/{node}/termproxy") or {}
        return TermProxyTicket(
            port=int(data["port"]),
            ticket=str(data["ticket"]),
            upid=str(data.get("upid") or ""),
            user=str(data["user"]),
        )

    @property
    def origin(self) -> str:
        parsed = urlparse(self.endpoint)
        return urlunparse((parsed.scheme, parsed.netloc, "", "", "", ""))

    def websocket_url(self, node: str, port: int, ticket: str) -> str:
        parsed = urlparse(self.endpoint)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        path = f"/api2/json/nodes/{node}/vncwebsocket"
        query = urlencode({"port": port, "vncticket": ticket})
        return urlunparse((scheme, parsed.netloc, path, "", query, ""))

    def wait_for_task(self, node: str, upid: str | None) -> None:
        if not upid:
            return
        deadline = self._clock() + self.task_timeout_sec
        path = f"/nodes/{node}/tasks/{quote(upid, safe='')}/status"
        while True:
            status = self._call("GET", path) or {}
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus")
                if exit_status != "OK":
                    raise TaskFailedError(upid, exit_status)
                logger.debug("task finished node=%s upid=%s", node, upid)
                return
            if self._clock() >= deadline:
                raise TaskFailedError(
                    upid, f"still running after {self.task_timeout_sec}s"
                )
            time.sleep(self.task_poll_interval_sec)
