import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query

from vm_reconciler.clients.http import RequestFailure
from vm_reconciler.config import get_settings
from vm_reconciler.errors import (
    AgentTimeoutError,
    AmbiguousTemplateError,
    IncompatibleTemplateError,
    ReconcileError,
    RequiresReplacementError,
    TemplateNotFoundError,
    VmNotFoundError,
    WaitTimeoutError,
    WrongTemplateTypeError,
)
from vm_reconciler.factory import build_reconciler
from vm_reconciler.metrics import metrics
from vm_reconciler.models import ObservedVm
from vm_reconciler.schemas import DiskRead, VmDeleted, VmRead, VmSpec, VmUpdateRequest
from vm_reconciler.services.reconciler import VmReconciler


router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[ReconcileError], int] = {
    VmNotFoundError: 404,
    TemplateNotFoundError: 422,
    AmbiguousTemplateError: 422,
    WrongTemplateTypeError: 422,
    IncompatibleTemplateError: 409,
    RequiresReplacementError: 409,
    WaitTimeoutError: 504,
    AgentTimeoutError: 504,
}


@lru_cache(maxsize=1)
def get_reconciler() -> VmReconciler:
    return build_reconciler(get_settings())


def _to_read(observed: ObservedVm) -> VmRead:
    return VmRead(
        vmid=observed.vmid,
        node=observed.node,
        name=observed.name,
        cores=observed.cores,
        memory=observed.memory,
        onboot=observed.onboot,
        status=observed.status,
        disks=[
            DiskRead(slot=disk.slot, storage=disk.storage, size=disk.size_gb)
            for disk in observed.disks
        ],
        cicustom=observed.cicustom,
        agent_enabled=observed.agent_enabled,
        ipv4_address=observed.ipv4_address,
    )


def _http_error(
    operation: str, vmid: int | None, exc: ReconcileError | RequestFailure
) -> HTTPException:
    if isinstance(exc, ReconcileError):
        status_code = ERROR_STATUS.get(type(exc), 502)
        kind = exc.kind
    else:
        status_code = 404 if exc.is_not_found else 502
        kind = "cluster_api_error"
    logger.error(
        "%s failed vmid=%s kind=%s status=%s: %s",
        operation,
        vmid,
        kind,
        status_code,
        exc,
    )
    return HTTPException(
        status_code=status_code, detail={"error": kind, "message": str(exc)}
    )


@router.get("/healthz")
def healthz() -> dict:
    settings = get_settings()
    return {"status": "ok", "endpoint": settings.endpoint}


@router.get("/metrics")
def read_metrics() -> dict[str, int]:
    return metrics.snapshot()


@router.post("/v1/vms", response_model=VmRead)
def create_vm(
    spec: VmSpec, reconciler: VmReconciler = Depends(get_reconciler)
) -> VmRead:
    try:
        observed = reconciler.create(spec)
    except (ReconcileError, RequestFailure) as exc:
        raise _http_error("create", None, exc) from exc
    return _to_read(observed)


@router.get("/v1/vms/{vmid}", response_model=VmRead)
def read_vm(
    vmid: int,
    last_ipv4: str | None = Query(default=None),
    reconciler: VmReconciler = Depends(get_reconciler),
) -> VmRead:
    try:
        observed = reconciler.read(vmid, last_ipv4=last_ipv4)
    except (ReconcileError, RequestFailure) as exc:
        raise _http_error("read", vmid, exc) from exc
    if observed is None:
        raise HTTPException(
            status_code=404,
            detail={"error": VmNotFoundError.kind, "message": f"vm {vmid} not found"},
        )
    return _to_read(observed)


@router.put("/v1/vms/{vmid}", response_model=VmRead)
def update_vm(
    vmid: int,
    req: VmUpdateRequest,
    reconciler: VmReconciler = Depends(get_reconciler),
) -> VmRead:
    try:
        observed = reconciler.update(
            vmid, req.desired, req.prior, last_ipv4=req.last_ipv4
        )
    except (ReconcileError, RequestFailure) as exc:
        raise _http_error("update", vmid, exc) from exc
    return _to_read(observed)


@router.delete("/v1/vms/{vmid}", response_model=VmDeleted)
def delete_vm(
    vmid: int, reconciler: VmReconciler = Depends(get_reconciler)
) -> VmDeleted:
    try:
        reconciler.delete(vmid)
    except (ReconcileError, RequestFailure) as exc:
        raise _http_error("delete", vmid, exc) from exc
    return VmDeleted(vmid=vmid)
