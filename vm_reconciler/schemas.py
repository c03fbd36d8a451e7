from pydantic import BaseModel, Field

from vm_reconciler.models import PowerStatus


DNS_NAME_PATTERN = r"^[a-zA-Z0-9-.]+$"

IMMUTABLE_FIELDS = ("target_node", "target_storage", "user_data")


class DiskRequest(BaseModel):
    storage: str = Field(min_length=1)
    size: int = Field(ge=1, description="Size in GB")


class VmSpec(BaseModel):
    name: str = Field(min_length=1, pattern=DNS_NAME_PATTERN)
    template_name: str = Field(min_length=1, pattern=DNS_NAME_PATTERN)
    target_node: str = Field(min_length=1)
    target_storage: str = Field(min_length=1)
    cores: int = Field(ge=1)
    memory: int = Field(ge=1, description="Memory size in MB")
    onboot: bool = False
    status: PowerStatus = PowerStatus.RUNNING
    user_data: str | None = None
    disks: list[DiskRequest] = Field(default_factory=list)

    def changed_immutable_fields(self, prior: "VmSpec") -> list[str]:
        return [
            name
            for name in IMMUTABLE_FIELDS
            if getattr(self, name) != getattr(prior, name)
        ]


class VmUpdateRequest(BaseModel):
    desired: VmSpec
    prior: VmSpec
    last_ipv4: str | None = None


class DiskRead(BaseModel):
    slot: int
    storage: str
    size: int | None


class VmRead(BaseModel):
    vmid: int
    node: str
    name: str | None
    cores: int | None
    memory: int | None
    onboot: bool
    status: str
    disks: list[DiskRead]
    cicustom: str | None
    agent_enabled: bool
    ipv4_address: str | None


class VmDeleted(BaseModel):
    vmid: int
    state: str = "deleted"
