class ReconcileError(RuntimeError):
    """Base class for failures surfaced to the declarative engine."""

    kind = "reconcile_error"


class TemplateNotFoundError(ReconcileError):
    kind = "template_not_found"

    def __init__(self, template_name: str):
        self.template_name = template_name
        super().__init__(f"template not found: {template_name}")


class AmbiguousTemplateError(ReconcileError):
    kind = "ambiguous_template"

    def __init__(self, template_name: str, vmids: list[int]):
        self.template_name = template_name
        self.vmids = vmids
        super().__init__(
            f"found multiple templates named {template_name}: vmids={vmids}"
        )


class WrongTemplateTypeError(ReconcileError):
    kind = "wrong_template_type"

    def __init__(self, template_name: str, vm_type: str):
        self.template_name = template_name
        self.vm_type = vm_type
        super().__init__(
            f"template {template_name} is not for qemu vm (type={vm_type})"
        )


class IncompatibleTemplateError(ReconcileError):
    kind = "refuse_incompatible"

    def __init__(self, vmid: int, template_vmid: int, detail: str):
        self.vmid = vmid
        self.template_vmid = template_vmid
        self.detail = detail
        super().__init__(
            f"refusing to swap template of vm {vmid} to {template_vmid}: {detail}"
        )


class RequiresReplacementError(ReconcileError):
    kind = "requires_replacement"

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(
            f"immutable fields changed, vm must be replaced: {', '.join(fields)}"
        )


class VmNotFoundError(ReconcileError):
    kind = "vm_not_found"

    def __init__(self, vmid: int):
        self.vmid = vmid
        super().__init__(f"vm {vmid} not found")


class MalformedConfigError(ReconcileError):
    kind = "malformed_config"

    def __init__(self, key: str, value: object):
        self.key = key
        self.value = value
        super().__init__(f"unexpected value for config key {key}: {value!r}")


class WaitTimeoutError(ReconcileError):
    kind = "timeout"

    def __init__(self, vmid: int, target: str, timeout_sec: float):
        self.vmid = vmid
        self.target = target
        self.timeout_sec = timeout_sec
        super().__init__(
            f"timeout after {timeout_sec}s waiting for vm {vmid} to be {target}"
        )


class AgentTimeoutError(ReconcileError):
    kind = "agent_timeout"

    def __init__(self, vmid: int, timeout_sec: float):
        self.vmid = vmid
        self.timeout_sec = timeout_sec
        super().__init__(
            f"timeout after {timeout_sec}s waiting for guest agent of vm {vmid} "
            "to report an ipv4 address"
        )


class AgentNotRunningError(ReconcileError):
    kind = "agent_not_running"


class OperationCancelledError(ReconcileError):
    kind = "cancelled"


class TaskFailedError(ReconcileError):
    kind = "task_failed"

    def __init__(self, upid: str, exit_status: str | None):
        self.upid = upid
        self.exit_status = exit_status
        super().__init__(f"cluster task {upid} failed: {exit_status}")


class TicketRejectedError(ReconcileError):
    kind = "ticket_rejected"

    def __init__(self, node: str, reply: bytes):
        self.node = node
        self.reply = reply
        super().__init__(f"terminal proxy on node {node} rejected ticket: {reply!r}")


class ProtocolError(ReconcileError):
    kind = "protocol_error"


class CommandFailedError(ReconcileError):
    kind = "command_failed"

    def __init__(self, node: str, exit_status: int):
        self.node = node
        self.exit_status = exit_status
        super().__init__(
            f"command on node {node} failed with exit status {exit_status}"
        )
