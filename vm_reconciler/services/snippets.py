import base64
import logging
import posixpath
import shlex

from vm_reconciler.clients.termproxy import TerminalCommandExecutor
from vm_reconciler.models import VmRef


logger = logging.getLogger(__name__)


def snippet_name(vmid: int) -> str:
    return f"vm-{vmid}-cloudinit-user-data"


def cicustom_value(storage: str, vmid: int) -> str:
    return f"user={storage}:snippets/{snippet_name(vmid)}"


def write_snippet_command(snippet_dir: str, vmid: int, user_data: str) -> str:
    encoded = base64.b64encode(user_data.encode("utf-8")).decode("ascii")
    path = posixpath.join(snippet_dir, snippet_name(vmid))
    return f'echo "{encoded}" | base64 -d > {shlex.quote(path)}'


def remove_snippet_command(snippet_dir: str, vmid: int) -> str:
    path = posixpath.join(snippet_dir, snippet_name(vmid))
    return f"rm -f {shlex.quote(path)}"


class SnippetStore:
    def __init__(self, executor: TerminalCommandExecutor, storage: str, directory: str):
        self.executor = executor
        self.storage = storage
        self.directory = directory

    def write(self, ref: VmRef, user_data: str) -> str:
        logger.debug(
            "uploading snippet node=%s snippet=%s:%s",
            ref.node,
            self.storage,
            snippet_name(ref.vmid),
        )
        self.executor.run(
            ref.node, write_snippet_command(self.directory, ref.vmid, user_data)
        )
        return cicustom_value(self.storage, ref.vmid)

    def remove(self, ref: VmRef) -> None:
        logger.debug(
            "removing snippet node=%s snippet=%s:%s",
            ref.node,
            self.storage,
            snippet_name(ref.vmid),
        )
        self.executor.run(ref.node, remove_snippet_command(self.directory, ref.vmid))
