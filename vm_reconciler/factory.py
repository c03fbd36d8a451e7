import logging
from urllib.parse import urlparse

from vm_reconciler.clients.http import RetryPolicy
from vm_reconciler.clients.proxmox import ClusterCredentials, ProxmoxClient
from vm_reconciler.clients.termproxy import TerminalCommandExecutor
from vm_reconciler.config import Settings
from vm_reconciler.services.reconciler import VmReconciler


logger = logging.getLogger(__name__)


def build_credentials(settings: Settings) -> ClusterCredentials:
    if not settings.api_token and not settings.auth_ticket:
        logger.warning(
            "no cluster credential configured endpoint=%s", settings.endpoint
        )
    return ClusterCredentials(
        api_token=settings.api_token,
        auth_ticket=settings.auth_ticket,
        csrf_token=settings.csrf_token,
    )


def build_cluster_client(settings: Settings) -> ProxmoxClient:
    parsed = urlparse(settings.endpoint)
    if not parsed.hostname:
        raise ValueError(f"cluster endpoint missing hostname: {settings.endpoint}")
    return ProxmoxClient(
        settings.endpoint,
        build_credentials(settings),
        RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
        verify_tls=settings.verify_tls,
        timeout=settings.request_timeout_sec,
        task_poll_interval_sec=settings.poll_interval_sec,
        task_timeout_sec=settings.task_timeout_sec,
    )


def build_reconciler(settings: Settings) -> VmReconciler:
    cluster = build_cluster_client(settings)
    executor = TerminalCommandExecutor(
        cluster, read_timeout_sec=settings.command_read_timeout_sec
    )
    return VmReconciler(cluster, executor, settings)
