import logging

import pytest

from vm_reconciler.config import Settings, get_settings
from vm_reconciler.factory import build_cluster_client, build_credentials
from vm_reconciler.logging_config import configure_logging


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("PVE_ENDPOINT", "https://pve.example:8006")
    monkeypatch.setenv("PVE_API_TOKEN", "root@pam!ci=secret")
    monkeypatch.setenv("PVE_VERIFY_TLS", "false")
    monkeypatch.setenv("PVE_WAIT_BOOT_TIMEOUT_SEC", "120")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.endpoint == "https://pve.example:8006"
        assert settings.api_token == "root@pam!ci=secret"
        assert settings.verify_tls is False
        assert settings.wait_boot_timeout_sec == 120
        assert settings.retry_attempts == 1
        assert settings.snippet_dir == "/var/lib/vz/snippets"
    finally:
        get_settings.cache_clear()


def test_build_cluster_client_uses_settings():
    settings = Settings(
        endpoint="https://pve.example:8006",
        auth_ticket="PVE:root@pam:XYZ",
        csrf_token="csrf",
        verify_tls=False,
    )
    client = build_cluster_client(settings)
    try:
        assert client.api_url == "https://pve.example:8006/api2/json"
        assert client.credentials == build_credentials(settings)
        assert client.client.headers["CSRFPreventionToken"] == "csrf"
    finally:
        client.close()


def test_build_cluster_client_rejects_endpoint_without_host():
    with pytest.raises(ValueError):
        build_cluster_client(Settings(endpoint="pve.example"))


def test_configure_logging_sets_root_level():
    root = logging.getLogger()
    previous = root.level
    try:
        configure_logging("debug")
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)
