import base64

import httpx
import pytest

from vm_reconciler.clients.http import RetryPolicy
from vm_reconciler.clients.proxmox import ClusterCredentials, ProxmoxClient
from vm_reconciler.clients.termproxy import (
    RESIZE_FRAME,
    SUBMIT_FRAME,
    TerminalCommandExecutor,
    build_command_frame,
    build_script,
    parse_exit_status,
)
from vm_reconciler.errors import (
    CommandFailedError,
    ProtocolError,
    TicketRejectedError,
)
from vm_reconciler.metrics import metrics


BOUNDARY = "f00dfeed"


class FakeWebSocket:
    def __init__(self, replies: list[bytes | Exception]):
        self.replies = list(replies)
        self.sent: list[bytes] = []
        self.closed = False

    def send(self, payload: bytes) -> None:
        self.sent.append(payload)

    def recv(self, timeout: float | None = None) -> bytes:
        if not self.replies:
            raise TimeoutError("timed out")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def close(self) -> None:
        self.closed = True


class FakeConnect:
    def __init__(self, websocket: FakeWebSocket):
        self.websocket = websocket
        self.url: str | None = None
        self.kwargs: dict = {}

    def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        self.url = url
        self.kwargs = kwargs
        return self.websocket


def _cluster() -> ProxmoxClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api2/json/nodes/pve/termproxy"
        return httpx.Response(
            200,
            json={
                "data": {
                    "port": 5900,
                    "ticket": "PVEVNC:ticket",
                    "upid": "UPID:pve:termproxy",
                    "user": "root@pam",
                }
            },
        )

    return ProxmoxClient(
        "https://pve.example:8006",
        ClusterCredentials(api_token="root@pam!ci=secret"),
        RetryPolicy(),
        verify_tls=False,
        transport=httpx.MockTransport(handler),
    )


def _executor(websocket: FakeWebSocket) -> tuple[TerminalCommandExecutor, FakeConnect]:
    connect = FakeConnect(websocket)
    executor = TerminalCommandExecutor(
        _cluster(),
        read_timeout_sec=0.1,
        connect=connect,
        boundary_factory=lambda: BOUNDARY,
    )
    return executor, connect


def _session_output(exit_status: int) -> list[bytes | Exception]:
    return [
        b"OK",
        b"\x1b[?2004hroot@pve:~# ",
        b"echo;echo CMD-BEGIN-f00dfeed;echo \"...\" | base64 -d | bash\r\n",
        b"\r\nCMD-BEGIN-f00dfeed\r\n",
        b"some command output\r\n",
        b"CMD-FIN",
        b"ISH-f00dfeed\r\nexit_status=" + str(exit_status).encode() + b"\r\n",
        b"CMD-END-f00dfeed\r\n",
    ]


def setup_function() -> None:
    metrics.reset()


def test_command_frame_layout():
    frame = build_command_frame("date", BOUNDARY)
    prefix, length, payload = frame.split(b":", 2)
    assert prefix == b"0"
    assert int(length) == len(payload)
    assert payload.startswith(b"\x1b[200~")
    assert payload.endswith(b"\x1b[201~")
    assert SUBMIT_FRAME == b"0:1:\n"


def test_script_wraps_base64_command_in_markers():
    script = build_script("echo 'hi' > /tmp/x", BOUNDARY)
    encoded = base64.b64encode(b"echo 'hi' > /tmp/x").decode()
    assert script.startswith("echo;echo CMD-BEGIN-f00dfeed;")
    assert f'echo "{encoded}" | base64 -d | bash; exit_status=$?;' in script
    assert script.endswith(
        "echo CMD-FINISH-f00dfeed; echo exit_status=$exit_status; "
        "echo CMD-END-f00dfeed"
    )


def test_parse_exit_status():
    assert parse_exit_status("exit_status=0\r\n") == 0
    assert parse_exit_status("noise\nexit_status=127\n") == 127
    assert parse_exit_status("nothing here\n") is None


def test_run_succeeds_on_zero_exit_status():
    websocket = FakeWebSocket(_session_output(0))
    executor, connect = _executor(websocket)

    executor.run("pve", "echo hi")

    assert websocket.sent == [
        b"root@pam:PVEVNC:ticket\n",
        RESIZE_FRAME,
        build_command_frame("echo hi", BOUNDARY),
        SUBMIT_FRAME,
    ]
    assert websocket.closed
    assert connect.url is not None
    assert connect.url.startswith("wss://pve.example:8006/api2/json/nodes/pve/vncwebsocket?")
    assert connect.kwargs["subprotocols"] == ["binary"]
    assert connect.kwargs["additional_headers"] == {
        "Authorization": "PVEAPIToken=root@pam!ci=secret"
    }
    assert connect.kwargs["origin"] == "https://pve.example:8006"
    assert connect.kwargs["ssl"].check_hostname is False
    assert metrics.get("remote_commands_total") == 1
    assert metrics.get("remote_commands_failed_total") == 0


def test_nonzero_exit_status_raises_command_failed():
    websocket = FakeWebSocket(_session_output(2))
    executor, _ = _executor(websocket)

    with pytest.raises(CommandFailedError) as excinfo:
        executor.run("pve", "false")
    assert excinfo.value.exit_status == 2
    assert websocket.closed
    assert metrics.get("remote_commands_failed_total") == 1


def test_rejected_ticket_sends_no_command():
    websocket = FakeWebSocket([b"NO"])
    executor, _ = _executor(websocket)

    with pytest.raises(TicketRejectedError):
        executor.run("pve", "echo hi")
    assert websocket.sent == [b"root@pam:PVEVNC:ticket\n"]
    assert websocket.closed


def test_missing_exit_status_is_a_protocol_error():
    websocket = FakeWebSocket(
        [
            b"OK",
            b"CMD-BEGIN-f00dfeed\r\n",
            b"CMD-FINISH-f00dfeed\r\n",
            b"CMD-END-f00dfeed\r\n",
        ]
    )
    executor, _ = _executor(websocket)

    with pytest.raises(ProtocolError):
        executor.run("pve", "echo hi")
    assert websocket.closed


def test_silent_terminal_times_out():
    websocket = FakeWebSocket([b"OK", b"CMD-BEGIN-f00dfeed\r\n"])
    executor, _ = _executor(websocket)

    with pytest.raises(ProtocolError):
        executor.run("pve", "sleep 600")
    assert websocket.closed


def test_connection_failure_while_reading_is_a_protocol_error():
    websocket = FakeWebSocket([b"OK", ConnectionResetError("reset by peer")])
    executor, _ = _executor(websocket)

    with pytest.raises(ProtocolError):
        executor.run("pve", "echo hi")
    assert websocket.closed
