import base64
import logging
import re
import secrets
import ssl
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as websockets_connect

from vm_reconciler.clients.proxmox import ProxmoxClient, TermProxyTicket
from vm_reconciler.errors import (
    CommandFailedError,
    ProtocolError,
    ReconcileError,
    TicketRejectedError,
)
from vm_reconciler.metrics import metrics
from vm_reconciler.state_machine import OutputScanner


logger = logging.getLogger(__name__)

TICKET_ACCEPTED = b"OK"
HANDSHAKE_READ_LIMIT = 10
RESIZE_FRAME = b"1:80:24:"
PASTE_BEGIN = b"\x1b[200~"
PASTE_END = b"\x1b[201~"

_EXIT_STATUS_RE = re.compile(r"^exit_status=(-?\d+)", re.MULTILINE)


def new_boundary() -> str:
    return secrets.token_hex(8)


def keystroke_frame(payload: bytes) -> bytes:
    return b"0:" + str(len(payload)).encode("ascii") + b":" + payload


SUBMIT_FRAME = keystroke_frame(b"\n")


def build_script(command: str, boundary: str) -> str:
    encoded = base64.b64encode(command.encode("utf-8")).decode("ascii")
    return (
        f"echo;echo CMD-BEGIN-{boundary};"
        f'echo "{encoded}" | base64 -d | bash; exit_status=$?; '
        f"echo CMD-FINISH-{boundary}; echo exit_status=$exit_status; "
        f"echo CMD-END-{boundary}"
    )


def build_command_frame(command: str, boundary: str) -> bytes:
    script = build_script(command, boundary).encode("utf-8")
    return keystroke_frame(PASTE_BEGIN + script + PASTE_END)


def parse_exit_status(footer: str) -> int | None:
    match = _EXIT_STATUS_RE.search(footer)
    if not match:
        return None
    return int(match.group(1))


@dataclass
class CommandSession:
    node: str
    ticket: TermProxyTicket
    url: str
    boundary: str


class _LineReader:
    def __init__(self, connection: Any, timeout_sec: float):
        self._connection = connection
        self._timeout_sec = timeout_sec
        self._buffer = b""

    def readline(self) -> str:
        while b"\n" not in self._buffer:
            # The deadline is renewed on every read, not per command.
            try:
                message = self._connection.recv(timeout=self._timeout_sec)
            except TimeoutError as exc:
                raise ProtocolError(
                    f"no terminal output within {self._timeout_sec}s"
                ) from exc
            except (WebSocketException, OSError) as exc:
                raise ProtocolError(f"failed to read terminal output: {exc}") from exc
            if isinstance(message, str):
                message = message.encode("utf-8")
            self._buffer += message
        line, _, self._buffer = self._buffer.partition(b"\n")
        return (line + b"\n").decode("utf-8", errors="replace")


class TerminalCommandExecutor:
    def __init__(
        self,
        cluster: ProxmoxClient,
        *,
        read_timeout_sec: float = 30.0,
        open_timeout_sec: float = 10.0,
        connect: Callable[..., Any] | None = None,
        boundary_factory: Callable[[], str] = new_boundary,
    ):
        self.cluster = cluster
        self.read_timeout_sec = read_timeout_sec
        self.open_timeout_sec = open_timeout_sec
        self._connect = connect or websockets_connect
        self._boundary_factory = boundary_factory

    def run(self, node: str, command: str) -> None:
        metrics.inc("remote_commands_total")
        try:
            self._run(node, command)
        except ReconcileError:
            metrics.inc("remote_commands_failed_total")
            raise

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.cluster.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _open(self, session: CommandSession) -> Any:
        kwargs: dict[str, Any] = {
            "subprotocols": ["binary"],
            "additional_headers": self.cluster.credentials.headers(),
            "origin": self.cluster.origin,
            "open_timeout": self.open_timeout_sec,
            "ping_interval": None,
            "compression": None,
            "max_size": None,
        }
        if session.url.startswith("wss://"):
            kwargs["ssl"] = self._ssl_context()
        try:
            return self._connect(session.url, **kwargs)
        except (WebSocketException, OSError) as exc:
            raise ProtocolError(
                f"failed to open terminal websocket on node {session.node}: {exc}"
            ) from exc

    @staticmethod
    def _send(connection: Any, payload: bytes) -> None:
        try:
            connection.send(payload)
        except (WebSocketException, OSError) as exc:
            raise ProtocolError(f"failed to send terminal frame: {exc}") from exc

    def _handshake(self, connection: Any, session: CommandSession) -> None:
        ticket = session.ticket
        self._send(connection, f"{ticket.user}:{ticket.ticket}\n".encode("utf-8"))
        try:
            reply = connection.recv(timeout=self.read_timeout_sec)
        except TimeoutError as exc:
            raise ProtocolError("no reply to terminal ticket") from exc
        except (WebSocketException, OSError) as exc:
            raise ProtocolError(f"failed to read ticket reply: {exc}") from exc
        if isinstance(reply, str):
            reply = reply.encode("utf-8")
        if reply[:HANDSHAKE_READ_LIMIT] != TICKET_ACCEPTED:
            raise TicketRejectedError(session.node, reply[:HANDSHAKE_READ_LIMIT])

    def _run(self, node: str, command: str) -> None:
        ticket = self.cluster.termproxy(node)
        session = CommandSession(
            node=node,
            ticket=ticket,
            url=self.cluster.websocket_url(node, ticket.port, ticket.ticket),
            boundary=self._boundary_factory(),
        )
        logger.debug(
            "opening terminal session node=%s port=%s boundary=%s",
            node,
            ticket.port,
            session.boundary,
        )
        with closing(self._open(session)) as connection:
            self._handshake(connection, session)
            self._send(connection, RESIZE_FRAME)
            self._send(connection, build_command_frame(command, session.boundary))
            self._send(connection, SUBMIT_FRAME)

            scanner = OutputScanner(session.boundary)
            reader = _LineReader(connection, self.read_timeout_sec)
            while not scanner.done:
                scanner.feed(reader.readline())

        exit_status = parse_exit_status(scanner.footer)
        if exit_status is None:
            raise ProtocolError(f"exit_status not found in footer: {scanner.footer!r}")
        if exit_status != 0:
            raise CommandFailedError(node, exit_status)
        logger.info("remote command finished node=%s exit_status=0", node)
