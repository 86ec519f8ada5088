import shutil
import socket
import socketserver
import struct
import tempfile
import threading
from dataclasses import dataclass, field

import pytest

from clamav_gateway import app
from clamav_gateway.clamd import EICAR, ClamdConnection


STATS_REPLY = [
    "POOLS: 1",
    "",
    "STATE: VALID PRIMARY",
    "THREADS: live 1  idle 0 max 10 idle-timeout 30",
    "QUEUE: 0 items",
    "\tSTATS 0.000054",
    "",
    "MEMSTATS: heap N/A mmap N/A used N/A free N/A releasable N/A "
    "pools 1 pools_used 1306.837M pools_total 1306.882M",
    "END",
]


@dataclass
class ReceivedCommand:
    """What the fake clamd got on one connection."""
    command: str
    chunk_sizes: list[int] = field(default_factory=list)
    data: bytes = b""
    terminated: bool = True


def default_reply(command: str, data: bytes) -> list[str]:
    verb, _, arg = command.partition(" ")
    match verb:
        case "PING":
            return ["PONG"]
        case "VERSION":
            return ["ClamAV 1.4.2/27500/Mon Jan  6 09:36:04 2025"]
        case "VERSIONCOMMANDS":
            return ["ClamAV 1.4.2/27500/Mon Jan  6 09:36:04 2025| "
                    "COMMANDS: SCAN QUIT RELOAD PING CONTSCAN VERSIONCOMMANDS"]
        case "STATS":
            return STATS_REPLY
        case "RELOAD":
            return ["RELOADING"]
        case "SHUTDOWN":
            return []
        case "SCAN" | "RAWSCAN" | "MULTISCAN" | "CONTSCAN" | "ALLMATCHSCAN":
            return [f"{arg}: OK"]
        case "INSTREAM":
            if EICAR in data:
                return ["stream: Win.Test.EICAR_HDB-1 FOUND"]
            return ["stream: OK"]
    return ["UNKNOWN COMMAND"]


class FakeClamdHandler(socketserver.StreamRequestHandler):
    """Serve one clamd command, like clamd does without sessions."""

    def handle(self) -> None:
        line = self.rfile.readline()
        if not line.startswith(b"n") or not line.endswith(b"\n"):
            self._reply(["UNKNOWN COMMAND"])
            return
        received = ReceivedCommand(command=line[1:-1].decode())

        if received.command == "INSTREAM":
            self._read_chunks(received)
        self.server.received.append(received)
        if not received.terminated:
            # client hung up in the middle of the stream
            return

        reply = self.server.replies.get(received.command)
        if reply is None:
            reply = default_reply(received.command, received.data)
        self._reply(reply)

    def _read_chunks(self, received: ReceivedCommand) -> None:
        data = bytearray()
        while True:
            header = self.rfile.read(4)
            if len(header) < 4:
                received.terminated = False
                break
            (length,) = struct.unpack("!L", header)
            if length == 0:
                break
            chunk = self.rfile.read(length)
            received.chunk_sizes.append(len(chunk))
            data.extend(chunk)
            if len(chunk) < length:
                received.terminated = False
                break
        received.data = bytes(data)

    def _reply(self, lines: list[str]) -> None:
        try:
            for line in lines:
                self.wfile.write(line.encode() + b"\n")
        except OSError:
            pass


class FakeClamdMixin:
    daemon_threads = True
    block_on_close = False

    def setup_fake(self) -> None:
        self.received = []
        self.replies = {}


class FakeClamdUnixServer(FakeClamdMixin,
                          socketserver.ThreadingUnixStreamServer):
    pass


class FakeClamdTCPServer(FakeClamdMixin, socketserver.ThreadingTCPServer):
    allow_reuse_address = True


def _serve(server):
    server.setup_fake()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


@pytest.fixture()
def fake_clamd():
    # AF_UNIX paths are short, keep away from pytest tmp_path
    tmp_dir = tempfile.mkdtemp(prefix="clamd-")
    socket_path = f"{tmp_dir}/clamd.sock"
    server = FakeClamdUnixServer(socket_path, FakeClamdHandler)
    server.address = socket_path
    _serve(server)

    yield server

    server.shutdown()
    server.server_close()
    shutil.rmtree(tmp_dir, ignore_errors=True)


@pytest.fixture()
def fake_clamd_tcp():
    server = FakeClamdTCPServer(("127.0.0.1", 0), FakeClamdHandler)
    host, port = server.server_address
    server.address = f"tcp://{host}:{port}"
    _serve(server)

    yield server

    server.shutdown()
    server.server_close()


class SocketPairConnection(ClamdConnection):
    """Connection over one end of a socket pair."""

    def __init__(self, sock: socket.socket):
        super().__init__()
        self._pair_sock = sock

    def _get_connection(self) -> socket.socket:
        return self._pair_sock


@pytest.fixture()
def socket_pair():
    """Connected (ClamdConnection, peer socket) couple."""
    ours, peer = socket.socketpair()
    conn = SocketPairConnection(ours)
    conn.connect()

    yield conn, peer

    conn.close()
    peer.close()


@pytest.fixture()
def test_app(fake_clamd):
    app.config.update({
        "TESTING": True,
        "CLAMD_ADDRESS": fake_clamd.address,
    })

    yield app

    app.config.pop("CLAMD_ADDRESS", None)
    app.config.pop("INCLUDE_RAW_DATA", None)


@pytest.fixture()
def client(test_app):
    return test_app.test_client()
