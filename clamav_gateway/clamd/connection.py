"""Connection to clamd.

It comes in two shapes:
 - ClamdUnixConnection for clamav daemon running locally
 - ClamdTCPConnection for clamav daemon on the network

Once connection is established, the behaviour is the same.  Use
open_connection() to get the right one from an address string.

A connection carries exactly one command: clamd closes it once it is
done replying.

"""
import abc
import logging
import socket
import struct
import threading
import typing as t
import urllib.parse

from .response import ClamdResponseStream
from .types import ClamdConnectionError, ClamdTimeoutError

logger = logging.getLogger(__name__)

# connect timeout for TCP connections, reads and writes have none
TCP_TIMEOUT = 2  # seconds

# largest chunk that fits the 4-byte length prefix
MAX_CHUNK_SIZE = 2 ** 32 - 1

# cmd specifier is a prefix we put before the command.  'n' asks clamd
# for newline terminated replies.  Read more in man clamd(8)
CMD_SPECIFIER = b'n'
CMD_TERMINATOR = b'\n'

_chunk_header = struct.Struct('!L')


def encode_chunk_header(length: int) -> bytes:
    """Pack the length of a chunk as clamd INSTREAM expects.

    :param length: Length of the chunk data, 0 for end of stream
    :return: 4-byte unsigned integer in network byte order
    """
    if not 0 <= length <= MAX_CHUNK_SIZE:
        raise ValueError(f"Chunk length out of range: {length}")
    return _chunk_header.pack(length)


def decode_chunk_header(header: bytes) -> int:
    """Unpack the length of a chunk from its 4-byte prefix.
    """
    (length,) = _chunk_header.unpack(header)
    return length


class ClamdConnection(abc.ABC):
    """Abstract connection to clamd daemon.
    """
    def __init__(self):
        self._sock = None
        self._close_lock = threading.Lock()
        self.closed = False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args, **kwargs):
        self.close()
        return False

    def connect(self) -> None:
        """Connect to clamd daemon.
        """
        self._sock = self._get_connection()

    def close(self) -> None:
        """Close connection to clamd daemon.

        Safe to call more than once and from any thread: a read or
        write blocked on the socket in another thread is woken up.
        """
        with self._close_lock:
            if self.closed or self._sock is None:
                return
            self.closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # not connected anymore, clamd hung up first
            pass
        self._sock.close()

    def makefile(self) -> t.BinaryIO:
        """Binary file object reading from the connection.
        """
        return self._sock.makefile("rb")

    def send_command(self, command: str) -> None:
        """Send command to clamd.

        :param command: Command to execute, possible values in man clamd(8)
        """
        full_cmd = b''.join([
            CMD_SPECIFIER,
            command.encode(),
            CMD_TERMINATOR,
        ])
        logger.debug("Sending command: %s", full_cmd)
        self._send(full_cmd)

    def send_chunk(self, data: bytes) -> None:
        """Send a chunk of data of an INSTREAM command.

        :param data: Chunk data, must not be empty as a zero length
            chunk ends the stream
        """
        if not data:
            raise ValueError("Empty chunk, use send_eof() to end the stream")
        # pack buf as man clamd(8) says for INSTREAM command
        self._send(encode_chunk_header(len(data)) + bytes(data))

    def send_eof(self) -> None:
        """Send the zero length chunk ending an INSTREAM command.
        """
        self._send(encode_chunk_header(0))

    def read_responses(self) -> ClamdResponseStream:
        """Start reading clamd replies in background.

        :return: Stream of parsed response lines, also usable to wait
            for the end of the response
        """
        return ClamdResponseStream(self, name=f"clamd-reader-{self}")

    @abc.abstractmethod
    def _get_connection(self) -> socket.socket:
        """Get connection to clamd as socket.

        :return: Socket connected to clamd
        """

    def _send(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise ClamdConnectionError(
                f"Unable to write to clamd at {self}: {e}") from e


class ClamdUnixConnection(ClamdConnection):
    """Connection to clamd daemon over UNIX domain socket.

    This is the recommended option when clamd is running on the same host.

    When using this option, clamd should be running with 'LocalSocket <path>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self, socket_path: str):
        """Create clamd connection for UNIX domain socket.

        :param socket_path: Path of the clamd daemon socket
        """
        super().__init__()
        self.socket_path = socket_path

    def __str__(self):
        return f"unix://{self.socket_path}"

    def _get_connection(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self.socket_path)
        except FileNotFoundError:
            sock.close()
            raise ClamdConnectionError("clamd unix socket not found at " +
                                       self.socket_path +
                                       ". Is the clamd daemon running?")
        except OSError as e:
            sock.close()
            raise ClamdConnectionError(
                f"Unable to connect to clamd at {self}: {e}") from e
        return sock


class ClamdTCPConnection(ClamdConnection):
    """Connection to clamd daemon over TCP socket.

    This is the recommended (only) option when clamd is running on
    other host in the network.

    When using this option, clamd should be running with 'TCPSocket <port>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self, host: str, port: int, timeout: float = TCP_TIMEOUT):
        """Create clamd connection for TCP socket.

        :param host: TCP host
        :param port: TCP port
        :param timeout: Timeout for establishing the connection
        """
        super().__init__()
        self.host = host
        self.port = port
        self.timeout = timeout

    def __str__(self):
        return f"tcp://{self.host}:{self.port}"

    def _get_connection(self) -> socket.socket:
        try:
            addresses = socket.getaddrinfo(self.host, self.port,
                                           type=socket.SOCK_STREAM)
        except OSError as e:
            raise ClamdConnectionError(
                f"Unable to resolve clamd host {self.host}: {e}") from e
        # only the first address is dialed: the timeout bounds the whole
        # connect, not each address of the host
        family, sock_type, proto, _, sockaddr = addresses[0]
        sock = socket.socket(family, sock_type, proto)
        sock.settimeout(self.timeout)
        try:
            sock.connect(sockaddr)
        except socket.timeout as e:
            sock.close()
            raise ClamdTimeoutError(
                f"Timeout connecting to clamd at {self} "
                f"after {self.timeout}s") from e
        except OSError as e:
            sock.close()
            raise ClamdConnectionError(
                f"Unable to connect to clamd at {self}: {e}") from e
        # the timeout only applies to connect
        sock.settimeout(None)
        return sock


def open_connection(address: str) -> ClamdConnection:
    """Open a connection to clamd.

    :param address: Either "tcp://host:port", "unix:///path/to/socket"
        or a plain path to the Unix socket
    :return: Connected clamd connection, to be closed by the caller
    """
    conn = resolve_address(address)
    logger.debug("Connecting to clamd at %s", conn)
    conn.connect()
    return conn


def resolve_address(address: str) -> ClamdConnection:
    """Pick the connection type of an address, without connecting.
    """
    url = urllib.parse.urlsplit(address)

    match url.scheme:
        case "tcp":
            try:
                port = url.port
            except ValueError as e:
                raise ClamdConnectionError(
                    f"Invalid clamd address {address!r}: {e}") from e
            if not url.hostname or port is None:
                raise ClamdConnectionError(
                    f"Invalid clamd address {address!r}: "
                    "host and port are required")
            return ClamdTCPConnection(host=url.hostname, port=port)
        case "unix":
            return ClamdUnixConnection(url.path)
        case _:
            return ClamdUnixConnection(address)
