"""Client for clamd.

Each command opens its own connection to clamd, sends the command and
returns the replies as they come, as a ClamdResponseStream.  The
connection is closed once clamd is done replying.

"""
import logging
import threading
import typing as t

from .connection import ClamdConnection, open_connection, resolve_address
from .response import ClamdResponseStream
from .types import ClamdConnectionError, ClamdResponseError, ClamdStats

logger = logging.getLogger(__name__)

# size of the chunks read from the input stream of INSTREAM
CHUNK_SIZE = 1024

# how often the abort watcher checks whether the command is over
_ABORT_POLL_INTERVAL = 0.1  # seconds

# STATS reply sections, keyed by the prefix of their line
_STATS_SECTIONS = {
    "POOLS": "pools",
    "STATE": "state",
    "THREADS": "threads",
    "QUEUE": "queue",
    "MEMSTATS": "memstats",
}
_STATS_TERMINATOR = "END"


class Clamd():
    """Client for clamd daemon.

    Usage:
    .. code-block:: python

        clamd = Clamd("tcp://127.0.0.1:3310")
        clamd.ping()
        for result in clamd.scan_file("/my/file.txt"):
            print(result.status, result.signature)

    The address is either "tcp://host:port", "unix:///path/to/socket"
    or a plain path to the Unix socket.
    """
    def __init__(self, address: str):
        self.address = address

    def __repr__(self):
        return f"Clamd({self.address!r})"

    def ping(self) -> None:
        """Execute clamd PING command.

        Check the server's state. It should reply with "PONG".

        :raises ClamdResponseError: if clamd replies anything else
        """
        self._expect_reply("PING", "PONG")

    def version(self) -> ClamdResponseStream:
        """Execute clamd VERSION command.

        Print program and database versions.
        """
        return self._simple_command("VERSION")

    def version_commands(self) -> ClamdResponseStream:
        """Execute clamd VERSIONCOMMANDS command.

        Print program and database versions, followed by the commands
        supported by clamd.
        """
        return self._simple_command("VERSIONCOMMANDS")

    def stats(self) -> ClamdStats:
        """Execute clamd STATS command.

        Replies with statistics about the scan queue, contents of scan
        queue, and memory usage.
        """
        stream = self._simple_command("STATS")

        stats = ClamdStats()
        for result in stream:
            line = result.raw
            if line.startswith(_STATS_TERMINATOR):
                continue
            field = _stats_field(line)
            if field is None:
                logger.debug("Ignoring unknown STATS line: %s", line)
            elif field == "pools":
                stats.pools = line[len("POOLS") + 1:].strip()
            else:
                setattr(stats, field, line)
        stream.raise_for_error()

        return stats

    def reload(self) -> None:
        """Execute clamd RELOAD command.

        Reload the virus databases. It should reply with "RELOADING".

        :raises ClamdResponseError: if clamd replies anything else
        """
        self._expect_reply("RELOAD", "RELOADING")

    def shutdown(self) -> None:
        """Execute clamd SHUTDOWN command.

        Perform a clean exit of clamd.  Nothing is read back: only
        errors connecting or sending the command are raised.
        """
        with resolve_address(self.address) as conn:
            conn.send_command("SHUTDOWN")

    def scan_file(self, path: str) -> ClamdResponseStream:
        """Execute clamd SCAN command.

        Scan a file or a directory (recursively) with archive support
        enabled (if not disabled in clamd.conf). A full path is
        required.
        """
        return self._simple_command(f"SCAN {path}")

    def raw_scan_file(self, path: str) -> ClamdResponseStream:
        """Execute clamd RAWSCAN command.

        Scan a file or directory (recursively) with archive and special
        file support disabled. A full path is required.
        """
        return self._simple_command(f"RAWSCAN {path}")

    def multi_scan_file(self, path: str) -> ClamdResponseStream:
        """Execute clamd MULTISCAN command.

        Scan a file in a standard way or scan a directory (recursively)
        using multiple threads (to make the scanning faster on SMP
        machines). A full path is required.
        """
        return self._simple_command(f"MULTISCAN {path}")

    def cont_scan_file(self, path: str) -> ClamdResponseStream:
        """Execute clamd CONTSCAN command.

        Scan a file or directory (recursively) with archive support
        enabled and don't stop the scanning when a virus is found.
        """
        return self._simple_command(f"CONTSCAN {path}")

    def all_match_scan_file(self, path: str) -> ClamdResponseStream:
        """Execute clamd ALLMATCHSCAN command.

        Like SCAN, but continues scanning the file after finding a
        match, reporting all of them.
        """
        return self._simple_command(f"ALLMATCHSCAN {path}")

    def scan_stream(self,
                    input_stream: t.IO[bytes],
                    abort: threading.Event | None = None,
                    chunk_size: int = CHUNK_SIZE) -> ClamdResponseStream:
        """Execute clamd INSTREAM command.

        Scan a stream of data. The stream is sent to clamd in chunks,
        after INSTREAM, on the same socket on which the command was
        sent.  This avoids the overhead of establishing new TCP
        connections and problems with NAT.

        Do not exceed StreamMaxLength as defined in clamd.conf,
        otherwise clamd will reply with "INSTREAM size limit exceeded"
        and close the connection.

        :param input_stream: Input stream to analyze, read until it
            returns no data
        :param abort: Event that, once set, stops the upload and closes
            the connection; the returned stream then ends without results
        :param chunk_size: Size of the chunks sent to clamd
        :return: Stream of scan results
        """
        if chunk_size <= 0:
            raise ValueError(f"Invalid chunk size: {chunk_size}")

        conn = open_connection(self.address)
        finished = threading.Event()
        if abort is not None:
            threading.Thread(target=self._watch_abort,
                             args=(conn, abort, finished),
                             name=f"clamd-abort-{conn}",
                             daemon=True).start()

        try:
            self._upload(conn, input_stream, abort, chunk_size)
        except Exception:
            finished.set()
            conn.close()
            raise

        stream = conn.read_responses()
        stream.add_done_callback(finished.set)
        stream.add_done_callback(conn.close)
        return stream

    def _upload(self,
                conn: ClamdConnection,
                input_stream: t.IO[bytes],
                abort: threading.Event | None,
                chunk_size: int) -> None:
        """Send INSTREAM command and the content of input_stream.
        """
        def aborted() -> bool:
            return abort is not None and abort.is_set()

        try:
            conn.send_command("INSTREAM")

            # send stream of packets
            sent = 0
            buf = input_stream.read(chunk_size)
            while buf and not aborted():
                conn.send_chunk(buf)
                sent += len(buf)
                buf = input_stream.read(chunk_size)

            if aborted():
                logger.info("INSTREAM aborted after %d bytes", sent)
                conn.close()
                return

            # send an empty chunk to signal that we are finished
            conn.send_eof()
            logger.debug("INSTREAM sent %d bytes", sent)
        except ClamdConnectionError:
            # the watcher closing the socket under our feet makes
            # writes fail
            if not aborted():
                raise
            logger.info("INSTREAM aborted while writing")

    @staticmethod
    def _watch_abort(conn: ClamdConnection,
                     abort: threading.Event,
                     finished: threading.Event) -> None:
        """Close conn as soon as abort is set, until the command is over.
        """
        while not finished.is_set():
            if abort.wait(_ABORT_POLL_INTERVAL):
                logger.debug("Abort requested, closing %s", conn)
                conn.close()
                return

    def _simple_command(self, command: str) -> ClamdResponseStream:
        """Send simple command to clamd and start reading the response.

        :param command: Command to execute, possible values in man clamd(8)
        :return: clamd command response, connection is closed once read
        """
        conn = open_connection(self.address)
        try:
            conn.send_command(command)
        except Exception:
            conn.close()
            raise

        stream = conn.read_responses()
        stream.add_done_callback(conn.close)
        return stream

    def _expect_reply(self, command: str, expected: str) -> None:
        """Send command and check clamd acknowledges it with expected.
        """
        with self._simple_command(command) as stream:
            result = next(stream, None)

        if result is None:
            stream.wait()
            stream.raise_for_error()
            raise ClamdResponseError(
                f"Invalid response to {command}, got nothing.")
        if result.raw != expected:
            raise ClamdResponseError(
                f"Invalid response to {command}, got {result.raw}.")


def _stats_field(line: str) -> str | None:
    """Name of the ClamdStats field a STATS line belongs to, if any.
    """
    for prefix, field in _STATS_SECTIONS.items():
        if line.startswith(prefix):
            return field
    return None
