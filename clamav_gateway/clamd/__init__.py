"""Python bindings for clamd daemon on Unix or TCP socket.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    clamd = Clamd("/var/run/clamd.sock")
    for result in clamd.scan_file("/my/file.txt"):
        print(result.status, result.signature)

A new connection is opened each time you run a command, and closed
once clamd is done replying.  The address may also be given as
"tcp://host:port" or "unix:///path/to/socket".

Replies are parsed line by line in background and delivered as they
come:
.. code-block:: python

    with open("/my/file.txt", "rb") as f:
        results = list(clamd.scan_stream(f))

NOTE: clamd sessions are yet not implemented.

"""

from .types import EICAR, ClamdScanStatus, ClamdScanResult, ClamdStats  # noqa
from .types import ClamdException, ClamdConnectionError, \
    ClamdTimeoutError, ClamdResponseError  # noqa
from .parser import parse_result  # noqa
from .response import ClamdResponseStream  # noqa
from .connection import ClamdConnection, ClamdUnixConnection, \
    ClamdTCPConnection, open_connection, resolve_address, \
    encode_chunk_header, decode_chunk_header  # noqa
from .client import Clamd, CHUNK_SIZE  # noqa
