"""Types for clamd communication.

"""
from dataclasses import dataclass
from enum import Enum


# EICAR test file: not a virus, but detected as one by antiviruses
EICAR = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class ClamdException(Exception):
    """Raised when error occurred communicating with the clamd daemon.
    """


class ClamdConnectionError(ClamdException):
    """Raised when the connection to clamd cannot be opened, or fails
    while reading or writing.
    """


class ClamdTimeoutError(ClamdConnectionError):
    """Raised when dialing clamd over TCP does not complete in time.
    """


class ClamdResponseError(ClamdException):
    """Raised when clamd replies with something other than the expected
    acknowledgement.
    """


class ClamdScanStatus(Enum):
    """Status of a clamd response line.
    """
    OK = "OK"
    FOUND = "FOUND"
    ERROR = "ERROR"
    # this is not an error returned by clamd, but reflects our
    # inability to parse the clamd response correctly
    PARSE_ERROR = "PARSE ERROR"


@dataclass(frozen=True)
class ClamdScanResult():
    """One parsed line of a clamd response.
    """
    raw: str
    status: ClamdScanStatus
    path: str = ""
    description: str = ""
    hash: str = ""
    size: int = 0

    @property
    def signature(self) -> str:
        """Name of the detected signature, empty unless status is FOUND.

        clamd reports either "<path>: <name> FOUND" or, with extended
        detection info, "<path>: <name>(<hash>:<size>) FOUND"; the name
        is the description in both cases.
        """
        if self.status != ClamdScanStatus.FOUND:
            return ""
        return self.description

    def __str__(self):
        return self.raw


@dataclass
class ClamdStats():
    """Statistics reported by clamd STATS command.
    """
    pools: str = ""
    state: str = ""
    threads: str = ""
    queue: str = ""
    memstats: str = ""
