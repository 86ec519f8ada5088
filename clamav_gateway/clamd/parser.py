"""Parser for clamd response lines.

Every line clamd sends back for a scanning command has the shape::

    <path>: [<description>[(<hash>:<size>)] ]<status>

where status is one of OK, FOUND or ERROR.  For instance::

    /tmp/file: OK
    stream: Win.Test.EICAR_HDB-1 FOUND
    stream: Eicar-Test-Signature(44d88612fea8a8f36de82e1278abb02f:68) FOUND
    /root/secret.txt: Access denied. ERROR

The whole line must match.  Path, description and hash cannot contain
colons; size is a decimal integer.  Lines that do not match (including
replies of commands like PING or STATS) are never rejected: they are
returned as results with PARSE_ERROR status, so they can still be read
through the raw text.

"""
import string

from .types import ClamdScanResult, ClamdScanStatus

NO_MATCH_DESCRIPTION = "Regex had no matches"
MISSING_SIGNATURE_DESCRIPTION = "Missing signature name"

_STATUS_TOKENS = {
    "OK": ClamdScanStatus.OK,
    "FOUND": ClamdScanStatus.FOUND,
    "ERROR": ClamdScanStatus.ERROR,
}


def parse_result(line: str) -> ClamdScanResult:
    """Parse a line of clamd response.

    :param line: Response line, without the line terminator
    :return: Structured result; never raises
    """
    parsed = _match_line(line)
    if parsed is None:
        return ClamdScanResult(raw=line,
                               status=ClamdScanStatus.PARSE_ERROR,
                               description=NO_MATCH_DESCRIPTION)

    path, description, virhash, virsize, token = parsed

    status = _STATUS_TOKENS.get(token)
    if status is None:
        return ClamdScanResult(raw=line,
                               status=ClamdScanStatus.PARSE_ERROR,
                               description="Invalid status field: " + token)

    if status == ClamdScanStatus.FOUND and not description:
        # a detection without the name of what was detected is useless
        return ClamdScanResult(raw=line,
                               status=ClamdScanStatus.PARSE_ERROR,
                               description=MISSING_SIGNATURE_DESCRIPTION)

    try:
        size = int(virsize) if virsize else 0
    except ValueError:
        size = 0

    return ClamdScanResult(
        raw=line,
        status=status,
        path=path,
        description=description,
        hash=virhash,
        size=size,
    )


def _match_line(line: str):
    """Split a response line in its fields.

    :return: tuple (path, description, hash, size, status token) or
        None if the line does not have the expected shape
    """
    # path runs up to the first colon and is followed by a space
    path, sep, rest = line.partition(":")
    if not path or not sep or not rest.startswith(" "):
        return None
    rest = rest[1:]

    for token in _STATUS_TOKENS:
        if rest.endswith(token):
            middle = rest[:-len(token)]
            break
    else:
        return None

    if not middle:
        return path, "", "", "", token

    # description (and signature group) is separated from the status
    # by exactly one space
    if not middle.endswith(" "):
        return None
    body = middle[:-1]
    if not body:
        return None

    if ":" not in body:
        return path, body, "", "", token

    # a colon is only allowed inside the "(<hash>:<size>)" group that
    # closes the description
    head, _, tail = body.partition(":")
    if ":" in tail or not tail.endswith(")"):
        return None
    virsize = tail[:-1]
    if not virsize or any(c not in string.digits for c in virsize):
        return None

    # the description is as long as possible: split on the last "("
    # leaving a non empty description and a non empty hash
    paren = head.rfind("(", 1, len(head) - 1)
    if paren == -1:
        return None
    description = head[:paren]
    virhash = head[paren + 1:]

    return path, description, virhash, virsize, token
