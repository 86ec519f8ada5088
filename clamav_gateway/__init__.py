"""ClamAV gateway is a REST interface for ClamAV daemon.

The ClamAV daemon (clamd) can be either reached via Unix domain socket
or TCP socket.  This behaviour can be specified via configuration.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMAV_" prefix
are loaded into the application.

No authentication of any type is implemented whatsoever: be sure that
your ClamAV gateway is adequately protected.

The following variables are accepted:

 - CLAMAV_CLAMD_ADDRESS : address of clamd, either "tcp://host:port",
    "unix:///path/to/socket" or a plain Unix socket path.  Takes
    precedence over the variables below.
 - CLAMAV_CLAMD_SOCKET_PATH : application will connect to clamd
    running on Unix socket at path specified.
 - CLAMAV_CLAMD_HOST : application will connect to clamd running on TCP
    socket at host specified; also CLAMAV_CLAMD_PORT is expected
 - CLAMAV_CLAMD_PORT : use with CLAMAV_CLAMD_HOST
 - CLAMAV_INCLUDE_RAW_DATA : include clamd raw response in scan
    results, for debugging

"""
import dataclasses
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import HTTPException

from .clamd import Clamd, ClamdException, ClamdScanStatus

DEFAULT_SOCKET_PATH = "/tmp/clamd.sock"

##
# Init app and config
##

app = Flask(__name__)

# load all env starting with CLAMAV_ and make them available in
# app.config without CLAMAV_
app.config.from_prefixed_env("CLAMAV")

# fix gunicorn logging
if __name__ != '__main__':
    gunicorn_logger = logging.getLogger('gunicorn.error')
    if gunicorn_logger.handlers:
        app.logger.handlers = gunicorn_logger.handlers[:]
        app.logger.setLevel(gunicorn_logger.level)
        app.logger.propagate = False


##
# API
##


@app.route("/api/v1/doc")
def api_doc():
    """OpenAPI spec of the v1 API.
    """
    swag = swagger(app)
    swag['info']['version'] = "1.0"
    swag['info']['title'] = "ClamAV gateway"
    swag['info']['description'] = \
        "File scanning with ClamAV daemon via REST API"
    return jsonify(swag)


@app.route("/health", methods=["GET"])
@app.route("/api/v1/clamav/ping", methods=["GET"])
def ping():
    """Ping clamav ensuring connection is up.
    ---
    tags:
      - status
    responses:
      200:
        description: Pong
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the ping
              example: OK
            message:
              type: string
              description: Message returned by clamav on ping command
              example: PONG
      503:
        description: clamd unreachable or not answering PONG
    """
    app.logger.debug("Pinging clamd...")
    try:
        clamd_instance().ping()
    except ClamdException as e:
        app.logger.warning("Ping clamd failed: %s", e)
        return {
            "status": "KO",
            "message": str(e),
        }, 503

    return {
        "status": "OK",
        "message": "PONG",
    }


@app.route("/api/v1/clamav/scan", methods=["POST"])
def scan_file():
    """Scan a file attached to the request.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: File to scan
        required: true
    responses:
      200:
        description: Scanning result
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the scanning {OK,FOUND,ERROR}
              example: FOUND
            input_file:
              type: string
              description: Input file that was scanned
              example: myfile.txt
            virus:
              type: string
              description: Virus found, if any
              example: Name-Of-Virus-Found
            error:
              type: string
              description: Error occurred, if any
            file_size:
              type: integer
              description: Size of the file scanned in bytes
              example: 256
            details:
              type: array
              description: Additional lines of details, if any
    """
    if 'file' not in request.files:
        return {"error": "No file attached"}, 400
    file_to_analyze = request.files['file']
    filename = file_to_analyze.filename or ""
    # sanitize filename to prevent log injection
    safe_filename = filename.replace('\r\n', '').replace('\n', '')

    app.logger.debug("Starting scan for file \"%s\"", safe_filename)
    # we send an open stream to clamd, chunk by chunk
    stream = clamd_instance().scan_stream(file_to_analyze.stream)
    results = list(stream)
    stream.raise_for_error()

    # the file pointer is at the end of the stream, so tell() will
    # give us the size in bytes
    file_size = file_to_analyze.stream.tell()

    if not results:
        raise ClamdException("clamd closed the connection without reply")
    result = results[0]
    details = [r.raw for r in results[1:]]

    app.logger.info("Scanned file \"%s\" (%d bytes) with status %s - %s",
                    safe_filename, file_size, result.status.value,
                    result.signature or "no virus")
    app.logger.debug("Scan raw response: %s", result.raw)

    # pack the response
    resp_body = {
        "status": result.status.value,
        # the path is always "stream" as returned by clamd INSTREAM
        # command, use what the client told us about the file for a
        # more significative response to the user
        "input_file": filename,
        "virus": result.signature or None,
        "details": details,
        "error": result.description
        if result.status == ClamdScanStatus.ERROR else None,
        "file_size": file_size,
    }
    if config_bool("INCLUDE_RAW_DATA"):
        app.logger.warning("Including raw data in scan response. "
                           "Use this option only for debugging")
        resp_body["raw_data"] = "\n".join(r.raw for r in results)

    # decide http status code
    if result.status == ClamdScanStatus.ERROR:
        status_code = 500
        app.logger.error("Detected clamd error: %s", result.description)
    elif result.status == ClamdScanStatus.PARSE_ERROR:
        # this is not a clamd error, but our error in parsing response
        status_code = 500
        app.logger.error("Unable to parse clamd response. Raw response: %s",
                         result.raw)
    else:
        status_code = 200

    return resp_body, status_code


@app.route("/api/v1/clamav/stats", methods=["GET"])
def stats():
    """Get clamav stats.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV stats
        content: application/json
        schema:
          type: object
          properties:
            pools:
              type: string
              description: Number of thread pools
            state:
              type: string
              description: State of the daemon
            threads:
              type: string
              description: Live, idle and max threads
            queue:
              type: string
              description: Items in the scan queue
            memstats:
              type: string
              description: Memory usage
    """
    app.logger.debug("Requesting clamd stats...")
    clamd_stats = clamd_instance().stats()
    app.logger.debug("Stats clamd response: %s", clamd_stats)

    return dataclasses.asdict(clamd_stats)


@app.route("/api/v1/clamav/version", methods=["GET"])
def clamav_version():
    """Get version of connected clamav instance.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV version
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV version message
              example: ClamAV 1.4.2
            details:
              type: array
              description: Additional lines of details, if any
    """
    stream = clamd_instance().version()
    lines = [r.raw for r in stream]
    stream.raise_for_error()

    return {
        "message": lines[0] if lines else "",
        "details": lines[1:],
    }


@app.route("/api/v1/clamav/reload", methods=["POST"])
def reload():
    """Reload clamav virus databases.
    ---
    tags:
      - status
    responses:
      200:
        description: Reload started
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              example: OK
            message:
              type: string
              example: RELOADING
    """
    app.logger.info("Reloading clamd virus databases")
    clamd_instance().reload()

    return {
        "status": "OK",
        "message": "RELOADING",
    }


##
# Error handlers
##


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    """Handle an HTTP exception and return JSON.
    """
    str_e = str(e)
    if e.code not in [404, 405, 415]:
        # don't pollute logs, these statuses does not concern us
        app.logger.exception("HTTP exception: %s", str_e)
    return {"error": str_e}, e.code


@app.errorhandler(ClamdException)
def handle_clamd_exception(e):
    """Handle an error talking to clamd and return JSON.
    """
    str_e = str(e)
    app.logger.error("clamd exception: %s", str_e)
    return {"error": str_e}, 503


@app.errorhandler(Exception)
def handle_exception(e):
    """Handle an generic exception and return JSON.
    """
    str_e = str(e)
    app.logger.exception("Generic exception: %s", str_e)
    return {"error": str_e}, 500


##
# Helpers
##


def clamd_instance() -> Clamd:
    """Get a clamd client based on app config.
    """
    return Clamd(clamd_address())


def clamd_address() -> str:
    """Get the clamd address from app config.
    """
    # remember, these are env variables prefixed with CLAMAV_
    address = app.config.get("CLAMD_ADDRESS")
    if address:
        return address

    host = app.config.get("CLAMD_HOST")
    port = app.config.get("CLAMD_PORT")
    if host is not None and port is not None:
        return f"tcp://{host}:{port}"

    return app.config.get("CLAMD_SOCKET_PATH") or DEFAULT_SOCKET_PATH


def config_bool(env_name: str) -> bool:
    """Given a config var name, try to parse as boolean.
    """
    val = app.config.get(env_name, False)
    # from_prefixed_env already turns "true" into True
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ["true", "1", "enable", "enabled"]


##
# DEV runner
##

if __name__ == "__main__":
    # don't run directly in prod, use a production grade wsgi server
    # like gunicorn
    app.run(host="0.0.0.0", port=8080, debug=True)
