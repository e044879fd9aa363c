import logging
import os
import posixpath
import re
import secrets
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from flask import (
    Flask,
    Response,
    current_app,
    flash,
    g,
    has_request_context,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFError, CSRFProtect
from jinja2 import TemplateError
from markupsafe import escape
from werkzeug.datastructures import FileStorage

from .config import (
    ROOT_PATH,
    ListDirectory,
    ResolvedTarget,
    ServeFile,
    ServerConfig,
    resolve,
)
from .errors import BadRequestError, DirShareError, PathOutsideRootError
from .network import discover_addresses
from .storage import (
    BYTES_PER_MB,
    DEFAULT_MAX_UPLOAD_SIZE_MB,
    _resolve_env_path,
    _safe_int_env,
    list_directory,
    save_upload,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

LOGS_DIR = _resolve_env_path("DIRSHARE_LOGS_DIR")
MAX_UPLOAD_SIZE_MB = _safe_int_env("DIRSHARE_MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB)
UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("DIRSHARE_RATE_LIMIT_UPLOADS_PER_HOUR", 100)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with the current request ID."""

    def process(self, msg, kwargs):
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {msg}", kwargs
        return msg, kwargs


def _configure_file_logging(logs_dir: Optional[Path]) -> Optional[Path]:
    """Attach a rotating file handler when a log directory is configured."""

    if logs_dir is None:
        return None

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "dirshare.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret
    logging.getLogger("dirshare.security").info(
        "SECRET_KEY not set; using a per-process key. Sessions will not survive restarts."
    )
    return secrets.token_hex(32)


APP_LOG_PATH = _configure_file_logging(LOGS_DIR)

app = Flask(__name__, static_folder=None)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri="memory://",
)

app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
app.config["SECRET_KEY"] = _load_secret_key()
app.config["WTF_CSRF_ENABLED"] = _get_optional_bool_env("DIRSHARE_CSRF_ENABLED") is not False
app.config["SERVER_CONFIG"] = ServerConfig.from_environment(discover_addresses())
csrf = CSRFProtect(app)
app.logger.setLevel(numeric_level)

# Parse templates up front so a broken template stops the server from starting.
app.jinja_env.get_template("index.html")
app.jinja_env.get_template("error.html")

_base_lifecycle_logger = logging.getLogger("dirshare.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger, {})


def get_server_config() -> ServerConfig:
    return current_app.config["SERVER_CONFIG"]


def upload_rate_limit_string() -> str:
    return f"{UPLOAD_RATE_LIMIT_PER_HOUR} per hour"


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


def _wants_json() -> bool:
    return bool(
        request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html
    )


def _error_response(message: str, status_code: int) -> Response:
    if _wants_json():
        return make_response(jsonify({"error": message}), status_code)
    try:
        body = render_template("error.html", message=message, status_code=status_code)
    except TemplateError:
        lifecycle_logger.exception("error_page_render_failed status=%d", status_code)
        body = f"<h1>{status_code}</h1><p>{escape(message)}</p>"
    return make_response(body, status_code)


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:;"
    )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(DirShareError)
def handle_dirshare_error(error: DirShareError):
    lifecycle_logger.warning(
        "request_rejected status=%d reason=%s path=%s",
        error.status_code,
        sanitize_log_value(error.message),
        sanitize_log_value(request.path),
    )
    return _error_response(error.message, error.status_code)


@app.errorhandler(FileNotFoundError)
def handle_not_found(error: FileNotFoundError):
    if isinstance(error, PathOutsideRootError):
        lifecycle_logger.warning(
            "path_traversal_attempt path=%s ip=%s",
            sanitize_log_value(error.request_path),
            request.remote_addr or "unknown",
        )
    else:
        lifecycle_logger.info("path_missing path=%s", sanitize_log_value(request.path))
    return _error_response("Not found", 404)


@app.errorhandler(OSError)
def handle_io_error(error: OSError):
    lifecycle_logger.error(
        "io_error path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    return _error_response("Error accessing files", 500)


@app.errorhandler(TemplateError)
def handle_template_error(error: TemplateError):
    lifecycle_logger.error("template_render_failed error=%s", sanitize_log_value(str(error)))
    return _error_response("Error rendering template", 500)


@app.errorhandler(404)
def not_found(error):
    return _error_response("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(error):
    return _error_response("Method not allowed", 405)


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return _error_response("File too large", 413)


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return _error_response(f"Rate limit exceeded: {description}", 429)


@app.errorhandler(CSRFError)
def handle_csrf_error(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Invalid CSRF token")
    return _error_response(description, 400)


@app.template_filter("human_filesize")
def human_filesize(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    for unit in ["KB", "MB", "GB", "TB"]:
        num /= 1024.0
        if abs(num) < 1024.0:
            return f"{num:.2f} {unit}"
    return f"{num:.2f} PB"


def _parent_path(relative_path: str) -> Optional[str]:
    if relative_path == ROOT_PATH:
        return None
    return posixpath.dirname(relative_path.rstrip("/")) or ROOT_PATH


def render_listing(relative_path: str):
    """Render the listing view for *relative_path* under the current root."""

    context: Dict[str, Any] = get_server_config().snapshot()
    files = list_directory(context["source_dir"], relative_path)
    context.update(
        path=relative_path,
        parent_path=_parent_path(relative_path),
    )

    if _wants_json():
        return jsonify(files=[entry.to_dict() for entry in files], **context)
    return render_template("index.html", files=files, **context)


def _serve_file(absolute_path: str):
    lifecycle_logger.info("file_served path=%s", sanitize_log_value(absolute_path))
    return send_file(absolute_path, conditional=True)


def _respond(target: ResolvedTarget):
    if isinstance(target, ServeFile):
        return _serve_file(target.absolute_path)
    if isinstance(target, ListDirectory):
        return render_listing(target.relative_path)
    return render_listing(ROOT_PATH)


@app.route("/", methods=["GET", "POST"])
def index():
    config = get_server_config()
    if request.method != "POST":
        return _respond(resolve("/", config))

    port = request.form.get("port", "").strip()
    directory = request.form.get("directory", "").strip()
    target = resolve("/", config, port=port, directory=directory, control=True)
    if port or directory:
        lifecycle_logger.info(
            "settings_updated port=%s source_dir=%s",
            sanitize_log_value(config.port),
            sanitize_log_value(config.source_dir),
        )
        flash("Settings updated.", "success")
    return _respond(target)


@app.route("/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload():
    if "file" not in request.files:
        lifecycle_logger.warning("upload_failed reason=no_file_part")
        raise BadRequestError("Error retrieving file")

    with upload_stream_handler(request.files["file"]) as file_storage:
        if not isinstance(file_storage, FileStorage) or not file_storage.filename:
            lifecycle_logger.warning("upload_failed reason=no_file_selected")
            raise BadRequestError("No file selected")
        try:
            destination = save_upload(
                file_storage.filename, file_storage.stream, get_server_config()
            )
        except OSError as error:
            lifecycle_logger.exception(
                "upload_failed reason=io_error filename=%s error=%s",
                sanitize_log_value(file_storage.filename),
                sanitize_log_value(str(error)),
            )
            return _error_response("Error saving file", 500)

    lifecycle_logger.info(
        "file_uploaded filename=%s stored=%s",
        sanitize_log_value(file_storage.filename),
        sanitize_log_value(destination.name),
    )
    return redirect(url_for("index"), code=303)


@app.route("/<path:request_path>")
def browse(request_path: str):
    return _respond(resolve(request_path, get_server_config()))


def main() -> None:
    config: ServerConfig = app.config["SERVER_CONFIG"]
    port = config.port
    print(f"Server starting on http://localhost:{port}")
    for address in config.ip_addresses:
        print(f"Accessible at http://{address}:{port}")

    try:
        app.run(host="0.0.0.0", port=int(port), debug=False, threaded=True)
    except (OSError, ValueError) as error:
        logging.getLogger("dirshare.lifecycle").critical(
            "server_start_failed port=%s error=%s", port, error
        )
        raise SystemExit(1) from error


if __name__ == "__main__":
    main()
