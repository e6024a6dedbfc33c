import atexit
import io
import logging
import mimetypes
import os
import re
import secrets
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    has_request_context,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    session,
    stream_with_context,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.datastructures import FileStorage

from .api import ACCESS_TYPES, APIError, StorageAPIClient
from .auth import (
    TokenError,
    clear_token,
    current_claims,
    current_token,
    current_user_id,
    home_endpoint,
    is_admin,
    login_required,
    store_token,
    wants_json,
)
from .config import (
    BYTES_PER_MB,
    DATA_DIR,
    LOGS_DIR,
    SUPPORTED_LOCALES,
    api_root,
    ensure_directories,
    get_config_mtime,
    load_config,
    save_config,
)
from .i18n import counted, gettext, resolve_locale, translate
from .operations import (
    Selection,
    archive_filename,
    assign_access_type,
    copy_selection,
    delete_selection,
    download_selection,
    move_selection,
)
from .paths import (
    breadcrumbs,
    display_name,
    join_folder,
    normalize_folder,
    parent_folder,
    proxy_target,
    to_proxy,
)
from .uploads import UploadTracker, upload_file, upload_key
from .validation import (
    ValidationError,
    validate_email,
    validate_folder_name,
    validate_folder_prefix,
    validate_password,
    validate_username,
)

_CONFIG_CACHE: Dict[str, Any] = load_config()
_CONFIG_CACHE_MTIME: float = get_config_mtime()
_config_lock = threading.RLock()

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
PENDING_CREDENTIALS_TTL_SECONDS = 600
PROXY_CHUNK_BYTES = 64 * 1024
PROXY_FORWARDED_HEADERS = (
    "Content-Type",
    "Content-Length",
    "Content-Range",
    "Content-Disposition",
    "Accept-Ranges",
    "ETag",
    "Last-Modified",
    "Cache-Control",
)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logging.getLogger("filedesk.config").warning(
                "Secret key file exists but is empty, regenerating"
            )
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        logging.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        logging.getLogger("filedesk.config").critical(
            "SECURITY WARNING: Using in-memory secret key. Sessions will not persist across restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        return _CONTROL_CHAR_PATTERN.sub("", value)
    if isinstance(value, (list, tuple)):
        return [sanitize_log_value(item) for item in value]
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
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


APP_LOG_PATH = _configure_file_logging()


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return max(1, fallback)
    return max(1, parsed)


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


def _apply_upload_limit(config: Dict[str, Any]) -> None:
    flask_app = globals().get("app")
    if flask_app is None:
        return
    size_mb = max(1.0, float(config.get("max_upload_size_mb", 1)))
    flask_app.config["MAX_CONTENT_LENGTH"] = int(size_mb * BYTES_PER_MB)
    flask_app.config["MAX_UPLOAD_SIZE_MB"] = size_mb


def _apply_prune_schedule(config: Dict[str, Any]) -> None:
    global upload_ttl_minutes_setting

    new_interval = _coerce_positive_int(
        config.get("upload_record_ttl_minutes"), upload_ttl_minutes_setting
    )
    if new_interval == upload_ttl_minutes_setting:
        return
    upload_ttl_minutes_setting = new_interval

    sched = globals().get("scheduler")
    if sched is None:
        return
    try:
        sched.reschedule_job("prune_upload_records", trigger="interval", minutes=new_interval)
    except JobLookupError:
        sched.add_job(
            func=prune_upload_records,
            trigger="interval",
            minutes=new_interval,
            id="prune_upload_records",
            name="Prune finished upload records",
            replace_existing=True,
        )


def _apply_runtime_settings(config: Dict[str, Any]) -> None:
    _apply_upload_limit(config)
    _apply_prune_schedule(config)


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    with _config_lock:
        current_mtime = get_config_mtime()
        if not refresh and current_mtime > _CONFIG_CACHE_MTIME:
            refresh = True

        if refresh or _CONFIG_CACHE is None:
            _CONFIG_CACHE = load_config()
            _CONFIG_CACHE_MTIME = current_mtime

        if has_request_context():
            cached = getattr(g, "_app_config", None)
            if cached is None or refresh:
                g._app_config = _CONFIG_CACHE.copy()
            config = g._app_config
        else:
            config = _CONFIG_CACHE.copy()

    _apply_runtime_settings(config)
    return config


def login_rate_limit_string() -> str:
    config = get_config()
    value = _coerce_positive_int(config.get("login_rate_limit_per_minute"), 10)
    return f"{value} per minute"


upload_tracker = UploadTracker()
upload_ttl_minutes_setting = _coerce_positive_int(
    _CONFIG_CACHE.get("upload_record_ttl_minutes"), 30
)

app = Flask(__name__)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("FILEDESK_RATE_LIMIT_STORAGE", "memory://"),
)

app.config["MAX_CONTENT_LENGTH"] = int(
    _coerce_positive_int(_CONFIG_CACHE.get("max_upload_size_mb"), 500) * BYTES_PER_MB
)
app.config["SECRET_KEY"] = _load_secret_key()
_session_cookie_secure_override = _get_optional_bool_env("SESSION_COOKIE_SECURE")
if _session_cookie_secure_override is None:
    app.config["SESSION_COOKIE_SECURE"] = not app.config.get("TESTING", False)
else:
    app.config["SESSION_COOKIE_SECURE"] = _session_cookie_secure_override

if not app.config["SESSION_COOKIE_SECURE"] and not app.config.get("TESTING", False):
    logging.getLogger("filedesk.security").warning(
        "SECURITY WARNING: SESSION_COOKIE_SECURE is disabled. "
        "Cookies will be transmitted over unencrypted HTTP connections."
    )

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=12)
csrf = CSRFProtect(app)
app.logger.setLevel(numeric_level)

_base_lifecycle_logger = logging.getLogger("filedesk.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
security_logger = RequestAwareLogger(logging.getLogger("filedesk.security"))


def prune_upload_records() -> int:
    return upload_tracker.prune(upload_ttl_minutes_setting * 60)


scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(
    func=prune_upload_records,
    trigger="interval",
    minutes=upload_ttl_minutes_setting,
    id="prune_upload_records",
    name="Prune finished upload records",
    replace_existing=True,
)
scheduler.start()


def _shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)


atexit.register(_shutdown_scheduler)

_apply_runtime_settings(_CONFIG_CACHE)


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        try:
            file_storage.stream.close()
        except OSError as error:
            lifecycle_logger.warning(
                "stream_close_failed filename=%s error=%s",
                sanitize_log_value(file_storage.filename or "unknown"),
                sanitize_log_value(str(error)),
            )


def api_client(authenticated: bool = True) -> StorageAPIClient:
    config = get_config()
    return StorageAPIClient(
        api_root(config),
        token=current_token() if authenticated else None,
        timeout=config["request_timeout_seconds"],
    )


def proxied(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    config = get_config()
    return to_proxy(url, config["proxy_hosts"], config["proxy_prefix"])


def t(key: str, **values) -> str:
    return gettext(key, **values)


def _locale() -> str:
    return resolve_locale(get_config().get("default_locale", "en"))


def _counted_message(key: str, noun: str, count: int, **values) -> str:
    locale = _locale()
    values[f"{noun}s"] = counted(noun, count, locale)
    return translate(key, locale, count=count, **values)


def _session_expired_redirect() -> Response:
    clear_token()
    flash(t("session_expired"), "error")
    return redirect(url_for("login"))


def _flash_error(error: Exception, prefix_key: Optional[str] = None) -> None:
    message = getattr(error, "message", None) or str(error)
    if prefix_key:
        message = f"{t(prefix_key)}: {message}"
    flash(message, "error")


def _json_error(error: Exception) -> Response:
    if isinstance(error, ValidationError):
        return jsonify(error.to_payload()), 400
    if isinstance(error, APIError):
        if error.unauthorized:
            clear_token()
        return jsonify(error.to_payload()), error.status_code or 502
    raise error


def json_endpoint(view: Callable) -> Callable:
    """Translate validation and backend failures into JSON error responses."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        try:
            return view(*args, **kwargs)
        except (ValidationError, APIError) as error:
            lifecycle_logger.warning(
                "json_request_failed path=%s error=%s",
                sanitize_log_value(request.path),
                sanitize_log_value(getattr(error, "message", str(error))),
            )
            return _json_error(error)

    return wrapped


def _json_body() -> Dict[str, Any]:
    if not request.is_json:
        raise ValidationError("Content-Type must be application/json")
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValidationError("Expected a list of strings")
    return [item for item in value if isinstance(item, str)]


def _dashboard_redirect(path: str) -> Response:
    if path:
        return redirect(url_for("dashboard", path=path))
    return redirect(url_for("dashboard"))


def _store_pending_credentials(username: str, password: str) -> None:
    """Keep a server-generated password in the session until it is shown once."""

    session["pending_credentials"] = {
        "username": username,
        "password": password,
        "expires": time.time() + PENDING_CREDENTIALS_TTL_SECONDS,
    }
    session.modified = True


def _pop_pending_credentials() -> Optional[Dict[str, str]]:
    pending = session.pop("pending_credentials", None)
    if not isinstance(pending, dict):
        return None
    if pending.get("expires", 0) < time.time():
        return None
    return {"username": pending.get("username", ""), "password": pending.get("password", "")}


def _form_flag(name: str) -> bool:
    return request.form.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    g.default_locale = get_config().get("default_locale", "en")


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; "
        "connect-src 'self';"
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    if wants_json():
        return jsonify({"error": "File too large"}), 413
    flash("The uploaded file exceeds the allowed size limit.", "error")
    return redirect(request.referrer or url_for("dashboard")), 303


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    if wants_json():
        return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429
    flash("Too many requests. Please try again later.", "error")
    return redirect(url_for("login")), 303


@app.errorhandler(CSRFError)
def handle_csrf_error(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Invalid CSRF token")
    if wants_json():
        return jsonify({"error": description}), 400
    flash("Your session has expired or the form was invalid. Please try again.", "error")
    return redirect(request.referrer or url_for("login")), 303


@app.errorhandler(404)
def not_found(error):
    if wants_json():
        return jsonify({"error": "Not found"}), 404
    return render_template("404.html"), 404


@app.context_processor
def inject_ui_state():
    config = get_config()
    claims = current_claims()
    return {
        "t": t,
        "locale": _locale(),
        "locales": SUPPORTED_LOCALES,
        "authenticated": claims is not None,
        "is_admin": bool(claims and claims.get("is_admin")),
        "current_username": (claims or {}).get("username", ""),
        "success_message_ms": int(config["success_message_ms"]),
        "error_message_ms": int(config["error_message_ms"]),
        "current_year": datetime.now(tz=timezone.utc).year,
    }


@app.template_filter("human_datetime")
def human_datetime(value: Any) -> str:
    if value in (None, ""):
        return ""
    if isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return str(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


@app.template_filter("human_filesize")
def human_filesize(num: Optional[int]) -> str:
    if num is None:
        return ""
    if num < 1024:
        return f"{num} B"
    size = float(num)
    for unit in ["KB", "MB", "GB", "TB"]:
        size /= 1024.0
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}"
    return f"{size:.2f} PB"


@app.template_filter("display_name")
def display_name_filter(key: str) -> str:
    return display_name(key)


@app.route("/")
def index():
    if current_claims() is None:
        return redirect(url_for("login"))
    return redirect(url_for(home_endpoint()))


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        config = get_config()
        checks["config"] = "ok"
        checks["api_base_url"] = config["api_base_url"]
    except (OSError, ValueError) as error:
        checks["config"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        ensure_directories()
        probe_file = LOGS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["logs_writable"] = "ok"
    except OSError as error:
        checks["logs_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    job = scheduler.get_job("prune_upload_records")
    checks["scheduler_running"] = bool(scheduler.running)
    if job and job.next_run_time:
        checks["upload_pruning"] = "scheduled"
        checks["upload_pruning_next_run"] = job.next_run_time.isoformat()
    else:
        checks["upload_pruning"] = "not_scheduled"
    checks["tracked_uploads"] = len(upload_tracker)

    status = "healthy" if healthy else "unhealthy"
    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
            "version": "1.0.0",
        }
    ), (200 if healthy else 503)


@app.route("/lang/<code>")
def switch_language(code: str):
    if code in SUPPORTED_LOCALES:
        session["lang"] = code
    return redirect(request.referrer or url_for("index"))


@app.route("/login", methods=["GET", "POST"])
@limiter.limit(lambda: login_rate_limit_string(), methods=["POST"])
def login():
    if current_claims() is not None:
        next_url = session.pop("next_url", None)
        return redirect(next_url or url_for(home_endpoint()))

    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")
        try:
            token = api_client(authenticated=False).login(username, password)
            claims = store_token(token)
        except (APIError, TokenError) as error:
            security_logger.warning(
                "login_failed username=%s ip=%s error=%s",
                sanitize_log_value(username),
                request.remote_addr or "unknown",
                sanitize_log_value(str(error)),
            )
            flash(t("login_failed"), "error")
            return render_template("login.html", username=username), 401

        security_logger.info(
            "login_succeeded user_id=%s admin=%s ip=%s",
            claims.get("user_id"),
            claims.get("is_admin"),
            request.remote_addr or "unknown",
        )
        flash(t("login_success"), "success")
        next_url = session.pop("next_url", None)
        return redirect(next_url or url_for("admin_panel" if claims.get("is_admin") else "dashboard"))

    return render_template("login.html", username="")


@app.route("/logout", methods=["POST"])
def logout():
    clear_token()
    flash(t("logged_out"), "success")
    return redirect(url_for("login"))


# Administration


@app.route("/admin")
@login_required(admin_required=True)
def admin_panel():
    client = api_client()
    users: List[Dict[str, Any]] = []
    folders: List[str] = []
    try:
        users = client.list_users()
    except APIError as error:
        if error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_fetch_users")

    try:
        folders = client.list_all_folders()
    except APIError as error:
        lifecycle_logger.warning("folder_list_failed error=%s", sanitize_log_value(error.message))

    locale = _locale()
    return render_template(
        "admin.html",
        users=users,
        folders=folders,
        users_label=counted("user", len(users), locale),
        pending_credentials=_pop_pending_credentials(),
    )


@app.route("/admin/users", methods=["POST"])
@login_required(admin_required=True)
def create_user():
    form = request.form
    try:
        username = validate_username(form.get("username", ""))
        password = validate_password(form.get("password", ""))
        notify = _form_flag("notify_by_email")
        email = validate_email(form.get("email", ""), notify)
        result = api_client().create_user(
            username,
            password,
            form.get("alias", "").strip(),
            is_admin=_form_flag("is_admin"),
            email=email,
            notify_by_email=notify,
        )
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_create_user")
        return redirect(url_for("admin_panel"))

    lifecycle_logger.info(
        "user_created username=%s user_id=%s", sanitize_log_value(username), result["user_id"]
    )
    flash(t("user_created", username=username), "success")
    if result.get("password"):
        _store_pending_credentials(username, result["password"])
    return redirect(url_for("admin_panel"))


@app.route("/admin/users/<user_id>", methods=["POST"])
@login_required(admin_required=True)
def update_user(user_id: str):
    form = request.form
    username = form.get("username", "").strip() or user_id
    try:
        notify = _form_flag("notify_by_email")
        email = validate_email(form.get("email", ""), notify)
        api_client().update_user(user_id, form.get("alias", "").strip(), email, notify)
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_update_user")
        return redirect(url_for("admin_panel"))

    lifecycle_logger.info("user_updated user_id=%s notify=%s", sanitize_log_value(user_id), notify)
    flash(t("user_updated", username=username), "success")
    return redirect(url_for("admin_panel"))


@app.route("/admin/users/<user_id>/password", methods=["POST"])
@login_required(admin_required=True)
def reset_user_password(user_id: str):
    username = request.form.get("username", "").strip() or user_id
    try:
        password = validate_password(request.form.get("password", ""))
        result = api_client().reset_user_password(user_id, password)
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_reset_password")
        return redirect(url_for("admin_panel"))

    security_logger.info("password_reset user_id=%s", sanitize_log_value(user_id))
    flash(t("password_reset", username=username), "success")
    if result.get("password"):
        _store_pending_credentials(username, result["password"])
    return redirect(url_for("admin_panel"))


@app.route("/admin/users/<user_id>/delete", methods=["POST"])
@login_required(admin_required=True)
def delete_user(user_id: str):
    try:
        api_client().delete_user(user_id)
    except APIError as error:
        if error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_delete_user")
        return redirect(url_for("admin_panel"))

    lifecycle_logger.info("user_deleted user_id=%s", sanitize_log_value(user_id))
    flash(t("user_deleted"), "success")
    return redirect(url_for("admin_panel"))


@app.route("/admin/users/<user_id>/permissions", methods=["POST"])
@login_required(admin_required=True)
def grant_permission(user_id: str):
    client = api_client()
    try:
        user = client.get_user(user_id)
        prefix = validate_folder_prefix(request.form.get("folder_prefix", ""), user)
        client.assign_permission(user.get("id", user_id), prefix)
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_add_permission")
        return redirect(url_for("admin_panel"))

    lifecycle_logger.info(
        "permission_granted user_id=%s prefix=%s",
        sanitize_log_value(user_id),
        sanitize_log_value(prefix),
    )
    flash(t("permission_added"), "success")
    return redirect(url_for("admin_panel"))


@app.route("/admin/permissions/<permission_id>/revoke", methods=["POST"])
@login_required(admin_required=True)
def revoke_permission(permission_id: str):
    try:
        api_client().revoke_permission(permission_id)
    except APIError as error:
        if error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_revoke_permission")
        return redirect(url_for("admin_panel"))

    lifecycle_logger.info("permission_revoked permission_id=%s", sanitize_log_value(permission_id))
    flash(t("permission_revoked"), "success")
    return redirect(url_for("admin_panel"))


@app.route("/admin/self", methods=["POST"])
@login_required(admin_required=True)
def update_admin_self():
    raw_username = request.form.get("username", "").strip()
    raw_password = request.form.get("password", "")
    try:
        if not raw_username and not raw_password:
            raise ValidationError("Enter a new username or password.")
        username = validate_username(raw_username) if raw_username else ""
        password = validate_password(raw_password)
        api_client().update_admin_self(username, password)
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error, "error_update_admin")
        return redirect(url_for("admin_panel"))

    security_logger.info(
        "admin_self_updated user_id=%s username_changed=%s password_changed=%s",
        current_user_id(),
        bool(username),
        bool(password),
    )
    clear_token()
    flash(t("admin_updated"), "success")
    return redirect(url_for("login"))


@app.route("/settings", methods=["GET", "POST"])
@login_required(admin_required=True)
def settings():
    config = get_config()
    if request.method == "POST":
        updated = dict(config)
        updated["api_base_url"] = request.form.get("api_base_url", config["api_base_url"])
        updated["proxy_hosts"] = request.form.get("proxy_hosts", "")
        updated["proxy_prefix"] = request.form.get("proxy_prefix", config["proxy_prefix"])
        updated["default_locale"] = request.form.get("default_locale", config["default_locale"])
        for key in (
            "request_timeout_seconds",
            "success_message_ms",
            "error_message_ms",
            "login_rate_limit_per_minute",
            "max_upload_size_mb",
            "archive_max_files",
            "upload_record_ttl_minutes",
        ):
            raw_value = request.form.get(key)
            if raw_value is None or raw_value.strip() == "":
                continue
            try:
                updated[key] = float(raw_value)
            except ValueError:
                flash(f"{key.replace('_', ' ').capitalize()} must be a number.", "error")
                return render_template("settings.html", values=config), 400

        save_config(updated)
        config = get_config(refresh=True)
        lifecycle_logger.info(
            "settings_updated user_id=%s api_base_url=%s",
            current_user_id(),
            sanitize_log_value(config["api_base_url"]),
        )
        flash(t("settings_saved"), "success")
        return redirect(url_for("settings"))

    return render_template("settings.html", values=config)


# File manager


@app.route("/dashboard")
@login_required()
def dashboard():
    path = normalize_folder(request.args.get("path", ""))
    client = api_client()
    content: Optional[Dict[str, Any]] = None
    try:
        content = client.list_files(path)
    except APIError as error:
        if error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error)

    all_folders: List[str] = []
    if is_admin():
        try:
            all_folders = client.list_all_folders()
        except APIError as error:
            lifecycle_logger.warning("folder_list_failed error=%s", sanitize_log_value(error.message))

    return render_template(
        "dashboard.html",
        path=path,
        content=content,
        crumbs=breadcrumbs(path),
        parent=parent_folder(path) if path else None,
        all_folders=all_folders,
        access_types=ACCESS_TYPES,
        uploads=upload_tracker.list(owner=current_user_id()),
    )


@app.route("/dashboard/folders", methods=["POST"])
@login_required(admin_required=True)
def create_folder():
    path = normalize_folder(request.form.get("path", ""))
    try:
        name = validate_folder_name(request.form.get("name", ""))
        api_client().create_folder(join_folder(path, name))
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error)
        return _dashboard_redirect(path)

    lifecycle_logger.info("folder_created path=%s", sanitize_log_value(join_folder(path, name)))
    flash(t("folder_created", name=name), "success")
    return _dashboard_redirect(path)


@app.route("/dashboard/batch", methods=["POST"])
@login_required()
def batch_action():
    path = normalize_folder(request.form.get("path", ""))
    action = request.form.get("action", "")
    selection = Selection.from_values(request.form.getlist("items"))
    client = api_client()

    if action in {"move", "copy", "delete", "access"} and not is_admin():
        flash(t("admin_required"), "error")
        return _dashboard_redirect(path)

    try:
        if action == "download":
            config = get_config()
            result = download_selection(
                client,
                selection,
                base_path=path,
                max_files=int(config["archive_max_files"]),
                timeout=float(config["request_timeout_seconds"]),
            )
            if result.failed:
                flash(_counted_message("archive_partial", "file", len(result.failed)), "error")
            lifecycle_logger.info(
                "archive_downloaded items=%d added=%d failed=%d",
                selection.count,
                len(result.added),
                len(result.failed),
            )
            response = send_file(
                io.BytesIO(result.data),
                mimetype="application/zip",
                as_attachment=True,
                download_name=archive_filename(selection),
            )
            response.headers["X-Archive-Failed"] = str(len(result.failed))
            return response

        if action == "move":
            move_selection(client, selection, request.form.get("destination", ""))
            flash(_counted_message("items_moved", "item", selection.count), "success")
        elif action == "copy":
            copy_selection(client, selection, request.form.get("destination", ""))
            flash(_counted_message("items_copied", "item", selection.count), "success")
        elif action == "delete":
            delete_selection(client, selection)
            flash(_counted_message("items_deleted", "item", selection.count), "success")
        elif action == "access":
            assign_access_type(client, selection, request.form.get("access_type", ""))
            flash(_counted_message("access_updated", "file", len(selection.keys)), "success")
        else:
            flash(t("unknown_action"), "error")
            return _dashboard_redirect(path)
    except (ValidationError, APIError) as error:
        if isinstance(error, APIError) and error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error)
        return _dashboard_redirect(path)

    lifecycle_logger.info(
        "batch_completed action=%s items=%s",
        action,
        sanitize_log_value(selection.items),
    )
    return _dashboard_redirect(path)


@app.route("/dashboard/upload", methods=["POST"])
@login_required(admin_required=True)
def upload_files():
    path = normalize_folder(request.form.get("path", ""))
    files = [item for item in request.files.getlist("files") if item and item.filename]
    if not files:
        if wants_json():
            return jsonify({"error": t("nothing_selected")}), 400
        flash(t("nothing_selected"), "error")
        return _dashboard_redirect(path)

    client = api_client()
    records: List[Dict[str, Any]] = []
    failures = 0
    for file_storage in files:
        with upload_stream_handler(file_storage) as upload:
            try:
                key = upload_key(path, upload.filename or "")
            except ValueError as error:
                failures += 1
                flash(t("upload_failed", name=upload.filename, error=str(error)), "error")
                continue
            record = upload_tracker.create(current_user_id(), upload.filename or key, key, None)
            content_type = (
                upload.mimetype
                or mimetypes.guess_type(upload.filename or "")[0]
                or "application/octet-stream"
            )
            try:
                record = upload_file(client, upload_tracker, record, upload.stream, content_type)
            except APIError as error:
                failures += 1
                record = upload_tracker.get(record["id"]) or record
                if error.unauthorized:
                    return _session_expired_redirect()
                flash(t("upload_failed", name=upload.filename, error=error.message), "error")
            records.append(record)

    succeeded = len(files) - failures
    lifecycle_logger.info(
        "upload_batch_finished path=%s files=%d failed=%d",
        sanitize_log_value(path),
        len(files),
        failures,
    )
    if wants_json():
        return jsonify({"uploads": records}), (201 if not failures else 207)
    if succeeded:
        flash(_counted_message("files_uploaded", "file", succeeded), "success")
    return _dashboard_redirect(path)


@app.route("/files/open")
@login_required()
def open_file():
    key = request.args.get("key", "")
    if not key:
        abort(404)
    try:
        result = api_client().presign(key)
    except APIError as error:
        if error.unauthorized:
            return _session_expired_redirect()
        _flash_error(error)
        return _dashboard_redirect(parent_folder(key))

    if result["status"] == "converted":
        return redirect(url_for("view_file", fileKey=key))
    if not result["url"]:
        flash(t("viewer_unavailable"), "error")
        return _dashboard_redirect(parent_folder(key))
    lifecycle_logger.info("file_opened key=%s", sanitize_log_value(key))
    return redirect(proxied(result["url"]))


@app.route("/view")
@login_required()
def view_file():
    key = request.args.get("fileKey", "")
    back_url = url_for("dashboard", path=parent_folder(key)) if key else url_for("dashboard")
    if not key:
        return render_template("view.html", error=t("viewer_unavailable"), back_url=back_url), 400

    try:
        result = api_client().presign(key)
    except APIError as error:
        if error.unauthorized:
            return _session_expired_redirect()
        return render_template("view.html", error=error.message, back_url=back_url), 502

    if result["status"] != "converted" or not result["pages"]:
        return render_template("view.html", error=t("viewer_unavailable"), back_url=back_url), 415

    pages = [proxied(page) for page in result["pages"]]
    return render_template(
        "view.html",
        file_name=display_name(key) or "File",
        pages=pages,
        back_url=back_url,
        error=None,
    )


@app.route("/s3proxy/<path:object_path>")
@login_required()
def storage_proxy(object_path: str):
    config = get_config()
    if not config["proxy_hosts"]:
        abort(404)
    target = proxy_target(object_path, request.query_string.decode("utf-8"), config["proxy_hosts"][0])
    headers = {}
    if request.headers.get("Range"):
        headers["Range"] = request.headers["Range"]

    try:
        upstream = requests.get(
            target, headers=headers, stream=True, timeout=config["request_timeout_seconds"]
        )
    except requests.RequestException as error:
        lifecycle_logger.error("proxy_failed path=%s error=%s", sanitize_log_value(object_path), error)
        return jsonify({"error": "Storage is unreachable"}), 502

    def generate() -> Iterator[bytes]:
        try:
            for chunk in upstream.iter_content(chunk_size=PROXY_CHUNK_BYTES):
                if chunk:
                    yield chunk
        finally:
            upstream.close()

    response = Response(stream_with_context(generate()), status=upstream.status_code)
    for header in PROXY_FORWARDED_HEADERS:
        if header in upstream.headers:
            response.headers[header] = upstream.headers[header]
    return response


# JSON endpoints used by the dashboard scripts


@app.route("/api/files")
@login_required()
@json_endpoint
def api_list_files():
    path = normalize_folder(request.args.get("path", ""))
    content = api_client().list_files(path)
    for entry in content["files"]:
        entry["url"] = proxied(entry["url"])
    return jsonify(content)


@app.route("/api/storage/folders", methods=["POST"])
@login_required(admin_required=True)
@json_endpoint
def api_create_folder():
    data = _json_body()
    name = validate_folder_name(str(data.get("name", "")))
    folder = join_folder(str(data.get("path", "")), name)
    message = api_client().create_folder(folder)
    return jsonify({"message": message or t("folder_created", name=name), "path": folder}), 201


@app.route("/api/storage/<action>", methods=["POST"])
@login_required(admin_required=True)
@json_endpoint
def api_move_or_copy(action: str):
    if action not in {"move", "copy"}:
        abort(404)
    data = _json_body()
    items = _string_list(data.get("items", data.get("sources")))
    selection = Selection.from_values(items)
    destination = str(data.get("destination", ""))
    operation = move_selection if action == "move" else copy_selection
    message = operation(api_client(), selection, destination)
    lifecycle_logger.info(
        "batch_completed action=%s items=%s", action, sanitize_log_value(selection.items)
    )
    return jsonify({"message": message, "items": selection.items, "destination": normalize_folder(destination)})


@app.route("/api/storage/items", methods=["DELETE"])
@login_required(admin_required=True)
@json_endpoint
def api_delete_items():
    data = _json_body()
    selection = Selection.from_parts(_string_list(data.get("keys")), _string_list(data.get("folders")))
    message = delete_selection(api_client(), selection)
    lifecycle_logger.info("batch_completed action=delete items=%s", sanitize_log_value(selection.items))
    return jsonify({"message": message, "deleted": selection.items})


@app.route("/api/storage/access", methods=["PUT"])
@login_required(admin_required=True)
@json_endpoint
def api_set_access_type():
    data = _json_body()
    selection = Selection.from_values(_string_list(data.get("keys")))
    access_type = str(data.get("access_type", ""))
    message = assign_access_type(api_client(), selection, access_type)
    return jsonify({"message": message, "keys": selection.keys, "access_type": access_type})


@app.route("/api/archive", methods=["POST"])
@login_required()
@json_endpoint
def api_archive():
    data = _json_body()
    selection = Selection.from_parts(_string_list(data.get("keys")), _string_list(data.get("folders")))
    config = get_config()
    result = download_selection(
        api_client(),
        selection,
        base_path=str(data.get("base_path", "")),
        max_files=int(config["archive_max_files"]),
        timeout=float(config["request_timeout_seconds"]),
    )
    response = send_file(
        io.BytesIO(result.data),
        mimetype="application/zip",
        as_attachment=True,
        download_name=archive_filename(selection),
    )
    response.headers["X-Archive-Failed"] = str(len(result.failed))
    return response


@app.route("/uploads")
@login_required()
def list_uploads():
    return jsonify({"uploads": upload_tracker.list(owner=current_user_id())})


@app.route("/uploads/<upload_id>")
@login_required()
def get_upload(upload_id: str):
    record = upload_tracker.get(upload_id, owner=current_user_id())
    if record is None:
        return jsonify({"error": "Upload not found"}), 404
    return jsonify(record)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
