"""Flask app - routes, middleware and background status checks."""

import logging
import sqlite3
import os
import threading
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional, Tuple, Union

from flask import Flask, jsonify, request, session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.wrappers import Response

from requestarr.acquisition.readarr import ReadarrBackend, build_readarr_backend
from requestarr.config.env import (
    BUILD_VERSION, CONFIG_DIR, DEBUG, FLASK_HOST, FLASK_PORT,
    SESSION_COOKIE_NAME, SESSION_COOKIE_SECURE, START_BACKGROUND_JOBS, USERS_DB_FILE,
    config_dir_writable,
)
from requestarr.core.acquisition import AcquisitionBackend
from requestarr.core.config import config as app_config
from requestarr.core.logger import setup_logger
from requestarr.core.notifications import NotificationEvent, normalize_routes, send_test_notification
from requestarr.core.request_routes import notify_request_event, register_request_routes
from requestarr.core.status_check import DEFAULT_MAX_WORKERS, StatusCheckScheduler, run_status_check
from requestarr.core.user_db import UserDB, sync_builtin_admin_user
from requestarr.core.webhook_routes import register_webhook_routes
from requestarr.metadata_providers import get_provider, list_providers

logger = setup_logger(__name__)

app = Flask(__name__)
app.wsgi_app = ProxyFix(app.wsgi_app)  # type: ignore

# Initialize user database. If CONFIG_DIR is missing or read-only the request
# workflow is disabled but health and metadata endpoints still work.
user_db: Optional[UserDB] = None
try:
    user_db = UserDB(str(USERS_DB_FILE))
    user_db.initialize()
    app_config.set_user_settings_loader(user_db.get_user_settings)
except (sqlite3.OperationalError, OSError) as e:
    logger.warning(
        f"User database initialization failed: {e}. "
        f"Request workflow will be disabled. "
        f"Ensure CONFIG_DIR ({CONFIG_DIR}) exists and is writable."
    )
    user_db = None


def _seed_admin_user() -> None:
    username = app_config.get("ADMIN_USERNAME", "")
    password = app_config.get("ADMIN_PASSWORD", "")
    if user_db is None or not username or not password:
        return
    existing = user_db.get_user(username=username.strip())
    if existing and existing.get("password_hash") and check_password_hash(existing["password_hash"], password):
        if existing.get("role") == "admin":
            return
        password_hash = existing["password_hash"]
    else:
        password_hash = generate_password_hash(password)
    sync_builtin_admin_user(user_db, username, password_hash)


_seed_admin_user()


# Acquisition backend, rebuilt whenever its Readarr settings change
_backend_lock = threading.Lock()
_backend: Optional[AcquisitionBackend] = None
_backend_signature: Optional[Tuple[Any, ...]] = None
_BACKEND_KEYS = (
    "READARR_URL",
    "READARR_API_KEY",
    "READARR_TIMEOUT",
    "READARR_QUALITY_PROFILE_ID",
    "READARR_METADATA_PROFILE_ID",
    "READARR_ROOT_FOLDER",
)


def get_acquisition_backend() -> Optional[AcquisitionBackend]:
    """Return the configured acquisition backend, or None when Readarr is not set up."""
    global _backend, _backend_signature
    signature = tuple(app_config.get(key) for key in _BACKEND_KEYS)
    with _backend_lock:
        if signature != _backend_signature:
            _backend = build_readarr_backend()
            _backend_signature = signature
        return _backend


if user_db is not None:
    register_request_routes(app, user_db, get_backend=lambda: get_acquisition_backend())
    register_webhook_routes(app, user_db)


def _scheduled_status_check() -> None:
    backend = get_acquisition_backend()
    if backend is None or user_db is None:
        logger.debug("Skipping scheduled status check: Readarr or user database unavailable")
        return
    run_status_check(
        user_db,
        backend,
        max_workers=app_config.get("STATUS_CHECK_WORKERS", DEFAULT_MAX_WORKERS),
        on_downloaded=lambda row: notify_request_event(
            user_db,
            event=NotificationEvent.BOOK_DOWNLOADED,
            request_row=row,
        ),
    )


status_scheduler = StatusCheckScheduler(
    app_config.get("STATUS_CHECK_INTERVAL", 900),
    _scheduled_status_check,
)

MAX_LOGIN_ATTEMPTS = 10
LOCKOUT_DURATION_MINUTES = 30


class LoginThrottle:
    """In-memory failed-login counter keyed by username.

    Reaching ``max_attempts`` locks the username for ``lockout`` and the counter
    starts over once the lock expires.
    """

    def __init__(self, max_attempts: int, lockout: timedelta):
        self.max_attempts = max_attempts
        self.lockout = lockout
        self._lock = threading.Lock()
        self._failures: Dict[str, int] = {}
        self._locked_until: Dict[str, datetime] = {}

    def locked_until(self, username: str) -> Optional[datetime]:
        with self._lock:
            until = self._locked_until.get(username)
            if until is None:
                return None
            if until <= datetime.now():
                logger.info(f"Lockout expired for user: {username}")
                self._locked_until.pop(username, None)
                self._failures.pop(username, None)
                return None
            return until

    def record_failure(self, username: str, ip_address: str) -> int:
        """Count a failure and return the attempts left (0 means now locked)."""
        with self._lock:
            failures = self._failures.get(username, 0) + 1
            self._failures[username] = failures
            logger.warning(
                f"Failed login attempt {failures}/{self.max_attempts} for user '{username}' from IP {ip_address}"
            )
            if failures >= self.max_attempts:
                until = datetime.now() + self.lockout
                self._locked_until[username] = until
                logger.warning(f"Account locked for user '{username}' until {until:%Y-%m-%d %H:%M:%S}")
                return 0
            return self.max_attempts - failures

    def clear(self, username: str) -> None:
        with self._lock:
            self._failures.pop(username, None)
            self._locked_until.pop(username, None)


login_throttle = LoginThrottle(MAX_LOGIN_ATTEMPTS, timedelta(minutes=LOCKOUT_DURATION_MINUTES))


def get_client_ip() -> str:
    """First hop of X-Forwarded-For, falling back to the socket peer."""
    forwarded = request.headers.get('X-Forwarded-For', '')
    ip_address = forwarded.split(',')[0].strip() if forwarded else ''
    return ip_address or request.remote_addr or 'unknown'


# Enable CORS in development mode for local frontend development
if DEBUG:
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:3000", "http://127.0.0.1:3000"],
            "supports_credentials": True,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
        }
    })


class LogNoiseFilter(logging.Filter):
    """Drop health-check polling from the werkzeug access log."""

    def filter(self, record):
        message = record.getMessage() if hasattr(record, 'getMessage') else str(record.msg)
        return 'GET /api/health' not in message


# Flask logger
app.logger.handlers = logger.handlers
app.logger.setLevel(logger.level)
werkzeug_logger = logging.getLogger('werkzeug')
werkzeug_logger.handlers = logger.handlers
werkzeug_logger.setLevel(logger.level)
werkzeug_logger.addFilter(LogNoiseFilter())

# The secret key resets on restart unless SECRET_KEY is configured

app.config.update(
    SECRET_KEY=app_config.get("SECRET_KEY", "") or os.urandom(64),
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE='Lax',
    SESSION_COOKIE_SECURE=SESSION_COOKIE_SECURE,
    SESSION_COOKIE_NAME=SESSION_COOKIE_NAME,
    PERMANENT_SESSION_LIFETIME=604800,  # 7 days
)


@app.after_request
def set_security_headers(response: Response) -> Response:
    """Add baseline security headers to every response."""
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    if isinstance(error, HTTPException):
        return jsonify({"error": error.description}), error.code or 500
    logger.error_trace(f"Unhandled error on {request.method} {request.path}: {error}")
    return jsonify({"error": "Internal Server Error"}), 500


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'db_user_id' not in session:
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'db_user_id' not in session:
            return jsonify({"error": "Unauthorized"}), 401
        if not session.get('is_admin', False):
            return jsonify({"error": "Admin access required"}), 403
        return f(*args, **kwargs)
    return decorated_function


@app.route('/api/health', methods=['GET'])
def api_health() -> Union[Response, Tuple[Response, int]]:
    """Health check endpoint for container orchestration. No authentication required."""
    response: Dict[str, Any] = {"status": "ok", "version": BUILD_VERSION}
    degraded: Dict[str, str] = {}
    if user_db is None:
        degraded["requests"] = "User database unavailable - request workflow disabled"
    if not app_config.get("READARR_URL", "") or not app_config.get("READARR_API_KEY", ""):
        degraded["readarr"] = "Readarr not configured - approvals will record an error"
    if degraded:
        response["degraded"] = degraded
    return jsonify(response)


def _failed_login_response(username: str, ip_address: str) -> Tuple[Response, int]:
    remaining = login_throttle.record_failure(username, ip_address)
    if remaining == 0:
        return jsonify({
            "error": f"Account locked after {MAX_LOGIN_ATTEMPTS} failed attempts. "
                     f"Try again in {LOCKOUT_DURATION_MINUTES} minutes."
        }), 429
    if remaining <= 5:
        return jsonify({"error": f"Invalid username or password. {remaining} attempts remaining."}), 401
    return jsonify({"error": "Invalid username or password."}), 401


@app.route('/api/auth/login', methods=['POST'])
def api_login() -> Union[Response, Tuple[Response, int]]:
    """
    Validate credentials against the user database and start a session.

    Request Body:
        username (str): Username
        password (str): Password
        remember_me (bool): Keep the session for PERMANENT_SESSION_LIFETIME
    """
    ip_address = get_client_ip()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "No data provided"}), 400

    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')
    if not username or not password:
        return jsonify({"error": "Username and password are required"}), 400

    locked_until = login_throttle.locked_until(username)
    if locked_until is not None:
        minutes = max(1, int((locked_until - datetime.now()).total_seconds() // 60))
        logger.warning(f"Blocked login for locked account '{username}' from IP {ip_address}")
        return jsonify({"error": f"Account temporarily locked. Try again in {minutes} minutes."}), 429

    if user_db is None:
        logger.error("User database not available for login")
        return jsonify({"error": "Authentication service unavailable"}), 503

    db_user = user_db.get_user(username=username)
    stored_hash = (db_user or {}).get("password_hash")
    if not stored_hash or not check_password_hash(stored_hash, password):
        return _failed_login_response(username, ip_address)

    is_admin = db_user["role"] == "admin"
    session.update(user_id=username, db_user_id=db_user["id"], is_admin=is_admin)
    session.permanent = bool(data.get('remember_me', False))
    login_throttle.clear(username)
    logger.info(f"Login successful for user '{username}' from IP {ip_address} (is_admin={is_admin})")
    return jsonify({"success": True, "is_admin": is_admin})


@app.route('/api/auth/logout', methods=['POST'])
def api_logout() -> Union[Response, Tuple[Response, int]]:
    username = session.get('user_id', 'unknown')
    session.clear()
    logger.info(f"Logout successful for user '{username}' from IP {get_client_ip()}")
    return jsonify({"success": True})


@app.route('/api/auth/check', methods=['GET'])
def api_auth_check() -> Union[Response, Tuple[Response, int]]:
    is_authenticated = 'db_user_id' in session
    return jsonify({
        "authenticated": is_authenticated,
        "is_admin": bool(session.get('is_admin', False)) if is_authenticated else False,
        "username": session.get('user_id') if is_authenticated else None,
    })


@app.route('/api/metadata/providers', methods=['GET'])
@login_required
def api_metadata_providers() -> Union[Response, Tuple[Response, int]]:
    return jsonify(list_providers())


@app.route('/api/metadata/search', methods=['GET'])
@login_required
def api_metadata_search() -> Union[Response, Tuple[Response, int]]:
    """
    Search a metadata provider.

    Query Parameters:
        query (str): Free-text search
        source (str): Provider name, defaults to "google"
        limit (int): Maximum results (1-40)
    """
    query = (request.args.get('query') or request.args.get('q') or '').strip()
    if not query:
        return jsonify({"error": "query is required"}), 400
    source = (request.args.get('source') or 'google').strip()
    limit = max(1, min(request.args.get('limit', type=int, default=20) or 20, 40))

    try:
        provider = get_provider(source)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if not provider.is_available():
        return jsonify({"error": f"{provider.display_name} is not available"}), 503

    results = provider.search(query, limit=limit)
    return jsonify([book.to_dict() for book in results])


@app.route('/api/metadata/book/<source>/<path:book_id>', methods=['GET'])
@login_required
def api_metadata_book(source: str, book_id: str) -> Union[Response, Tuple[Response, int]]:
    try:
        provider = get_provider(source)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    book = provider.get_book(book_id)
    if book is None:
        return jsonify({"error": "Book not found"}), 404
    return jsonify(book.to_dict())


@app.route('/api/admin/readarr/test', methods=['POST'])
@admin_required
def api_test_readarr() -> Union[Response, Tuple[Response, int]]:
    backend = get_acquisition_backend()
    if not isinstance(backend, ReadarrBackend):
        return jsonify({"success": False, "message": "Readarr is not configured"}), 503
    success, message = backend.client.test_connection()
    return jsonify({"success": success, "message": message}), (200 if success else 502)


@app.route('/api/admin/notifications/test', methods=['POST'])
@admin_required
def api_test_notification() -> Union[Response, Tuple[Response, int]]:
    data = request.get_json(silent=True) or {}
    urls = data.get('urls') if isinstance(data, dict) else None
    if not isinstance(urls, list):
        return jsonify({"error": "urls must be an array of Apprise URLs"}), 400
    result = send_test_notification(urls)
    return jsonify(result), (200 if result.get("success") else 400)


# Settings a regular user may override for themselves
USER_SETTING_KEYS = ("USER_NOTIFICATION_ROUTES",)


@app.route('/api/users/me/settings', methods=['GET', 'PUT'])
@login_required
def api_my_settings() -> Union[Response, Tuple[Response, int]]:
    """
    Read or update the caller's own overrides.

    PUT Body:
        USER_NOTIFICATION_ROUTES (list): ``{"event", "url"}`` rows, or null to clear
    """
    if user_db is None:
        return jsonify({"error": "User database unavailable"}), 503
    db_user_id = session['db_user_id']

    if request.method == 'PUT':
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return jsonify({"error": "Settings object required"}), 400
        unknown = sorted(set(data) - set(USER_SETTING_KEYS))
        if unknown:
            return jsonify({"error": f"Unsupported settings: {', '.join(unknown)}"}), 400
        routes = data.get("USER_NOTIFICATION_ROUTES")
        if routes is not None and not isinstance(routes, list):
            return jsonify({"error": "USER_NOTIFICATION_ROUTES must be an array"}), 400
        updates = {"USER_NOTIFICATION_ROUTES": normalize_routes(routes) if routes is not None else None}
        user_db.set_user_settings(db_user_id, updates)
        logger.info(f"User {session.get('user_id')} updated notification routes")

    stored = user_db.get_user_settings(db_user_id)
    return jsonify({key: stored.get(key, []) for key in USER_SETTING_KEYS})


# Warn if config directory is not writable (settings won't persist)
if not config_dir_writable():
    logger.warning(
        f"Config directory {CONFIG_DIR} is not writable. Settings and requests will not persist."
    )

if START_BACKGROUND_JOBS and user_db is not None:
    status_scheduler.start()

if __name__ == '__main__':
    logger.info(f"Starting Flask application on {FLASK_HOST}:{FLASK_PORT} (debug={DEBUG})")
    app.run(host=FLASK_HOST, port=FLASK_PORT, debug=DEBUG, use_reloader=False)
