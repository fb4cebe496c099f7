import logging
import mimetypes
import os
import time
import uuid
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
)
from flask.cli import FlaskGroup
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import NotFound as WerkzeugNotFound
from werkzeug.exceptions import RequestEntityTooLarge

from .cleanup import start_cleanup
from .cli import register_cli
from .config import BYTES_PER_MB, Settings
from .context import EXTENSION_KEY, ShareContext, get_context
from .errors import BadRequest, NotFound, ShareError
from .logs import RequestAwareLogger, configure_logging, sanitize_log_value
from .migrate import bootstrap
from .qr import MAX_TEXT_LENGTH, MIN_TEXT_LENGTH, clamp_scale, make_qr_svg
from .storage import StoredFile, db_now, get_active_file, get_file_by_filename
from .uploads import authorize_upload, store_upload

# Multipart framing on top of the largest accepted file.
MULTIPART_SLACK_BYTES = BYTES_PER_MB

PERMANENT_CACHE_CONTROL = "public, max-age=31536000, immutable"
TEMP_CACHE_MAX_AGE_SECONDS = 3600

LINK_PREVIEW_AGENTS = (
    "discordbot",
    "slackbot",
    "twitterbot",
    "facebookexternalhit",
    "linkedinbot",
    "telegrambot",
    "whatsapp",
    "skypeuripreview",
    "bitlybot",
    "vkshare",
    "pinterest",
    "redditbot",
    "quora link preview",
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-API-Key, X-Request-ID",
}

lifecycle_logger = RequestAwareLogger(logging.getLogger("sharehost.lifecycle"))

bp = Blueprint("share", __name__)


def upload_rate_limit_string() -> str:
    return get_context().settings.upload_rate_limit


def qrcode_rate_limit_string() -> str:
    return get_context().settings.qrcode_rate_limit


def is_link_preview_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    agent = user_agent.lower()
    return any(marker in agent for marker in LINK_PREVIEW_AGENTS)


def guess_mimetype(filename: str) -> str:
    mimetype, _ = mimetypes.guess_type(filename)
    return mimetype or "application/octet-stream"


def cache_control_for(record: StoredFile, now: float) -> str:
    """Long-lived immutable caching for permanent files; temporary files are
    cached for at most an hour and never past their expiry."""

    if record.expires_at is None:
        return PERMANENT_CACHE_CONTROL
    remaining = max(0, int(record.expires_at - now))
    return f"public, max-age={min(TEMP_CACHE_MAX_AGE_SECONDS, remaining)}"


def _send_blob(record: StoredFile, cache_control: str) -> Response:
    context = get_context()
    path = context.blobs.resolve(record.filename, record.is_temp)
    if path is None or not path.is_file():
        lifecycle_logger.warning(
            "file_blob_missing key=%s filename=%s",
            record.key,
            sanitize_log_value(record.filename),
        )
        raise NotFound()
    try:
        response = send_file(
            path,
            mimetype=guess_mimetype(record.filename),
            as_attachment=False,
            conditional=True,
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "file_blob_missing_race key=%s filename=%s",
            record.key,
            sanitize_log_value(record.filename),
        )
        raise NotFound()
    response.headers["Cache-Control"] = cache_control
    return response


@bp.route("/")
def index():
    settings = get_context().settings
    return render_template(
        "index.html",
        max_file_size=settings.max_file_size_mb,
        max_temp_file_size=settings.max_temp_file_size_mb,
        max_ttl_hours=settings.max_ttl_hours,
    )


@bp.route("/health")
def health_check():
    context = get_context()
    checks: Dict[str, Any] = {}
    healthy = True

    if context.db.ping():
        checks["database"] = "ok"
    else:
        checks["database"] = "error"
        healthy = False

    if os.access(context.blobs.root, os.W_OK):
        checks["uploads_writable"] = "ok"
    else:
        checks["uploads_writable"] = "error"
        healthy = False

    scheduler = context.scheduler
    next_run = scheduler.next_run_time() if scheduler is not None else None
    if next_run is not None:
        checks["cleanup"] = "scheduled"
        checks["cleanup_next_run"] = next_run.isoformat()
    else:
        checks["cleanup"] = "not_scheduled"

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@bp.route("/upload", methods=["POST"], provide_automatic_options=False)
def upload():
    access_key = request.args.get("key") or request.headers.get("X-API-Key")
    # Touching request.form reads the body; unauthorized callers never get that far.
    authorize_upload(get_context(), access_key)

    ttl_raw = request.form.get("ttl")
    if ttl_raw is None:
        ttl_raw = request.args.get("ttl")

    result = store_upload(get_context(), access_key, request.files.get("file"), ttl_raw)

    response = jsonify(result.to_payload())
    response.headers["Access-Control-Allow-Origin"] = CORS_HEADERS[
        "Access-Control-Allow-Origin"
    ]
    return response, 200


@bp.route("/upload", methods=["OPTIONS"])
def upload_preflight():
    response = Response(status=204)
    response.headers.update(CORS_HEADERS)
    response.headers["Access-Control-Max-Age"] = "86400"
    return response


@bp.route("/qrcode")
def qrcode_svg():
    text = (request.args.get("text") or "").strip()
    if not MIN_TEXT_LENGTH <= len(text) <= MAX_TEXT_LENGTH:
        raise BadRequest(
            f"text must be between {MIN_TEXT_LENGTH} and {MAX_TEXT_LENGTH} chars"
        )
    svg = make_qr_svg(text, clamp_scale(request.args.get("scale", 1)))
    response = Response(svg, mimetype="image/svg+xml")
    response.headers["Cache-Control"] = PERMANENT_CACHE_CONTROL
    return response


@bp.route("/<key>")
def retrieve(key: str):
    context = get_context()
    with context.db.connect() as conn:
        record = get_active_file(conn, key)
        now = db_now(conn)
    if record is None:
        lifecycle_logger.info("file_lookup_missing key=%s", sanitize_log_value(key))
        raise NotFound()

    mimetype = guess_mimetype(record.filename)
    cache_control = cache_control_for(record, now)
    blob_url = context.blob_url(record.filename, record.is_temp)

    if mimetype.startswith("image/") and is_link_preview_agent(
        request.headers.get("User-Agent")
    ):
        lifecycle_logger.info("file_preview_rendered key=%s", record.key)
        response = current_app.make_response(
            render_template(
                "preview.html",
                image_url=blob_url,
                page_url=context.share_url(record.key),
                mimetype=mimetype,
                title=record.original_name or record.filename,
            )
        )
        response.headers["Cache-Control"] = cache_control
        return response

    if context.settings.should_redirect:
        lifecycle_logger.info("file_redirected key=%s", record.key)
        response = redirect(
            context.blobs.url_path(record.filename, record.is_temp), code=302
        )
        response.headers["Cache-Control"] = cache_control
        return response

    lifecycle_logger.info("file_served key=%s", record.key)
    return _send_blob(record, cache_control)


def _serve_upload(filename: str, temporary: bool):
    context = get_context()
    if not context.settings.serve_uploads:
        raise NotFound()
    if context.blobs.resolve(filename, temporary) is None:
        raise NotFound()

    with context.db.connect() as conn:
        record = get_file_by_filename(conn, filename)
        now = db_now(conn)
    if record is None or record.is_temp != temporary:
        lifecycle_logger.info(
            "blob_lookup_missing filename=%s", sanitize_log_value(filename)
        )
        raise NotFound()
    if record.expires_at is not None and record.expires_at <= now:
        lifecycle_logger.info("blob_blocked_expired key=%s", record.key)
        raise NotFound()
    return _send_blob(record, cache_control_for(record, now))


@bp.route("/uploads/<filename>")
def serve_upload(filename: str):
    return _serve_upload(filename, temporary=False)


@bp.route("/uploads/temp/<filename>")
def serve_temp_upload(filename: str):
    return _serve_upload(filename, temporary=True)


RATE_LIMITED_ENDPOINTS = (
    ("share.upload", upload_rate_limit_string),
    ("share.qrcode_svg", qrcode_rate_limit_string),
)


def _init_rate_limits(app: Flask) -> Limiter:
    """Attach a limiter owned by *app* and wrap the throttled views with it."""

    limiter = Limiter(get_remote_address, app=app)
    for endpoint, limit_value in RATE_LIMITED_ENDPOINTS:
        app.view_functions[endpoint] = limiter.limit(limit_value)(
            app.view_functions[endpoint]
        )
    return limiter


def _register_hooks(app: Flask) -> None:
    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def log_request_completion(response: Response):
        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
        )
        return response

    @app.after_request
    def add_security_headers(response: Response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response

    @app.after_request
    def add_request_id_header(response: Response):
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = sanitize_log_value(g.request_id)
        return response


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ShareError)
    def handle_share_error(error: ShareError):
        if error.status_code >= 500:
            lifecycle_logger.error(
                "request_failed path=%s error_type=%s error=%s",
                sanitize_log_value(request.path),
                type(error).__name__,
                error,
            )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def handle_file_too_large(error):
        lifecycle_logger.warning(
            "upload_rejected reason=content_length content_length=%s",
            request.content_length,
        )
        return jsonify({"error": "File too large"}), 413

    @app.errorhandler(429)
    def handle_rate_limit(error):
        description = getattr(error, "description", "Too many requests")
        lifecycle_logger.warning(
            "rate_limited path=%s ip=%s",
            sanitize_log_value(request.path),
            request.remote_addr or "unknown",
        )
        return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429

    @app.errorhandler(WerkzeugNotFound)
    def not_found(error):
        return jsonify(NotFound().to_payload()), 404


def create_app(
    settings: Optional[Settings] = None, test_config: Optional[Dict[str, Any]] = None
) -> Flask:
    """Build the application and its service context.

    ``settings`` defaults to :meth:`Settings.from_env`. ``test_config`` is
    merged into ``app.config`` before anything starts; ``TESTING`` or
    ``START_CLEANUP=False`` keep the expiry sweeper from starting.
    """

    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.logs_dir)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = (
        max(settings.max_file_size_bytes, settings.max_temp_file_size_bytes)
        + MULTIPART_SLACK_BYTES
    )
    app.config["RATELIMIT_ENABLED"] = True
    app.config["RATELIMIT_STORAGE_URI"] = settings.ratelimit_storage_uri
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    app.config["START_CLEANUP"] = True
    if test_config:
        app.config.update(test_config)
    app.logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    context = ShareContext.from_settings(settings)
    context.init()
    bootstrap(context)
    app.extensions[EXTENSION_KEY] = context

    app.register_blueprint(bp)
    context.limiter = _init_rate_limits(app)
    _register_hooks(app)
    _register_error_handlers(app)
    register_cli(app)

    if app.config["START_CLEANUP"] and not app.config.get("TESTING"):
        start_cleanup(context)

    lifecycle_logger.info(
        "app_started base_url=%s uploads_dir=%s database=%s",
        settings.base_url,
        settings.uploads_dir,
        settings.database_path,
    )
    return app


def _create_cli_app() -> Flask:
    # Management commands must not sweep; ``serve`` starts the sweeper itself.
    return create_app(test_config={"START_CLEANUP": False})


def main() -> None:
    load_dotenv()
    cli = FlaskGroup(
        name="sharehost",
        create_app=_create_cli_app,
        add_default_commands=False,
        load_dotenv=False,
        help="Self-hosted file sharing service.",
    )
    cli.main()


if __name__ == "__main__":
    load_dotenv()
    application = create_app()
    port = application.extensions[EXTENSION_KEY].settings.port
    application.run(host="0.0.0.0", port=port, debug=False)
