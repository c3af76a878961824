import os
import logging
from datetime import datetime, timezone

from flask import Flask, request, jsonify, current_app
from werkzeug.exceptions import HTTPException

from coc_client import (
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT,
    TAG_REQUIRED,
    CocClient,
    ProxyError,
    UnexpectedUpstreamError,
    ValidationError,
    normalize_player_tag,
)

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("coc-proxy")

# ----------------------
# Configuration
# ----------------------
CORS_HEADERS = {
    "Access-Control-Allow-Credentials": "true",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,OPTIONS,PATCH,DELETE,POST,PUT",
    "Access-Control-Allow-Headers": (
        "X-CSRF-Token, X-Requested-With, Accept, Accept-Version, Content-Length, "
        "Content-MD5, Content-Type, Date, X-Api-Version"
    ),
}

ALL_METHODS = ["GET", "OPTIONS", "PATCH", "DELETE", "POST", "PUT"]


def load_config() -> dict:
    """Read proxy settings from the environment."""
    return {
        "COC_API_KEY": os.getenv("COC_API_KEY"),
        "COC_API_BASE_URL": os.getenv("COC_API_BASE_URL", DEFAULT_BASE_URL),
        "UPSTREAM_TIMEOUT": parse_timeout(os.getenv("UPSTREAM_TIMEOUT", str(DEFAULT_TIMEOUT))),
    }


def parse_timeout(value):
    """Seconds as a float, None when empty or zero; bad values fall back to the default."""
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        logger.warning("Invalid UPSTREAM_TIMEOUT %r, using %s seconds", value, DEFAULT_TIMEOUT)
        return DEFAULT_TIMEOUT
    return timeout or None


# ----------------------
# Helpers
# ----------------------
def first_query_value(name: str):
    """Return the first value of a possibly repeated query parameter, or None."""
    values = request.args.getlist(name)
    return values[0] if values else None


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def error_response(err: ProxyError):
    return jsonify(err.to_dict()), err.status


# ----------------------
# App Setup
# ----------------------
def create_app(config=None) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(load_config() if config is None else config)

    @app.after_request
    def add_cors_headers(response):
        for header, value in CORS_HEADERS.items():
            response.headers[header] = value
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        message = "Method not allowed" if e.code == 405 else e.name
        return jsonify({"message": message, "error": True}), e.code

    # ----------------------
    # Endpoints
    # ----------------------
    @app.route("/", methods=["GET"])
    def health_check():
        return jsonify({"status": "proxy-running"}), 200

    @app.route("/api/coc-proxy", methods=ALL_METHODS, provide_automatic_options=False)
    def coc_proxy():
        # Preflight
        if request.method == "OPTIONS":
            return "", 200

        if request.method != "GET":
            return jsonify({"message": "Method not allowed", "error": True}), 405

        player_tag = first_query_value("playerTag")
        if not player_tag:
            return error_response(ValidationError(TAG_REQUIRED))

        try:
            tag = normalize_player_tag(player_tag)
        except ProxyError as e:
            return error_response(e)

        api_key = current_app.config.get("COC_API_KEY")
        if not api_key:
            logger.error("COC_API_KEY environment variable is not set")

        try:
            client = CocClient(
                api_key,
                base_url=current_app.config.get("COC_API_BASE_URL", DEFAULT_BASE_URL),
                timeout=current_app.config.get("UPSTREAM_TIMEOUT", DEFAULT_TIMEOUT),
            )
            data = client.get_player(tag)
        except ProxyError as e:
            return error_response(e)
        except Exception as e:
            logger.exception("Clash of Clans API Error: %s", e)
            return error_response(UnexpectedUpstreamError(details=str(e)))

        return jsonify({
            "data": data,
            "success": True,
            "timestamp": utc_timestamp(),
        }), 200

    return app


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
