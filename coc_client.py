# coc_client.py
# Player tag handling and the Clash of Clans API client used by the proxy.

import re
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from urllib.parse import unquote

import requests
from urllib3.exceptions import ReadTimeoutError

logger = logging.getLogger("coc-proxy")

DEFAULT_BASE_URL = "https://api.clashofclans.com/v1"
DEFAULT_TIMEOUT = 10

# Supercell tags: optional '#' followed by [0289PYLQGRJCUV]
TAG_PATTERN = re.compile(r"[0289PYLQGRJCUV]+")

TAG_REQUIRED = "Player tag is required"
TAG_INVALID = "Invalid player tag format"


# ----------------------
# Errors
# ----------------------
class ProxyError(Exception):
    """Base error rendered to the caller as a JSON envelope."""

    status = 500
    message = "Internal server error"

    def __init__(self, message=None, status=None, details=None, upstream_status=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        if status:
            self.status = status
        self.details = details
        self.upstream_status = upstream_status

    def to_dict(self) -> dict:
        body = {"message": self.message, "error": True}
        if self.upstream_status is not None:
            body["status"] = self.upstream_status
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ProxyError):
    status = 400
    message = TAG_INVALID


class TagDecodeError(ValidationError):
    pass


class ConfigurationError(ProxyError):
    status = 500
    message = "Server configuration error: API key not configured"


class UpstreamError(ProxyError):
    """Non-2xx answer from the upstream API. Status is passed through."""

    def __init__(self, status: int, reason: str):
        super().__init__(
            upstream_error_message(status, reason),
            status=status,
            details=reason,
            upstream_status=status,
        )


class UpstreamTimeout(ProxyError):
    message = "Request timeout"


class UpstreamNetworkError(ProxyError):
    message = "Network error"


class UnexpectedUpstreamError(ProxyError):
    message = "Internal server error"


# ----------------------
# Helpers
# ----------------------
def normalize_player_tag(raw: str) -> str:
    """Decode, trim and upper-case a tag, returning it without the leading '#'.

    Raises TagDecodeError if the value is not valid percent-encoded UTF-8 and
    ValidationError if it contains characters outside the tag alphabet.
    """
    if not raw or not isinstance(raw, str):
        raise ValidationError(TAG_REQUIRED)
    try:
        decoded = unquote(raw, errors="strict")
    except UnicodeDecodeError as e:
        raise TagDecodeError(TAG_INVALID) from e

    tag = decoded.strip().upper()
    if tag.startswith("#"):
        tag = tag[1:]
    if not TAG_PATTERN.fullmatch(tag):
        raise ValidationError(TAG_INVALID)
    return tag


def format_player_tag(tag: str) -> str:
    return f"%23{tag}"


def upstream_error_message(status: int, reason: str) -> str:
    if status == 403:
        if reason == "accessDenied.invalidIp":
            return "API key IP is not whitelisted for Clash of Clans API"
        if reason == "accessDenied":
            return "API access denied. Check your Clash API key permissions"
        return "Invalid API key or access denied"
    if status == 404:
        return "Player not found"
    if status == 429:
        return "Too many requests, please try again later"
    if status == 503:
        return "Service temporarily unavailable"
    return "Failed to fetch player data"


# ----------------------
# Client
# ----------------------
class CocClient:
    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL, timeout=DEFAULT_TIMEOUT):
        if not api_key:
            raise ConfigurationError()
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _send(self, url: str, kwargs: dict) -> requests.Response:
        """GET the url, body included, within `self.timeout` seconds in total.

        requests' own timeout only bounds the connect and each socket read,
        so the whole call runs on a worker and is abandoned at the deadline.
        """
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(requests.get, url, **kwargs)
        try:
            return future.result(timeout=self.timeout or None)
        except FuturesTimeoutError as e:
            logger.error("Upstream request exceeded %s seconds", self.timeout)
            raise UpstreamTimeout(details=f"Upstream did not respond within {self.timeout} seconds") from e
        except requests.Timeout as e:
            logger.exception("Upstream request timed out: %s", e)
            raise UpstreamTimeout(details=str(e)) from e
        except requests.ConnectionError as e:
            # A read timeout while downloading the body surfaces as ConnectionError.
            if e.args and isinstance(e.args[0], ReadTimeoutError):
                logger.exception("Upstream request timed out: %s", e)
                raise UpstreamTimeout(details=str(e)) from e
            logger.exception("Upstream request failed: %s", e)
            raise UpstreamNetworkError(details=str(e)) from e
        except requests.RequestException as e:
            logger.exception("Upstream request failed: %s", e)
            raise UpstreamNetworkError(details=str(e)) from e
        finally:
            executor.shutdown(wait=False)

    def get_player(self, tag: str) -> dict:
        """Fetch a player by normalized tag and return the upstream JSON."""
        formatted_tag = format_player_tag(tag)
        logger.info("Fetching data for player tag: %s", formatted_tag)

        kwargs = {
            "headers": {
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        }
        # No timeout configured: the call proceeds without one.
        if self.timeout:
            kwargs["timeout"] = self.timeout

        resp = self._send(f"{self.base_url}/players/{formatted_tag}", kwargs)

        if not 200 <= resp.status_code < 300:
            try:
                error_data = resp.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            logger.error("API Error %s: %s", resp.status_code, error_data)
            raise UpstreamError(resp.status_code, error_data.get("reason") or "Unknown error")

        try:
            data = resp.json()
        except ValueError as e:
            logger.exception("Upstream returned invalid JSON: %s", e)
            raise UnexpectedUpstreamError(details=str(e)) from e

        if isinstance(data, dict):
            logger.info("Successfully fetched data for: %s (%s)", data.get("name"), data.get("tag"))
        return data
