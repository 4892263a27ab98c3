#!/usr/bin/python3
"""
Helpers for the ZeroNorth (Harness STO) REST API.

The API owns every object; this module only holds transient references (IDs) while it
looks resources up by name, creates them when absent, and drives policy jobs through
run -> upload -> resume -> poll.

Typical use:

    import zeronorth

    zeronorth.configure_logging("INFO")
    client = zeronorth.Client(zeronorth.load_config())
    policy_id = zeronorth.find_by_name(client, "policies", "My Upload Policy")
    job = zeronorth.JobDriver(client).run_and_wait(policy_id, upload_file="issues.json")
"""
import json
import logging
import os
import random
import re
import sys
import time
import urllib.parse
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path

import jwt
import requests
from dotenv import find_dotenv, load_dotenv

_VERSION = 1.0

DEFAULT_API_ROOT = "https://api.zeronorth.io/v1"
API_KEY_ENV = "API_KEY"
API_ROOT_ENV = "ZN_API_ROOT"
MIN_TOKEN_LEN = 40

JSON_DOC_FORMAT = "application/json"
ACTIVE_JOB_STATUSES = frozenset({"PENDING", "RUNNING"})
DEFAULT_JOB_TIMEOUT_S = 3600.0

_IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE"})
_RETRY_ON_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

_log = logging.getLogger("zeronorth")


class ZeroNorthError(Exception):
    """Base class for every error raised by this module."""


class ConfigError(ZeroNorthError):
    pass


class ValidationError(ZeroNorthError, ValueError):
    pass


class TransportError(ZeroNorthError):
    """Connection failure or timeout; the request never produced a response."""


class ApiError(ZeroNorthError):
    def __init__(self, status_code: int, message: str, payload=None):
        self.status_code = status_code
        self.message = message
        self.payload = payload
        super().__init__(f"API error {status_code}: {message}")


class EmptyResponseError(ZeroNorthError):
    pass


class MalformedResponseError(ZeroNorthError):
    pass


class NotFoundError(ZeroNorthError):
    def __init__(self, resource: str, name: str):
        self.resource = resource
        self.name = name
        super().__init__(f"{resource}: '{name}' not found")


class AmbiguousNameError(ZeroNorthError):
    def __init__(self, resource: str, name: str, ids: list[str]):
        self.resource = resource
        self.name = name
        self.ids = list(ids)
        super().__init__(
            f"{resource}: found {len(self.ids)} matches for the name '{name}' ({', '.join(self.ids)})"
        )


class CreateFailedError(ZeroNorthError):
    def __init__(self, resource: str, name: str, reason: str):
        self.resource = resource
        self.name = name
        super().__init__(f"{resource}: creating '{name}' failed: {reason}")


class JobError(ZeroNorthError):
    pass


class JobWaitTimeout(ZeroNorthError, TimeoutError):
    pass


# ---------------------------------------------------------------------------------------
# Logging and redaction
# ---------------------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s  %(name)s  %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """
    Send `zeronorth` diagnostics to stderr with a timestamp prefix.

    Safe to call more than once; the handler is installed only once and the level is
    updated on every call.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValidationError(f"invalid log level: {level!r}")
        level = resolved

    handler = next((h for h in _log.handlers if getattr(h, "_zeronorth", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT))
        handler._zeronorth = True  # type: ignore[attr-defined]
        _log.addHandler(handler)
    _log.setLevel(level)
    _log.propagate = False
    return _log


_REDACTIONS = (
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)(authorization[\"']?\s*[:=]\s*[\"']?)(?!bearer\s)[^\s\"',}]+"),
        r"\1[REDACTED]",
    ),
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"), "[REDACTED]"),
    (
        re.compile(
            r'(?i)("(?:[a-z_]*token|client_secret|password|apikey|api_key|secret)"\s*:\s*")[^"]*(")'
        ),
        r"\1[REDACTED]\2",
    ),
    (
        re.compile(r"(?i)\b((?:[a-z_]*token|client_secret|password|apikey|api_key)=)[^&\s]+"),
        r"\1[REDACTED]",
    ),
    (re.compile(r"(?i)([?&]sig=)[^&\s]+"), r"\1[REDACTED]"),
)


def redact_sensitive_text(text) -> str:
    cooked = str(text or "")
    for pattern, repl in _REDACTIONS:
        cooked = pattern.sub(repl, cooked)
    return cooked


def _parse_retry_after_seconds(value, *, now: datetime | None = None) -> int | None:
    """
    Parse a `Retry-After` header given either as delay seconds or as an HTTP date.
    """
    raw = str(value or "").strip()
    if not raw:
        return None
    if raw.isdigit():
        return int(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(int((when - now).total_seconds()), 0)


# ---------------------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------------------


@dataclass(frozen=True)
class Config:
    token: str = field(repr=False)
    api_root: str = DEFAULT_API_ROOT
    http_timeout: tuple[float, float] = (10.0, 120.0)
    retry: bool = True
    max_retry: int = 3
    backoff_max_s: float = 30.0
    page_size: int = 1000
    # Endpoints without a server-side name filter are fetched whole, up to this limit.
    full_list_limit: int = 10000

    def __post_init__(self):
        if not str(self.token or "").strip():
            raise ConfigError("API token must not be empty")
        object.__setattr__(self, "token", str(self.token).strip())
        object.__setattr__(self, "api_root", str(self.api_root or DEFAULT_API_ROOT).rstrip("/"))
        if self.page_size < 1 or self.full_list_limit < 1:
            raise ConfigError("page sizes must be >= 1")


def resolve_credential(key_file: str | Path | None = None, environ=None) -> str:
    """
    Resolve the API token once: key file first, then the `API_KEY` environment variable.

    `API_KEY` may hold the token itself or the path to a file containing it.
    """
    if key_file:
        path = Path(key_file).expanduser()
        try:
            token = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"unable to read key file {path}: {e}") from e
        if not token:
            raise ConfigError(f"key file is empty: {path}")
        _log.debug("API key read from %s (%d bytes).", path, len(token))
        return token

    env = os.environ if environ is None else environ
    raw = str(env.get(API_KEY_ENV) or "").strip()
    if not raw:
        raise ConfigError(f"no API key provided; pass a key file or set {API_KEY_ENV}")

    candidate = Path(raw).expanduser()
    try:
        is_file = candidate.is_file()
    except OSError:
        # Long tokens can exceed the platform's path length limit.
        is_file = False
    if is_file:
        token = candidate.read_text(encoding="utf-8").strip()
        if not token:
            raise ConfigError(f"key file is empty: {candidate}")
        _log.debug("API key read from %s (%d bytes).", candidate, len(token))
        return token

    _log.debug("API key read from %s (%d bytes).", API_KEY_ENV, len(raw))
    return raw


def load_config(
    key_file: str | Path | None = None,
    *,
    environ=None,
    api_root: str | None = None,
    http_timeout: tuple[float, float] | None = None,
    retry: bool | None = None,
    max_retry: int | None = None,
    backoff_max_s: float | None = None,
    page_size: int | None = None,
) -> Config:
    if environ is None:
        # `.env` is searched from the working directory up; values already exported win.
        load_dotenv(dotenv_path=find_dotenv(usecwd=True), override=False)
        environ = os.environ

    kwargs = {
        "token": resolve_credential(key_file, environ),
        "api_root": api_root or environ.get(API_ROOT_ENV) or DEFAULT_API_ROOT,
    }
    if http_timeout is not None:
        kwargs["http_timeout"] = tuple(http_timeout)
    if retry is not None:
        kwargs["retry"] = bool(retry)
    if max_retry is not None:
        kwargs["max_retry"] = max(int(max_retry), 1)
    if backoff_max_s is not None:
        kwargs["backoff_max_s"] = max(float(backoff_max_s), 0.0)
    if page_size is not None:
        kwargs["page_size"] = int(page_size)
    config = Config(**kwargs)

    expires = token_expiry(config.token)
    if expires is not None and expires <= datetime.now(timezone.utc):
        _log.warning("API token expired at %s; requests will likely be rejected.", expires.isoformat())
    return config


def _token_claims(token: str) -> dict:
    # Unverified: only used to read metadata the API embeds in its own tokens.
    try:
        claims = jwt.decode(
            str(token or ""),
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.PyJWTError:
        return {}
    return claims if isinstance(claims, dict) else {}


def token_expiry(token: str) -> datetime | None:
    """
    Return the `exp` claim of a JWT-shaped API token, without verifying the signature.
    """
    exp = _token_claims(token).get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


def token_id(token: str) -> str | None:
    """The `tokenId` claim of an API token, if it carries one."""
    value = _token_claims(token).get("tokenId")
    return str(value) if value else None


# ---------------------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------------------


class ErrorKind(Enum):
    API_ERROR = "ApiError"
    EMPTY_RESPONSE = "EmptyResponse"
    MALFORMED_RESPONSE = "MalformedResponse"


@dataclass(frozen=True)
class Classification:
    ok: bool
    body: object = None
    kind: ErrorKind | None = None
    status_code: int | None = None
    message: str = ""

    def unwrap(self):
        if self.ok:
            return self.body
        if self.kind is ErrorKind.API_ERROR:
            raise ApiError(self.status_code or 0, self.message, payload=self.body)
        if self.kind is ErrorKind.EMPTY_RESPONSE:
            raise EmptyResponseError(self.message)
        raise MalformedResponseError(self.message)


def _embedded_status(body) -> int | None:
    if not isinstance(body, dict):
        return None
    for key in ("statusCode", "status"):
        value = body.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def _error_message(body, raw: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value, sort_keys=True)
    return raw.strip()[:500]


def classify_response(text, http_status: int | None = None) -> Classification:
    """
    Turn a raw response body into `Ok(body)` or an error classification.

    The API reports errors inside otherwise successful responses as an object with a
    `statusCode` (or numeric `status`) above 299; the HTTP status is only consulted when the
    body carries no such marker.
    """
    raw = "" if text is None else str(text)
    http_failed = http_status is not None and http_status > 299

    if not raw.strip():
        if http_failed:
            return Classification(
                False, kind=ErrorKind.API_ERROR, status_code=http_status, message="empty error response"
            )
        return Classification(
            False, kind=ErrorKind.EMPTY_RESPONSE, message="unexpected empty response from the API"
        )

    try:
        body = json.loads(raw)
    except ValueError:
        if http_failed:
            return Classification(
                False, kind=ErrorKind.API_ERROR, status_code=http_status, message=raw.strip()[:500]
            )
        return Classification(
            False,
            kind=ErrorKind.MALFORMED_RESPONSE,
            message=f"response is not JSON: {raw.strip()[:200]}",
        )

    code = _embedded_status(body)
    if code is not None and code > 299:
        return Classification(
            False,
            body=body,
            kind=ErrorKind.API_ERROR,
            status_code=code,
            message=_error_message(body, raw),
        )
    if http_failed:
        return Classification(
            False,
            body=body,
            kind=ErrorKind.API_ERROR,
            status_code=http_status,
            message=_error_message(body, raw),
        )
    return Classification(True, body=body, status_code=http_status)


# ---------------------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------------------


def _encode_query(params: dict) -> str:
    # Percent-encode everything, including `:` and `/`, and use %20 (not `+`) for spaces.
    pairs = []
    for key, value in (params or {}).items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((key, value))
    return urllib.parse.urlencode(pairs, quote_via=urllib.parse.quote, safe="")


class Client:
    """
    Thin `requests` wrapper: fixed API root, standard headers, retry on idempotent calls.
    """

    def __init__(self, config: Config, session=None):
        self._config = config
        self._session = session if session is not None else requests.Session()

    @property
    def config(self) -> Config:
        return self._config

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if callable(close):
            close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _url(self, path: str, params: dict | None) -> str:
        url = f"{self._config.api_root}/{path.lstrip('/')}"
        query = _encode_query(params or {})
        return f"{url}?{query}" if query else url

    def _backoff_s(self, attempt: int) -> float:
        sleep_s = min(2 ** (attempt - 1), float(self._config.backoff_max_s))
        return sleep_s + random.uniform(0, min(0.25, sleep_s / 4 if sleep_s else 0.0))

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        payload=None,
        files=None,
        headers=None,
    ) -> tuple[int, str]:
        method = str(method or "").upper()
        if not method:
            raise ValidationError("request method must not be empty")
        if not path or not str(path).strip().strip("/"):
            raise ValidationError("request path must not be empty")

        url = self._url(str(path).strip(), params)
        headers = {"Accept": JSON_DOC_FORMAT, "Authorization": self._config.token, **(headers or {})}
        data = None
        if payload is not None:
            data = payload if isinstance(payload, str) else json.dumps(payload)
            headers["Content-Type"] = JSON_DOC_FORMAT

        retryable = self._config.retry and method in _IDEMPOTENT_METHODS and files is None
        attempts = max(int(self._config.max_retry or 1), 1) if retryable else 1

        for attempt in range(1, attempts + 1):
            _log.debug("%s %s (attempt %d/%d)", method, url, attempt, attempts)
            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    data=data,
                    files=files,
                    timeout=self._config.http_timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                reason = redact_sensitive_text(e)
                if attempt < attempts:
                    sleep_s = self._backoff_s(attempt)
                    _log.warning(
                        "%s %s failed (%s); retrying in %.1fs", method, path, reason, sleep_s
                    )
                    time.sleep(sleep_s)
                    continue
                raise TransportError(f"{method} {path} failed: {reason}") from e
            except requests.RequestException as e:
                raise TransportError(
                    f"{method} {path} failed: {redact_sensitive_text(e)}"
                ) from e

            status = int(getattr(resp, "status_code", 0) or 0)
            if status in _RETRY_ON_STATUSES and attempt < attempts:
                headers_in = getattr(resp, "headers", None) or {}
                sleep_s = _parse_retry_after_seconds(headers_in.get("Retry-After"))
                if sleep_s is None:
                    sleep_s = self._backoff_s(attempt)
                sleep_s = min(sleep_s, self._config.backoff_max_s)
                _log.warning(
                    "%s %s returned HTTP %d; retrying in %.1fs", method, path, status, sleep_s
                )
                time.sleep(sleep_s)
                continue

            _log.debug("%s %s -> HTTP %d", method, path, status)
            return status, str(getattr(resp, "text", "") or "")

        # Unreachable: the last attempt always returns or raises.
        raise TransportError(f"{method} {path} failed after {attempts} attempts")

    def request(self, method: str, path: str, *, params=None, payload=None, files=None, headers=None) -> str:
        """Perform the call and return the raw response body."""
        _status, text = self._send(method, path, params=params, payload=payload, files=files, headers=headers)
        return text

    def call(
        self,
        method: str,
        path: str,
        *,
        params=None,
        payload=None,
        files=None,
        headers=None,
        allow_empty: bool = False,
    ):
        status, text = self._send(
            method, path, params=params, payload=payload, files=files, headers=headers
        )
        result = classify_response(text, http_status=status)
        if not result.ok:
            if allow_empty and result.kind is ErrorKind.EMPTY_RESPONSE:
                return None
            _log.debug(
                "%s %s classified as %s: %s",
                str(method).upper(),
                path,
                result.kind.value if result.kind else "",
                redact_sensitive_text(result.message),
            )
        return result.unwrap()

    def get(self, path: str, **kwargs):
        return self.call("GET", path, **kwargs)

    def post(self, path: str, **kwargs):
        return self.call("POST", path, **kwargs)

    def put(self, path: str, **kwargs):
        return self.call("PUT", path, **kwargs)

    def delete(self, path: str, **kwargs):
        return self.call("DELETE", path, **kwargs)

    def customer_name(self) -> str:
        body = self.get("accounts/me")
        name = _dig(body, ("customer", "data", "name"))
        if not name:
            raise MalformedResponseError("unable to retrieve customer name from accounts/me")
        return str(name)

    def iter_list(self, resource: str, params: dict | None = None, *, page_size=None, max_pages=0):
        """Yield every item of a list endpoint, one `limit`/`offset` page at a time."""
        size = int(page_size or self._config.page_size)
        base = dict(params or {})

        def fetch(offset: int, limit: int, cursor):
            query = dict(base)
            query["limit"] = limit
            if cursor:
                query["cursor"] = cursor
            else:
                query["offset"] = offset
            return self.get(resource, params=query)

        return walk_pages(fetch, size, max_pages=max_pages)


def _dig(obj, path: tuple[str, ...]):
    cur = obj
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


# ---------------------------------------------------------------------------------------
# List payloads and pagination
# ---------------------------------------------------------------------------------------


@dataclass
class Page:
    items: list
    count: int | None = None
    cursor: str | None = None


def split_list_payload(body) -> Page:
    """List endpoints answer `[items, {"count": n}]`."""
    if not isinstance(body, list) or not body or not isinstance(body[0], list):
        raise MalformedResponseError("expected a [items, {count}] list payload")
    count = None
    if len(body) > 1 and isinstance(body[1], dict):
        raw = body[1].get("count")
        if isinstance(raw, int) and not isinstance(raw, bool):
            count = raw
    return Page(items=list(body[0]), count=count)


def walk_pages(fetch_page, page_size: int, *, extract=split_list_payload, max_pages: int = 0):
    """
    Yield items from successive pages until the data runs out.

    `fetch_page(offset, limit, cursor)` returns a parsed page body and `extract` turns it into
    a `Page`. The walk stops on an empty page, once a trusted total count has been reached,
    when a cursor walk runs out of cursors, or after `max_pages` pages. A page's `count` is
    only trusted as the collection total when it exceeds that page's length. Without a
    trusted total a short page ends the walk; with one, a server that caps pages below
    `page_size` is walked until the total is reached.
    """
    page_size = int(page_size)
    if page_size < 1:
        raise ValidationError("page size must be >= 1")

    offset = 0
    cursor = None
    total = None
    pages = 0
    while True:
        page = extract(fetch_page(offset, page_size, cursor))
        pages += 1
        n = len(page.items)
        yield from page.items
        offset += n

        if page.count is not None and page.count > n:
            total = page.count

        if n == 0 or (max_pages and pages >= max_pages):
            return
        if page.cursor:
            cursor = page.cursor
            continue
        if cursor is not None:
            return
        if total is not None:
            if offset >= total:
                return
            continue
        if n < page_size:
            return


# ---------------------------------------------------------------------------------------
# Name resolution
# ---------------------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceType:
    path: str
    name_field: tuple[str, ...] = ("data", "name")
    # False: the endpoint ignores `?name=`, so the whole collection is fetched and filtered here.
    server_filter: bool = True
    list_params: tuple[tuple[str, str], ...] = ()


RESOURCE_TYPES = {
    "targets": ResourceType("targets"),
    "policies": ResourceType("policies"),
    "applications": ResourceType("applications", list_params=(("expand", "false"),)),
    "environments": ResourceType("environments"),
    "secrets": ResourceType("secrets"),
    "scenarios": ResourceType("scenarios", server_filter=False),
    "users": ResourceType("users", name_field=("data", "email"), server_filter=False),
}


def resource_type(resource: str) -> ResourceType:
    rtype = RESOURCE_TYPES.get(str(resource or "").strip())
    if rtype is None:
        raise ValidationError(
            f"unsupported resource type {resource!r} (expected one of: {', '.join(sorted(RESOURCE_TYPES))})"
        )
    return rtype


def exact_name_matches(items, name: str, name_field: tuple[str, ...] = ("data", "name")) -> list[str]:
    """IDs of the items whose name equals `name`, ignoring case."""
    wanted = str(name).casefold()
    ids: list[str] = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        candidate = _dig(item, name_field)
        if isinstance(candidate, str) and candidate.casefold() == wanted:
            ids.append(str(item["id"]))
    return ids


def find_by_name(client: Client, resource: str, name: str) -> str | None:
    """
    Look up a resource by name.

    Returns the ID for exactly one case-insensitive exact match, `None` for no match, and
    raises `AmbiguousNameError` for more. The server-side `?name=` search is a looser
    substring filter, so its results are always re-checked here.
    """
    if not str(name or "").strip():
        raise ValidationError("name must not be empty")
    rtype = resource_type(resource)

    params = dict(rtype.list_params)
    if rtype.server_filter:
        params["name"] = name
    else:
        params["limit"] = client.config.full_list_limit

    page = split_list_payload(client.get(rtype.path, params=params))
    if not rtype.server_filter and page.count is not None and page.count > len(page.items):
        _log.warning(
            "%s: only %d of %d entries were searched for '%s'.",
            rtype.path,
            len(page.items),
            page.count,
            name,
        )

    ids = exact_name_matches(page.items, name, rtype.name_field)
    if len(ids) > 1:
        raise AmbiguousNameError(rtype.path, name, ids)
    if not ids:
        _log.info("Did not find '%s' in %s.", name, rtype.path)
        return None
    _log.info("Found '%s', ID: %s", name, ids[0])
    return ids[0]


def get_resource_data(client: Client, resource: str, resource_id: str, *, params=None) -> dict:
    rtype = resource_type(resource)
    body = client.get(f"{rtype.path}/{urllib.parse.quote(str(resource_id), safe='')}", params=params)
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise MalformedResponseError(f"{rtype.path}/{resource_id}: response has no data block")
    return data


def resolve_reference(client: Client, resource: str, ref: str) -> tuple[str, dict]:
    """
    Resolve `ref` as an ID first, then as a name. Returns `(id, data)`.
    """
    if not str(ref or "").strip():
        raise ValidationError("resource reference must not be empty")
    rtype = resource_type(resource)

    try:
        body = client.get(f"{rtype.path}/{urllib.parse.quote(str(ref), safe='')}")
    except (ApiError, EmptyResponseError, MalformedResponseError) as e:
        _log.debug("%s: '%s' is not an ID (%s); trying it as a name.", rtype.path, ref, e)
        body = None
    if isinstance(body, dict) and isinstance(body.get("data"), dict) and str(body.get("id")) == ref:
        return ref, body["data"]

    found = find_by_name(client, resource, ref)
    if found is None:
        raise NotFoundError(rtype.path, ref)
    return found, get_resource_data(client, resource, found)


# ---------------------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------------------


@dataclass(frozen=True)
class UpsertResult:
    id: str
    created: bool


def find_by_name_twice(
    client: Client,
    resource: str,
    name: str,
    *,
    max_rounds: int = 5,
    jitter_s: float = 4.0,
    sleep=time.sleep,
) -> str | None:
    """
    Resolve `name` twice, a random short delay apart, until both lookups agree.

    This narrows the window in which two concurrent callers both decide to create the same
    name; it does not close it. Only a server-side unique constraint could.
    """
    for _round in range(1, max(int(max_rounds), 1) + 1):
        _log.info("Looking up '%s'. Try #1...", name)
        first = find_by_name(client, resource, name)

        delay = random.uniform(0, jitter_s) if jitter_s > 0 else 0.0
        _log.info("Sleeping for %.1f seconds...", delay)
        sleep(delay)

        _log.info("Looking up '%s'. Try #2...", name)
        second = find_by_name(client, resource, name)
        if first == second:
            return second
        _log.info("Lookups for '%s' disagreed (%s vs %s); trying again...", name, first, second)

    raise ZeroNorthError(
        f"{resource}: lookups for '{name}' did not agree after {max_rounds} rounds"
    )


def create_resource(client: Client, resource: str, payload: dict, name: str) -> str:
    rtype = resource_type(resource)
    try:
        body = client.post(rtype.path, payload=payload)
    except (ApiError, EmptyResponseError, MalformedResponseError) as e:
        raise CreateFailedError(rtype.path, name, str(e)) from e
    new_id = body.get("id") if isinstance(body, dict) else None
    if not new_id or new_id == "null":
        raise CreateFailedError(rtype.path, name, "response carried no id")
    return str(new_id)


def ensure_resource(
    client: Client,
    resource: str,
    name: str,
    payload: dict,
    *,
    find_twice: bool = False,
    max_rounds: int = 5,
    jitter_s: float = 4.0,
    sleep=time.sleep,
) -> UpsertResult:
    """
    Return the ID of the resource called `name`, creating it from `payload` when absent.

    An ambiguous name is fatal and nothing is created.
    """
    if find_twice:
        existing = find_by_name_twice(
            client, resource, name, max_rounds=max_rounds, jitter_s=jitter_s, sleep=sleep
        )
    else:
        existing = find_by_name(client, resource, name)
    if existing:
        return UpsertResult(existing, False)

    _log.info("Creating %s '%s'...", resource, name)
    new_id = create_resource(client, resource, payload, name)
    _log.info("%s '%s' created with ID '%s'.", resource, name, new_id)
    return UpsertResult(new_id, True)


def target_payload(
    name: str,
    integration_id: str,
    integration_type: str,
    *,
    parameters: dict | None = None,
    tags: list[str] | None = None,
) -> dict:
    payload = {
        "name": name,
        "environmentId": integration_id,
        "environmentType": integration_type,
        "parameters": dict(parameters or {}),
    }
    if integration_type == "direct":
        payload["parameters"].setdefault("hostname", "dummy")
    if tags:
        payload["tags"] = list(tags)
    return payload


def upload_policy_payload(
    name: str,
    integration_id: str,
    integration_type: str,
    target_id: str,
    scenario_id: str,
    description: str = "Policy created by zeronorth",
) -> dict:
    return {
        "name": name,
        "environmentId": integration_id,
        "environmentType": integration_type,
        "policySite": "manual",
        "policyType": "manualUpload",
        "targets": [{"id": target_id}],
        "scenarioIds": [scenario_id],
        "description": description,
        "permanentRunOptions": {},
    }


def application_payload(name: str, target_ids: list[str], description: str = "") -> dict:
    return {"name": name, "targetIds": list(target_ids), "description": description}


def integration_type(client: Client, integration_id: str) -> str:
    data = get_resource_data(client, "environments", integration_id)
    kind = data.get("type")
    if not kind:
        raise MalformedResponseError(f"integration {integration_id} has no type")
    _log.info("Integration type is '%s'.", kind)
    return str(kind)


@dataclass(frozen=True)
class UploadPolicy:
    integration_type: str
    target: UpsertResult
    policy: UpsertResult


def ensure_upload_policy(
    client: Client,
    policy_name: str,
    scenario_id: str,
    integration_id: str,
    target_name: str,
    *,
    find_twice: bool = True,
    jitter_s: float = 4.0,
    sleep=time.sleep,
) -> UploadPolicy:
    """Look up or create a Target, then a manual-upload Policy bound to it."""
    kind = integration_type(client, integration_id)
    target = ensure_resource(
        client,
        "targets",
        target_name,
        target_payload(target_name, integration_id, kind),
        find_twice=find_twice,
        jitter_s=jitter_s,
        sleep=sleep,
    )

    # The policy payload needs the target ID, so it is built after the target exists.
    policy = ensure_resource(
        client,
        "policies",
        policy_name,
        upload_policy_payload(policy_name, integration_id, kind, target.id, scenario_id),
        find_twice=find_twice,
        jitter_s=jitter_s,
        sleep=sleep,
    )
    return UploadPolicy(integration_type=kind, target=target, policy=policy)


# ---------------------------------------------------------------------------------------
# Updates of existing resources
# ---------------------------------------------------------------------------------------


def normalize_target_data(data: dict) -> dict:
    """Fix up legacy target data so the API accepts it back on PUT."""
    cooked = dict(data or {})
    for key in ("includeRegex", "excludeRegex"):
        if cooked.get(key) is None:
            cooked[key] = []
    if not cooked.get("notifications"):
        cooked["notifications"] = []
    return cooked


def _policy_body(data: dict, name: str) -> dict:
    return {
        "name": name,
        "description": data.get("description"),
        "environmentId": data.get("environmentId"),
        "environmentType": data.get("environmentType"),
        "targets": [{"id": t.get("id")} for t in data.get("targets") or [] if isinstance(t, dict)],
        "scenarioIds": list(data.get("scenarioIds") or []),
        "scenarioParameters": [],
        "policyType": data.get("policyType"),
        "policySite": data.get("policySite"),
        "permanentRunOptions": data.get("permanentRunOptions") or {},
    }


def _application_body(data: dict, *, name: str | None = None, target_ids=None) -> dict:
    body = application_payload(
        name or data.get("name") or "",
        list(data.get("targetIds") or []) if target_ids is None else list(target_ids),
        data.get("description") or "",
    )
    # Keep any OWASP risk estimate already recorded on the application.
    risk = data.get("typeOfRiskEstimate")
    if risk:
        body["typeOfRiskEstimate"] = risk
        impact_key = {"technical": "technicalImpact", "business": "businessImpact"}.get(risk)
        if impact_key and data.get(impact_key) is not None:
            body[impact_key] = data[impact_key]
    return body


_RENAME_BODIES = {
    "targets": lambda data, name: {**normalize_target_data(data), "name": name},
    "policies": _policy_body,
    "applications": lambda data, name: _application_body(data, name=name),
}


def rename_resource(client: Client, resource: str, ref: str, new_name: str) -> str:
    if resource not in _RENAME_BODIES:
        raise ValidationError(f"renaming {resource!r} is not supported")
    if not str(new_name or "").strip():
        raise ValidationError("new name must not be empty")
    resource_id, data = resolve_reference(client, resource, ref)
    _log.info("Updating '%s'...", ref)
    client.put(f"{resource}/{resource_id}", payload=_RENAME_BODIES[resource](data, new_name), allow_empty=True)
    _log.info("Renamed '%s' (%s) to '%s'.", ref, resource_id, new_name)
    return resource_id


def ensure_application_target(client: Client, app_name: str, target_name: str) -> UpsertResult:
    """
    Make `target_name` a member of application `app_name`, creating the application if needed.
    """
    target_id = find_by_name(client, "targets", target_name)
    if target_id is None:
        raise NotFoundError("targets", target_name)

    app_id = find_by_name(client, "applications", app_name)
    if app_id is None:
        new_id = create_resource(client, "applications", application_payload(app_name, [target_id]), app_name)
        _log.info(
            "Application '%s' created with ID '%s' and initial Target '%s'.", app_name, new_id, target_name
        )
        return UpsertResult(new_id, True)

    data = get_resource_data(client, "applications", app_id, params={"expand": "false"})
    member_ids = [str(t) for t in data.get("targetIds") or []]
    if target_id in member_ids:
        _log.info("Target '%s' is already a member of Application '%s'.", target_name, app_name)
        return UpsertResult(app_id, False)

    _log.info("Updating Application '%s'...", app_name)
    client.put(
        f"applications/{app_id}",
        payload=_application_body(data, name=app_name, target_ids=member_ids + [target_id]),
        allow_empty=True,
    )
    _log.info("Application '%s' updated with Target '%s'.", app_name, target_name)
    return UpsertResult(app_id, False)


TAG_MODES = ("list", "add", "update", "delete")


def parse_tags(raw) -> list[str]:
    """Split `a, b ,c` (or an iterable of such strings) into clean, de-duplicated tags."""
    values = [raw] if isinstance(raw, str) else list(raw or [])
    tags: list[str] = []
    for value in values:
        for part in str(value or "").split(","):
            tag = part.strip()
            if tag and tag not in tags:
                tags.append(tag)
    return tags


def apply_tag_change(current, mode: str, tags: list[str]) -> list[str] | None:
    existing = list(current or [])
    if mode == "add":
        return sorted(set(existing) | set(tags))
    if mode == "update":
        return list(tags)
    if mode == "delete":
        if tags == ["ALL"]:
            return None
        drop = set(tags)
        return [t for t in existing if t not in drop]
    raise ValidationError(f"unsupported tag mode {mode!r}")


def apply_target_tags(client: Client, target_ref: str, mode: str, tags=()) -> list[str]:
    mode = str(mode or "").strip().lower()
    if mode not in TAG_MODES:
        raise ValidationError(f"unsupported tag mode {mode!r} (expected one of: {', '.join(TAG_MODES)})")
    tags = parse_tags(tags)

    target_id, data = resolve_reference(client, "targets", target_ref)
    if mode == "list":
        return list(data.get("tags") or [])
    if not tags:
        raise ValidationError(f"tag mode {mode!r} requires at least one tag")

    new_tags = apply_tag_change(data.get("tags"), mode, tags)
    body = normalize_target_data(data)
    body["tags"] = new_tags
    _log.info("Updating '%s'...", target_ref)
    client.put(f"targets/{target_id}", payload=body, allow_empty=True)
    return list(new_tags or [])


# ---------------------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------------------


def get_policy(client: Client, policy_id: str) -> dict:
    """
    Fetch a policy by ID. Only a 404 (or a body for some other ID) means "not found"; any
    other API error propagates with its status and payload.
    """
    try:
        body = client.get(f"policies/{urllib.parse.quote(str(policy_id), safe='')}")
    except ApiError as e:
        if e.status_code == 404:
            raise NotFoundError("policies", policy_id) from e
        raise
    if not isinstance(body, dict) or str(body.get("id")) != str(policy_id):
        raise NotFoundError("policies", policy_id)
    return body


def is_terminal(status, active_statuses=ACTIVE_JOB_STATUSES) -> bool:
    # The API has no documented closed set of terminal statuses; anything not active counts.
    return str(status or "").strip().upper() not in active_statuses


class JobState(Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    UPLOADED = "uploaded"
    RESUMED = "resumed"
    POLLING = "polling"
    TERMINAL = "terminal"


@dataclass
class JobRun:
    policy_id: str
    job_id: str = ""
    state: JobState = JobState.NOT_STARTED
    status: str = ""
    polls: int = 0

    @property
    def finished(self) -> bool:
        return self.status == "FINISHED"

    def as_dict(self) -> dict:
        out = asdict(self)
        out["state"] = self.state.value
        return out


class JobDriver:
    """
    Drive a policy job: run, optionally upload issues and resume, then poll to a terminal status.
    """

    def __init__(self, client: Client, *, sleep=time.sleep, monotonic=time.monotonic):
        self._client = client
        self._sleep = sleep
        self._monotonic = monotonic

    def get_policy(self, policy_id: str) -> dict:
        return get_policy(self._client, policy_id)

    def run(self, policy_id: str, run_options: dict | None = None) -> str:
        payload = None
        if run_options is not None:
            payload = {"options": {"runOptions": run_options}}
        _log.info("Invoking Policy '%s'...", policy_id)
        try:
            body = self._client.post(f"policies/{policy_id}/run", payload=payload)
        except (ApiError, EmptyResponseError, MalformedResponseError) as e:
            raise JobError(f"failed to start a job for policy {policy_id}: {e}") from e

        job_id = None
        if isinstance(body, dict):
            job_id = body.get("jobId") or _dig(body, ("data", "jobId"))
        if not job_id:
            raise JobError(f"failed to start a job for policy {policy_id}: no jobId in the response")
        _log.info("Job '%s' started.", job_id)
        return str(job_id)

    def upload(self, job_id: str, file_path: str | Path):
        path = Path(file_path)
        if not path.is_file():
            raise ValidationError(f"issues file not found: {path}")
        _log.info("Uploading '%s' to Job '%s'...", path, job_id)
        with path.open("rb") as fh:
            try:
                return self._client.post(
                    f"onprem/issues/{job_id}", files={"file": (path.name, fh)}, allow_empty=True
                )
            except (ApiError, MalformedResponseError) as e:
                raise JobError(f"upload to job {job_id} failed: {e}") from e

    def resume(self, job_id: str):
        _log.info("Resuming Job '%s'...", job_id)
        try:
            return self._client.post(f"jobs/{job_id}/resume", allow_empty=True)
        except (ApiError, MalformedResponseError) as e:
            raise JobError(f"resuming job {job_id} failed: {e}") from e

    def get_job(self, job_id: str) -> dict:
        body = self._client.get(f"jobs/{job_id}")
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise MalformedResponseError(f"jobs/{job_id}: response has no data block")
        return body

    def status(self, job_id: str) -> str:
        status = _dig(self.get_job(job_id), ("data", "status"))
        if not status:
            raise MalformedResponseError(f"jobs/{job_id}: response has no status")
        return str(status)

    def fail(self, job_id: str) -> str:
        job = self.get_job(job_id)
        _log.info("Found Job '%s' for Policy '%s'.", job_id, _dig(job, ("data", "policyName")) or "")
        _log.info("Marking Job as 'FAILED'...")
        self._client.post(f"jobs/{job_id}/fail", allow_empty=True)
        status = self.status(job_id)
        _log.info("Job '%s' now has status '%s'.", job_id, status)
        return status

    def poll(
        self,
        job_id: str,
        interval_s: float = 3.0,
        *,
        timeout_s: float = DEFAULT_JOB_TIMEOUT_S,
        max_polls: int = 0,
        on_status=None,
        active_statuses=ACTIVE_JOB_STATUSES,
    ) -> str:
        """
        Check the job status until it leaves `active_statuses` (PENDING/RUNNING) and return it.

        `timeout_s` and `max_polls` bound the wait (0 disables either bound); exceeding one
        raises `JobWaitTimeout`.
        """
        active_statuses = frozenset(str(s).strip().upper() for s in active_statuses)
        started = self._monotonic()
        polls = 0
        while True:
            status = self.status(job_id)
            polls += 1
            if on_status is not None:
                on_status(status)
            if is_terminal(status, active_statuses):
                _log.info("Job '%s' done with status '%s'.", job_id, status)
                return status

            _log.info("Job '%s' still in %s state...", job_id, status)
            if max_polls and polls >= max_polls:
                raise JobWaitTimeout(
                    f"job {job_id} still {status} after {polls} status checks"
                )
            if timeout_s and timeout_s > 0 and (self._monotonic() - started) >= timeout_s:
                raise JobWaitTimeout(
                    f"timed out waiting for job {job_id} after {timeout_s}s (last status={status})"
                )
            self._sleep(max(float(interval_s), 0.0))

    def run_and_wait(
        self,
        policy_id: str,
        *,
        upload_file: str | Path | None = None,
        run_options: dict | None = None,
        wait: bool = True,
        interval_s: float = 3.0,
        timeout_s: float = DEFAULT_JOB_TIMEOUT_S,
        max_polls: int = 0,
        resume_delay_s: float = 3.0,
    ) -> JobRun:
        if upload_file is not None and not Path(upload_file).is_file():
            raise ValidationError(f"issues file not found: {upload_file}")

        job = JobRun(policy_id=str(policy_id))
        policy = self.get_policy(policy_id)
        policy_type = _dig(policy, ("data", "policyType"))
        _log.info("Policy with ID '%s' found (%s).", policy_id, _dig(policy, ("data", "name")) or "")
        if upload_file is not None and policy_type != "manualUpload":
            _log.warning("Policy is not a 'manualUpload' type. This could lead to problems.")

        job.job_id = self.run(policy_id, run_options)
        job.state = JobState.STARTED

        if upload_file is not None:
            self.upload(job.job_id, upload_file)
            job.state = JobState.UPLOADED
            if resume_delay_s > 0:
                self._sleep(resume_delay_s)
            self.resume(job.job_id)
            job.state = JobState.RESUMED

        if not wait:
            _log.info("Job '%s' started; not waiting for it to finish.", job.job_id)
            return job

        job.state = JobState.POLLING

        def _record(status: str) -> None:
            job.polls += 1
            job.status = status

        job.status = self.poll(
            job.job_id, interval_s, timeout_s=timeout_s, max_polls=max_polls, on_status=_record
        )
        job.state = JobState.TERMINAL
        return job


def list_jobs(
    client: Client,
    *,
    since: str | None = None,
    until: str | None = None,
    limit: int = 100,
    status: str | None = None,
    policy_id: str | None = None,
) -> list[dict]:
    """
    Fetch up to `limit` jobs, oldest first, optionally filtered by status after retrieval.
    """
    params = {"limit": int(limit)}
    if since:
        params["since"] = since
    if until and until.upper() != "NOW":
        params["until"] = until
    if policy_id:
        params["policyId"] = policy_id

    page = split_list_payload(client.get("jobs", params=params))
    jobs = sorted(
        (j for j in page.items if isinstance(j, dict)),
        key=lambda j: str(_dig(j, ("meta", "created")) or ""),
    )
    if status:
        wanted = status.strip().upper()
        jobs = [j for j in jobs if str(_dig(j, ("data", "status")) or "").upper() == wanted]
    _log.info("Read %d job(s).", len(jobs))
    return jobs


def _all_policies(client: Client, policy_ids=None) -> list[tuple[str, str]]:
    """`(id, name)` of the given policies, or of every policy in the account."""
    if policy_ids is not None:
        return [(str(pid), "") for pid in policy_ids]
    page = split_list_payload(client.get("policies", params={"limit": client.config.full_list_limit}))
    policies = [
        (str(p["id"]), str(_dig(p, ("data", "name")) or ""))
        for p in page.items
        if isinstance(p, dict) and p.get("id")
    ]
    _log.info("There are %d policies in total.", len(policies))
    return policies


def fail_active_jobs(
    client: Client,
    *,
    since: str | None = None,
    until: str | None = None,
    limit: int = 100,
    policy_ids=None,
    dry_run: bool = False,
) -> list[dict]:
    """
    Mark every PENDING or RUNNING job as FAILED, one policy at a time.

    Returns a row per job found (`policyId`, `policyName`, `jobId`, `status`); `status` is read
    back after the job was failed, or is the active status when `dry_run` is set.
    """
    driver = JobDriver(client)
    rows: list[dict] = []
    policies = _all_policies(client, policy_ids)
    for n, (policy_id, policy_name) in enumerate(policies, 1):
        _log.info("%d) Looking for jobs for policy '%s' (%s)...", n, policy_name, policy_id)
        active = [
            j
            for j in list_jobs(client, since=since, until=until, limit=limit, policy_id=policy_id)
            if j.get("id") and str(_dig(j, ("data", "status")) or "").upper() in ACTIVE_JOB_STATUSES
        ]
        if not active:
            _log.info("Found no Jobs in PENDING or RUNNING state.")
            continue
        _log.info("Found %d Jobs in PENDING or RUNNING state.", len(active))
        for job in active:
            job_id = str(job["id"])
            status = str(_dig(job, ("data", "status")) or "")
            if not dry_run:
                status = driver.fail(job_id)
            rows.append({"policyId": policy_id, "policyName": policy_name, "jobId": job_id, "status": status})
    return rows


_MISSING_POLICY_RE = re.compile(r"Resource with id: '?([^'\s]+)'? does not exist")


def next_onprem_job_id(client: Client) -> str | None:
    """
    ID of the job at the head of the on-prem queue, or `None` when the queue is empty.

    A queued job whose policy was deleted makes the queue endpoint answer with a
    "Resource with id: '<policy>' does not exist" error; the pending job of that policy is
    looked up instead.
    """
    try:
        body = client.get("onprem/jobs", allow_empty=True)
    except ApiError as e:
        match = _MISSING_POLICY_RE.search(str(e.message or ""))
        if match is None:
            raise
        policy_id = match.group(1)
        _log.info("Found an onprem job with missing Policy '%s'.", policy_id)
        pending = list_jobs(client, policy_id=policy_id, status="PENDING")
        if not pending:
            _log.info("Can't find the expected Job ID.")
            return None
        return str(pending[0]["id"])

    if isinstance(body, list) and body and isinstance(body[0], dict):
        job_id = _dig(body[0], ("payload", "jobId"))
        if job_id and job_id != "null":
            return str(job_id)
    return None


def clean_onprem_queue(client: Client, max_jobs: int) -> list[str]:
    """Fail up to `max_jobs` jobs from the head of the on-prem queue; returns their IDs."""
    max_jobs = int(max_jobs)
    if max_jobs < 0:
        raise ValidationError("the maximum number of jobs to clean must be >= 0")

    cleaned: list[str] = []
    while len(cleaned) < max_jobs:
        job_id = next_onprem_job_id(client)
        if not job_id:
            break
        if job_id in cleaned:
            raise JobError(f"onprem job {job_id} is still queued after being marked FAILED")
        _log.info("Found onprem job with ID '%s'...", job_id)
        client.post(f"jobs/{job_id}/fail", allow_empty=True)
        cleaned.append(job_id)
    _log.info("%d job(s) removed from the onprem jobs queue.", len(cleaned))
    return cleaned


# ---------------------------------------------------------------------------------------
# Policy schedules
# ---------------------------------------------------------------------------------------


@dataclass(frozen=True)
class Schedule:
    policy_id: str
    id: str
    etag: str = ""
    policy_name: str = ""

    def as_dict(self) -> dict:
        return asdict(self)


def list_schedules(client: Client, policy_id: str, policy_name: str = "") -> list[Schedule]:
    page = split_list_payload(
        client.get(f"policies/{urllib.parse.quote(str(policy_id), safe='')}/schedules")
    )
    schedules = []
    for item in page.items:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        schedules.append(
            Schedule(
                policy_id=str(_dig(item, ("data", "policyId")) or policy_id),
                id=str(item["id"]),
                etag=str(_dig(item, ("meta", "etag")) or ""),
                policy_name=policy_name,
            )
        )
    return schedules


def inventory_schedules(client: Client, policy_ids=None) -> list[Schedule]:
    schedules: list[Schedule] = []
    for policy_id, policy_name in _all_policies(client, policy_ids):
        _log.info("Looking up schedule info for %s '%s'...", policy_id, policy_name)
        schedules.extend(list_schedules(client, policy_id, policy_name))
    _log.info(
        "Found %d schedules across %d Policies.",
        len(schedules),
        len({s.policy_id for s in schedules}),
    )
    return schedules


def delete_schedules(client: Client, schedules, *, dry_run: bool = False) -> list[Schedule]:
    """
    Delete each schedule, sending its etag when known. A failed delete is logged and the
    rest still run; the schedules actually deleted are returned.
    """
    deleted: list[Schedule] = []
    for schedule in schedules:
        _log.info(
            "Deleting schedule %s for Policy '%s'...", schedule.id, schedule.policy_name or schedule.policy_id
        )
        if dry_run:
            continue
        try:
            client.delete(
                f"policies/{schedule.policy_id}/schedules/{schedule.id}",
                headers={"etag": schedule.etag} if schedule.etag else None,
                allow_empty=True,
            )
        except (ApiError, MalformedResponseError) as e:
            _log.warning("Problem deleting schedule %s: %s", schedule.id, redact_sensitive_text(e))
            continue
        deleted.append(schedule)
    return deleted


def delete_orphan_schedules(client: Client, policy_id: str, *, dry_run: bool = False) -> list[Schedule]:
    """Delete the schedules left behind by a deleted policy. Refuses while the policy exists."""
    try:
        get_policy(client, policy_id)
    except NotFoundError:
        _log.info("No Policy with ID '%s'. Safe to proceed.", policy_id)
    else:
        raise ValidationError(f"policy {policy_id} still exists; its schedules are not orphaned")

    schedules = list_schedules(client, policy_id)
    if not schedules:
        _log.info("Found 0 Schedules. Nothing to delete.")
        return []
    _log.info("Found %d Schedules to delete.", len(schedules))
    return delete_schedules(client, schedules, dry_run=dry_run)


# ---------------------------------------------------------------------------------------
# Secrets and API tokens
# ---------------------------------------------------------------------------------------

SECRET_TYPE_USERNAME_PASSWORD = "usernamePassword"


def secret_payload(username: str, password: str, *, name: str | None = None, description: str = "") -> dict:
    if not str(username or "") or not str(password or ""):
        raise ValidationError("a usernamePassword secret needs both a username and a password")
    payload = {
        "type": SECRET_TYPE_USERNAME_PASSWORD,
        "secret": {"username": username, "password": password},
        "description": description or "Added by zeronorth",
    }
    if name:
        payload["name"] = name
    return payload


def create_secret(client: Client, payload: dict) -> str:
    """POST a secret and return its key. The key is shown only once; keep it safe."""
    label = payload.get("name") or payload.get("type") or "secret"
    try:
        body = client.post("secrets", payload=payload)
    except (ApiError, EmptyResponseError, MalformedResponseError) as e:
        raise CreateFailedError("secrets", label, redact_sensitive_text(e)) from e
    key = (body.get("key") or body.get("id")) if isinstance(body, dict) else None
    if not key:
        raise CreateFailedError("secrets", label, "response carried no key")
    return str(key)


def ensure_secret(
    client: Client, name: str, username: str, password: str, *, description: str = ""
) -> UpsertResult:
    """
    Return the key of the secret called `name`, creating a usernamePassword secret when absent.

    An existing secret is never overwritten.
    """
    payload = secret_payload(username, password, name=name, description=description)
    existing = find_by_name(client, "secrets", name)
    if existing:
        return UpsertResult(existing, False)
    _log.info("Creating a new secret of type '%s'...", SECRET_TYPE_USERNAME_PASSWORD)
    key = create_secret(client, payload)
    _log.info("Secret '%s' created.", name)
    return UpsertResult(key, True)


def get_secret(client: Client, key: str) -> dict:
    secret = get_resource_data(client, "secrets", key).get("secret")
    if not isinstance(secret, dict):
        raise MalformedResponseError("secrets: response has no secret block")
    return secret


def delete_secret(client: Client, key: str) -> None:
    client.delete(f"secrets/{urllib.parse.quote(str(key), safe='')}", allow_empty=True)
    _log.info("Secret successfully deleted.")


@dataclass(frozen=True)
class RotatedToken:
    id: str
    token: str = field(repr=False)


def rotate_token(
    client: Client,
    customer_name: str,
    current_token_id: str | None = None,
    *,
    prefix: str = "auto",
    now: datetime | None = None,
) -> RotatedToken:
    """
    Create a new long-lived API token, then delete the one in use.

    `customer_name` must equal the tenant of the current key. The current token ID defaults to
    the `tokenId` claim of the key. A failed delete only logs a warning: the new token is
    returned either way, and this is the only time its value is visible.
    """
    found = client.customer_name()
    if found != customer_name:
        raise ValidationError(f"the API key belongs to '{found}', not '{customer_name}'")
    current_token_id = current_token_id or token_id(client.config.token)
    if not current_token_id:
        raise ValidationError("the current token ID is required (the key carries no tokenId claim)")

    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H:%M:%S")
    _log.info("Generating a new API token...")
    body = client.post("tokens", payload={"description": f"{prefix}_{stamp}"})
    new_id = body.get("id") if isinstance(body, dict) else None
    new_token = _dig(body, ("data", "id_token"))
    if not new_id or not new_token:
        raise MalformedResponseError("tokens: response carried no token ID or id_token")

    _log.info("Deleting the current API token whose ID is '%s'...", current_token_id)
    try:
        client.delete(f"tokens/{urllib.parse.quote(str(current_token_id), safe='')}", allow_empty=True)
    except (ApiError, MalformedResponseError, TransportError) as e:
        _log.warning("Deleting the current token failed: %s", redact_sensitive_text(e))
    return RotatedToken(str(new_id), str(new_token))
