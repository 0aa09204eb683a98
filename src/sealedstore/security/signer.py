"""Presigned URL signing (query-string authentication, HMAC-SHA1).

String to sign, one field per line::

    VERB
    <empty content-md5>
    <empty content-type>
    EXPIRES                              (epoch seconds)
    x-amz-security-token:TOKEN           (only with a session token)
    /bucket/key[?sub-resources]

The signature is the base64 HMAC-SHA1 of that string under the secret access
key. Identical inputs always give the identical signature, which is what lets
the store verify the URL without a session.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from sealedstore.core.exceptions import MissingCredentialsError


DEFAULT_EXPIRES_IN = 60 * 60

# Query parameters that are part of the canonicalized resource
SUB_RESOURCES = frozenset({
    "acl",
    "cors",
    "delete",
    "lifecycle",
    "location",
    "logging",
    "notification",
    "partNumber",
    "policy",
    "requestPayment",
    "response-cache-control",
    "response-content-disposition",
    "response-content-encoding",
    "response-content-language",
    "response-content-type",
    "response-expires",
    "restore",
    "tagging",
    "torrent",
    "uploadId",
    "uploads",
    "versionId",
    "versioning",
    "versions",
    "website",
})

_METHOD_ALIASES = {"read": "GET", "write": "PUT"}

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")
_IP_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")


def http_method(value) -> str:
    name = str(getattr(value, "value", value))
    return _METHOD_ALIASES.get(name.lower(), name.upper())


def _parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        raise ValueError(f"unable to parse expiration date: {value!r}") from None


def _as_utc(moment: datetime) -> datetime:
    # naive datetimes are taken to be UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def expiration_timestamp(value=None, now: Optional[float] = None) -> int:
    """
    Coerce ``value`` into an absolute expiry in epoch seconds.

    - datetime / date: absolute moment
    - int, float, timedelta: seconds from ``now``
    - str: ISO-8601 or RFC 2822 date
    - None: one hour from ``now``
    """
    now = time.time() if now is None else now
    if value is None:
        return int(now + DEFAULT_EXPIRES_IN)
    if isinstance(value, datetime):
        return int(_as_utc(value).timestamp())
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())
    if isinstance(value, timedelta):
        return int(now + value.total_seconds())
    if isinstance(value, bool):
        raise TypeError("expires must not be a boolean")
    if isinstance(value, (int, float)):
        return int(now + value)
    if isinstance(value, str):
        return int(_as_utc(_parse_date(value)).timestamp())
    raise TypeError(f"unsupported expires value: {type(value).__name__}")


def escape_path(key: str) -> str:
    return quote(key, safe="/~")


def canonicalized_resource(bucket: str, key: str, params: Optional[Dict[str, Optional[str]]] = None) -> str:
    resource = f"/{bucket}/{escape_path(key)}"
    subs = sorted((k, v) for k, v in (params or {}).items() if k in SUB_RESOURCES)
    if subs:
        resource += "?" + "&".join(k if v is None else f"{k}={v}" for k, v in subs)
    return resource


def string_to_sign(verb: str, expires: int, resource: str, session_token: Optional[str] = None) -> str:
    parts = [verb, "", "", str(expires)]
    if session_token:
        parts.append(f"x-amz-security-token:{session_token}")
    parts.append(resource)
    return "\n".join(parts)


def sign(
    verb: str,
    resource: str,
    expires: int,
    secret: str,
    session_token: Optional[str] = None,
) -> str:
    message = string_to_sign(verb, expires, resource, session_token)
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def dns_compatible_bucket(bucket: str, secure: bool) -> bool:
    if not _BUCKET_RE.match(bucket) or ".." in bucket or _IP_RE.match(bucket):
        return False
    # dotted names break wildcard certificates
    return not (secure and "." in bucket)


class UrlSigner:
    """Builds signed and public object URLs from a TransferConfig."""

    def __init__(self, config):
        self.config = config

    def _credentials(self):
        creds = self.config.credentials
        if creds is None:
            raise MissingCredentialsError("access key credentials are required to presign URLs")
        return creds

    def _address(self, bucket: str, key: str, secure: bool) -> Tuple[str, str]:
        endpoint = self.config.endpoint
        if self.config.force_path_style or not dns_compatible_bucket(bucket, secure):
            return endpoint, f"/{bucket}/{escape_path(key)}"
        return f"{bucket}.{endpoint}", f"/{escape_path(key)}"

    def _build_url(self, secure: bool, host: str, path: str, query: List[Tuple[str, str]]) -> str:
        scheme = "https" if secure else "http"
        port = self.config.port
        netloc = host
        if port and port != (443 if secure else 80):
            netloc = f"{host}:{port}"
        url = f"{scheme}://{netloc}{path}"
        if query:
            url += "?" + urlencode(query, quote_via=quote, safe="")
        return url

    def url_for(
        self,
        bucket: str,
        key: str,
        method="GET",
        expires=None,
        version_id: Optional[str] = None,
        secure: Optional[bool] = None,
        response_params: Optional[Dict[str, str]] = None,
        now: Optional[float] = None,
    ) -> str:
        """
        Presigned URL granting ``method`` on ``bucket/key`` until ``expires``.

        ``response_params`` are ``response-*`` overrides
        (e.g. ``{"response-content-type": "text/plain"}``); they are signed
        as sub-resources.
        """
        creds = self._credentials()
        secure = self.config.use_ssl if secure is None else secure

        params: Dict[str, Optional[str]] = dict(response_params or {})
        if version_id:
            params["versionId"] = version_id

        verb = http_method(method)
        expires_at = expiration_timestamp(expires, now=now)
        resource = canonicalized_resource(bucket, key, params)
        signature = sign(verb, resource, expires_at, creds.secret_access_key, creds.session_token)

        query = sorted((k, v) for k, v in (response_params or {}).items())
        query.append(("AWSAccessKeyId", creds.access_key_id))
        if version_id:
            query.append(("versionId", version_id))
        query.append(("Signature", signature))
        query.append(("Expires", str(expires_at)))
        if creds.session_token:
            query.append(("x-amz-security-token", creds.session_token))

        host, path = self._address(bucket, key, secure)
        return self._build_url(secure, host, path, query)

    def public_url(self, bucket: str, key: str, secure: Optional[bool] = None) -> str:
        secure = self.config.use_ssl if secure is None else secure
        host, path = self._address(bucket, key, secure)
        return self._build_url(secure, host, path, [])
