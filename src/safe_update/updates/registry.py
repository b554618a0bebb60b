"""
Release registry client.

The resolver asks the remote release registry for the latest release of the
unit and caches the answer, so repeated checks do not hit the registry (and
its rate limits) more than once per cache period.

Two payload shapes are understood:

Plain registry:
    {"version": "1.2.3", "download_url": "https://...", "size_bytes": 5242880,
     "notes": "...", "published_at": "2025-01-15T14:30:00Z"}

GitHub "latest release":
    {"tag_name": "v1.2.3", "body": "...", "published_at": "...",
     "assets": [{"name": "unit-v1.2.3.zip", "browser_download_url": "...",
                 "size": 5242880}]}

Download URLs must be HTTPS, point at an allowed host, and carry no query
string or fragment.

The resolver makes a single attempt per call; retrying is the caller's
decision.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse

import httpx

from safe_update.config import AppConfig
from safe_update.errors import (
    InsecureDownloadUrlError,
    InvalidConfigurationError,
    InvalidVersionError,
    RegistryRateLimitedError,
    RegistryUnreachableError,
)
from safe_update.logging import get_logger
from safe_update.updates.models import ReleaseInfo
from safe_update.updates.version import normalize_version, parse_semantic_version

logger = get_logger(__name__)

DEFAULT_CACHE_TTL = 43200
DEFAULT_TIMEOUT = 15.0


def validate_download_url(url: str, allowed_hosts: list[str] | tuple[str, ...]) -> str:
    """
    Check that a download URL is safe to fetch.

    Raises:
        InsecureDownloadUrlError: If the URL is not HTTPS, points at a host
            outside ``allowed_hosts``, or has a query string or fragment.
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise InsecureDownloadUrlError(
            f"Malformed download URL: {url}",
            details={"url": url, "error": str(e)},
        ) from e

    if parsed.scheme != "https":
        raise InsecureDownloadUrlError(
            "Download URL must use HTTPS",
            details={"url": url, "scheme": parsed.scheme},
        )

    host = (parsed.hostname or "").lower()
    if host not in {h.lower() for h in allowed_hosts}:
        raise InsecureDownloadUrlError(
            f"Download host is not allowed: {host}",
            details={"url": url, "host": host, "allowed_hosts": list(allowed_hosts)},
        )

    if parsed.query or parsed.fragment:
        raise InsecureDownloadUrlError(
            "Download URL must not carry a query string or fragment",
            details={"url": url},
        )

    return url


class ReleaseResolver:
    """
    Resolves the latest release from the registry, with a TTL cache.

    Attributes:
        url: Latest-release endpoint.
        cache_ttl_seconds: How long a resolved release is reused.

    Example:
        >>> resolver = ReleaseResolver("https://api.github.com/repos/o/unit/releases/latest")
        >>> release = await resolver.resolve()
        >>> release.version
        '1.2.3'
    """

    def __init__(
        self,
        url: str,
        *,
        unit_name: str = "unit",
        timeout_seconds: float = DEFAULT_TIMEOUT,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL,
        allowed_download_hosts: list[str] | None = None,
        download_url_template: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            url: Latest-release endpoint.
            unit_name: Unit name substituted into the download URL template.
            timeout_seconds: HTTP timeout.
            cache_ttl_seconds: Cache lifetime of a resolved release.
            allowed_download_hosts: Hosts download URLs may point at.
            download_url_template: Builds URLs for pinned versions; takes
                ``{version}`` and ``{name}`` placeholders.
            headers: Extra request headers.
            transport: Optional httpx transport (used by tests).
        """
        self.url = url
        self.unit_name = unit_name
        self.timeout_seconds = timeout_seconds
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self.allowed_download_hosts = list(allowed_download_hosts or [])
        self.download_url_template = download_url_template
        self.headers = dict(headers or {})
        self._transport = transport

        self._cached: ReleaseInfo | None = None
        self._cache_expiry: datetime | None = None
        self._etag: str | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ReleaseResolver:
        """Create a ReleaseResolver from application configuration."""
        return cls(
            config.registry.url,
            unit_name=config.unit.name,
            timeout_seconds=config.registry.timeout_seconds,
            cache_ttl_seconds=config.registry.cache_ttl_seconds,
            allowed_download_hosts=config.registry.allowed_download_hosts,
            download_url_template=config.registry.download_url_template,
            headers=config.registry.headers,
            transport=transport,
        )

    @property
    def cache_ttl_seconds(self) -> int:
        """Return the cache TTL in seconds."""
        return int(self._cache_ttl.total_seconds())

    def _is_cache_valid(self) -> bool:
        if self._cached is None or self._cache_expiry is None:
            return False
        return datetime.now(UTC) < self._cache_expiry

    def _store(self, release: ReleaseInfo, etag: str | None) -> None:
        self._cached = release
        self._etag = etag
        self._cache_expiry = datetime.now(UTC) + self._cache_ttl

    def clear_cache(self) -> None:
        """Forget the cached release and its ETag."""
        self._cached = None
        self._etag = None
        self._cache_expiry = None

    async def resolve(self, force: bool = False) -> ReleaseInfo:
        """
        Return the latest release.

        Args:
            force: Bypass the cache and ask the registry.

        When the registry is unreachable and an expired release is still
        cached, the stale release is returned unless ``force`` is set.

        Raises:
            RegistryUnreachableError: Network error, timeout, 5xx, or an
                unusable payload.
            RegistryRateLimitedError: HTTP 429, or 403 with no requests left.
            InsecureDownloadUrlError: The release points at an unsafe URL.
        """
        async with self._lock:
            if not force and self._is_cache_valid():
                assert self._cached is not None
                return self._cached

            try:
                return await self._fetch()
            except RegistryUnreachableError:
                # An expired answer beats none for a routine check
                if force or self._cached is None:
                    raise
                logger.warning(
                    "Release registry unreachable, using stale cached release",
                    extra={"version": self._cached.version},
                )
                return self._cached

    async def _fetch(self) -> ReleaseInfo:
        headers = dict(self.headers)
        if self._etag and self._cached is not None:
            headers["If-None-Match"] = self._etag

        logger.debug("Querying release registry", extra={"url": self.url})

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(self.url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "Release registry request failed",
                extra={"url": self.url, "error": str(e)},
            )
            raise RegistryUnreachableError(
                f"Could not reach release registry: {e}",
                details={"url": self.url, "error": str(e)},
            ) from e

        if response.status_code == 304 and self._cached is not None:
            self._store(self._cached, self._etag)
            logger.debug("Release registry returned 304, cache revalidated")
            return self._cached

        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise RegistryUnreachableError(
                "Release registry returned invalid JSON",
                details={"url": self.url, "error": str(e)},
            ) from e

        release = self._parse_release(payload)
        self._store(release, response.headers.get("etag"))

        logger.info(
            "Resolved latest release",
            extra={"version": release.version, "download_url": release.download_url},
        )
        return release

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        remaining = response.headers.get("x-ratelimit-remaining")

        if status == 429 or (status == 403 and remaining == "0"):
            raise RegistryRateLimitedError(
                "Release registry rate limit exceeded",
                details={
                    "url": self.url,
                    "status_code": status,
                    "reset": response.headers.get("x-ratelimit-reset"),
                    "retry_after": response.headers.get("retry-after"),
                },
            )

        if status >= 300:
            raise RegistryUnreachableError(
                f"Release registry returned HTTP {status}",
                details={"url": self.url, "status_code": status},
            )

    def _parse_release(self, payload: Any) -> ReleaseInfo:
        """
        Build a ReleaseInfo from either supported payload shape.

        Raises:
            RegistryUnreachableError: If required fields are missing or the
                version is not a semantic version.
            InsecureDownloadUrlError: If the download URL is unsafe.
        """
        if not isinstance(payload, dict):
            raise RegistryUnreachableError(
                "Release registry payload is not an object",
                details={"url": self.url},
            )

        if "tag_name" in payload:
            raw_version = payload.get("tag_name")
            download_url, size_bytes = self._pick_zip_asset(payload.get("assets") or [])
            notes = payload.get("body") or ""
        else:
            raw_version = payload.get("version")
            download_url = payload.get("download_url")
            size_bytes = payload.get("size_bytes")
            notes = payload.get("notes") or ""

        if not isinstance(raw_version, str) or not raw_version.strip():
            raise RegistryUnreachableError(
                "Release registry payload has no version",
                details={"url": self.url},
            )

        version = normalize_version(raw_version)
        try:
            parse_semantic_version(version)
        except InvalidVersionError as e:
            raise RegistryUnreachableError(
                f"Release registry reported an invalid version: {raw_version}",
                details={"url": self.url, "version": raw_version},
            ) from e

        if not download_url:
            if not self.download_url_template:
                raise RegistryUnreachableError(
                    "Release registry payload has no download URL",
                    details={"url": self.url, "version": version},
                )
            download_url = self._template_url(version)
            size_bytes = None

        validate_download_url(download_url, self.allowed_download_hosts)

        return ReleaseInfo(
            version=version,
            download_url=download_url,
            size_bytes=size_bytes if isinstance(size_bytes, int) and size_bytes >= 0 else None,
            notes=notes,
            published_at=payload.get("published_at"),
        )

    @staticmethod
    def _pick_zip_asset(assets: list[dict[str, Any]]) -> tuple[str | None, int | None]:
        """First ``.zip`` asset's download URL and size."""
        for asset in assets:
            name = str(asset.get("name", ""))
            if name.lower().endswith(".zip") and asset.get("browser_download_url"):
                return asset["browser_download_url"], asset.get("size")
        return None, None

    def _template_url(self, version: str) -> str:
        assert self.download_url_template is not None
        return self.download_url_template.format(version=version, name=self.unit_name)

    async def release_for(self, version: str | None = None) -> ReleaseInfo:
        """
        Release information for a specific version.

        Args:
            version: Version to install. None means the latest release.

        Returns:
            The cached latest release when it matches ``version``, otherwise
            a release built from the download URL template with no declared
            size.

        Raises:
            InvalidVersionError: If ``version`` is not a semantic version.
            InsecureDownloadUrlError: If the built URL is unsafe.
            InvalidConfigurationError: If no template is configured.
        """
        if version is None:
            return await self.resolve()

        version = normalize_version(version)
        parse_semantic_version(version)

        if self._cached is not None and self._cached.version == version:
            return self._cached

        if not self.download_url_template:
            raise InvalidConfigurationError(
                "No download URL template configured for pinned versions",
                details={
                    "version": version,
                    "reason": "no download URL template is configured for pinned versions",
                },
            )

        download_url = validate_download_url(
            self._template_url(version),
            self.allowed_download_hosts,
        )
        return ReleaseInfo(version=version, download_url=download_url)
