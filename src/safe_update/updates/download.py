"""
Release package download.

The orchestrator only needs "fetch this release into that directory"; how
the bytes arrive is behind the PackageDownloader interface. The default
implementation streams the package over HTTPS with httpx.

Downloaded files are named with the engine's download prefix so the orphan
sweep can recognise leftovers of interrupted runs.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from safe_update.config import AppConfig
from safe_update.errors import DownloadFailedError
from safe_update.logging import get_logger
from safe_update.updates.models import ReleaseInfo
from safe_update.updates.registry import validate_download_url
from safe_update.updates.validator import DOWNLOAD_PREFIX, DOWNLOAD_SUFFIX

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


def download_filename(unit_name: str, version: str) -> str:
    """File name for a downloaded package of ``unit_name`` at ``version``."""
    return f"{DOWNLOAD_PREFIX}{unit_name}-{version}-{uuid.uuid4().hex[:8]}{DOWNLOAD_SUFFIX}"


class PackageDownloader(ABC):
    """
    Fetches a release package to local disk.

    Implementations must not leave a partial file behind on failure.
    """

    @abstractmethod
    async def download(self, release: ReleaseInfo, dest_dir: Path) -> Path:
        """
        Download the package of ``release`` into ``dest_dir``.

        Returns:
            Path of the downloaded file.

        Raises:
            DownloadFailedError: If the package cannot be fetched.
            InsecureDownloadUrlError: If the URL fails validation.
        """


class HttpPackageDownloader(PackageDownloader):
    """
    Streams release packages over HTTPS.

    Attributes:
        unit_name: Unit name used in downloaded file names.
        timeout_seconds: HTTP timeout.
        allowed_download_hosts: Hosts download URLs may point at.
    """

    def __init__(
        self,
        *,
        unit_name: str = "unit",
        timeout_seconds: float = 60.0,
        allowed_download_hosts: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.unit_name = unit_name
        self.timeout_seconds = timeout_seconds
        self.allowed_download_hosts = list(allowed_download_hosts or [])
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HttpPackageDownloader:
        """Create a downloader from application configuration."""
        return cls(
            unit_name=config.unit.name,
            timeout_seconds=config.registry.timeout_seconds,
            allowed_download_hosts=config.registry.allowed_download_hosts,
            transport=transport,
        )

    async def download(self, release: ReleaseInfo, dest_dir: Path) -> Path:
        validate_download_url(release.download_url, self.allowed_download_hosts)

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadFailedError(
                f"Cannot create download directory: {dest_dir}",
                details={"download_dir": str(dest_dir), "error": str(e)},
            ) from e

        target = dest_dir / download_filename(self.unit_name, release.version)
        logger.info(
            "Downloading release package",
            extra={"version": release.version, "url": release.download_url},
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", release.download_url) as response:
                    if response.status_code != 200:
                        raise DownloadFailedError(
                            f"Download failed with HTTP {response.status_code}",
                            details={
                                "url": release.download_url,
                                "status_code": response.status_code,
                            },
                        )
                    with open(target, "wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            f.write(chunk)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise DownloadFailedError(
                f"Download failed: {e}",
                details={"url": release.download_url, "error": str(e)},
            ) from e
        except OSError as e:
            target.unlink(missing_ok=True)
            raise DownloadFailedError(
                f"Could not write downloaded package: {e}",
                details={"path": str(target), "error": str(e)},
            ) from e
        except DownloadFailedError:
            target.unlink(missing_ok=True)
            raise

        logger.info(
            "Download finished",
            extra={"path": str(target), "size_bytes": target.stat().st_size},
        )
        return target
