from __future__ import annotations

import io
import logging
import zipfile

from sourcing_worker.services.http_client import ExternalApiError, RateLimitedHttpClient

logger = logging.getLogger(__name__)


class InseeFileError(ExternalApiError):
    """Raised when a monthly death file archive is unusable."""


def monthly_file_name(year: int, month: int) -> str:
    return f"Deces_{year}_M{month:02d}.csv"


class InseeFilesClient:
    """Downloads the monthly death files INSEE publishes as zipped CSVs."""

    def __init__(self, http: RateLimitedHttpClient, *, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def download_monthly_file(self, year: int, month: int) -> bytes:
        csv_name = monthly_file_name(year, month)
        archive_name = csv_name.removesuffix(".csv") + ".zip"
        url = f"{self.base_url}/{archive_name}"
        logger.info("downloading monthly death file url=%s", url)
        response = await self.http.fetch_with_retry(url)
        return extract_csv(response.content, preferred_name=csv_name)


def extract_csv(archive: bytes, *, preferred_name: str | None = None) -> bytes:
    """Return the CSV member of a zip archive, or ``archive`` itself when it is already plain CSV."""
    if not zipfile.is_zipfile(io.BytesIO(archive)):
        return archive

    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as bundle:
            members = [name for name in bundle.namelist() if name.lower().endswith(".csv")]
            if not members:
                raise InseeFileError("archive contains no CSV file")
            chosen = next(
                (name for name in members if preferred_name and name.rsplit("/", 1)[-1] == preferred_name),
                members[0],
            )
            return bundle.read(chosen)
    except zipfile.BadZipFile as exc:
        raise InseeFileError(f"invalid archive: {exc}") from exc
