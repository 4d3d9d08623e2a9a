"""
Resolve an import or diff source to a local file.

A source is either a local path or an http(s) URL (e.g. a Geofabrik
extract or a replication diff). URLs are downloaded to a temp file that is
removed when the context exits.

Usage:
    fetcher = SourceFetcher()
    with fetcher.local_path("https://download.geofabrik.de/europe/monaco-latest.osm.pbf") as path:
        elements, result = read_elements(path)
        controller.import_(elements, source=str(path))
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

import requests
from requests.exceptions import ChunkedEncodingError, ConnectionError, ReadTimeout
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

KNOWN_SUFFIXES = (".osm.pbf", ".osm.bz2", ".osc.gz", ".osc", ".osm", ".pbf")


def is_url(source: str) -> bool:
    return urlparse(str(source)).scheme in ("http", "https")


def source_suffix(source: str) -> str:
    """The OSM file suffix of ``source`` so pyosmium can detect the format."""
    name = Path(urlparse(str(source)).path).name
    for suffix in KNOWN_SUFFIXES:
        if name.endswith(suffix):
            return suffix
    return ".osm.pbf"


class SourceFetcher:
    def __init__(self, session: requests.Session | None = None, timeout: int = 300) -> None:
        self._session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger

    @contextmanager
    def local_path(self, source: str | Path) -> Iterator[Path]:
        """Yield a local path for ``source``; downloaded files are cleaned up afterwards."""
        if not is_url(str(source)):
            path = Path(source)
            if not path.exists():
                raise FileNotFoundError(f"No such source file: {path}")
            yield path
            return

        filepath = self._download_to_tempfile(str(source))
        try:
            yield filepath
        finally:
            filepath.unlink(missing_ok=True)
            self.logger.info("Cleaned up temp file %s", filepath)

    @retry(
        retry=retry_if_exception_type(
            (ChunkedEncodingError, ConnectionError, ReadTimeout),
        ),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=10, max=120),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    def _download_to_tempfile(self, url: str) -> Path:
        self.logger.info("Downloading %s", url)
        resp = self._session.get(url, stream=True, timeout=self.timeout)
        resp.raise_for_status()

        fd, name = tempfile.mkstemp(suffix=source_suffix(url), prefix="osmdeploy_")
        filepath = Path(name)
        try:
            with open(fd, "wb") as out:
                for chunk in resp.iter_content(chunk_size=1 << 16):
                    out.write(chunk)
        except Exception:
            filepath.unlink(missing_ok=True)
            raise
        self.logger.info(
            "Saved %s as %s (%.1f MB)", url, filepath, filepath.stat().st_size / 2**20
        )
        return filepath
