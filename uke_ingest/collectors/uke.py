"""
Source discovery and download for the UKE public registry pages.

Functions:
    discover_sources  - scrape the spreadsheet links of a listing page
    download          - stream one source file to a local directory
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from requests.exceptions import ChunkedEncodingError, ConnectionError, ReadTimeout
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from uke_ingest.config import PERMIT_FILE_OPERATORS

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".xlsx", ".csv")


@dataclass(frozen=True)
class SourceDescriptor:
    href: str
    text: str
    operator_key: str | None = None


def _operator_key_for(*candidates: str) -> str | None:
    for text in candidates:
        lowered = text.lower()
        for key in PERMIT_FILE_OPERATORS:
            if key.lower() in lowered:
                return key
    return None


@retry(
    retry=retry_if_exception_type((ConnectionError, ReadTimeout)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=2, max=30),
    before_sleep=before_sleep_log(logger, logging.WARNING),
)
def _fetch_page(url: str, session: requests.Session) -> str:
    resp = session.get(url, timeout=60)
    resp.raise_for_status()
    return resp.text


def discover_sources(
    list_url: str, session: requests.Session | None = None
) -> list[SourceDescriptor]:
    """
    Return the spreadsheet links of a registry listing page, in page order.

    Relative hrefs are resolved against *list_url*. A link whose text or
    href names one of the known operators carries that operator's key.
    """
    session = session or requests.Session()
    logger.info("Scraping file links from %s", list_url)
    soup = BeautifulSoup(_fetch_page(list_url, session), "html.parser")

    sources: list[SourceDescriptor] = []
    seen: set[str] = set()
    for a_tag in soup.find_all("a", href=True):
        href = urljoin(list_url, a_tag["href"].strip())
        path = urlparse(href).path.lower()
        if not path.endswith(SOURCE_EXTENSIONS) or href in seen:
            continue
        seen.add(href)
        text = " ".join(a_tag.get_text().split())
        sources.append(
            SourceDescriptor(
                href=href, text=text, operator_key=_operator_key_for(text, href)
            )
        )

    logger.info("Found %d source files", len(sources))
    return sources


def local_file_name(source: SourceDescriptor) -> str:
    """``"T-Mobile plik XLSX"`` -> ``"T-Mobile.xlsx"``."""
    url_name = Path(urlparse(source.href).path).name
    suffix = Path(url_name).suffix.lower() or ".xlsx"
    stem = source.text or Path(url_name).stem
    stem = re.sub(r"\s+", "_", stem.strip()).replace("_plik_XLSX", "")
    stem = re.sub(r"[^\w.\-]", "_", stem)
    return f"{stem}{suffix}"


@retry(
    retry=retry_if_exception_type(
        (ChunkedEncodingError, ConnectionError, ReadTimeout),
    ),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=10, max=120),
    before_sleep=before_sleep_log(logger, logging.WARNING),
)
def download(
    source: SourceDescriptor,
    directory: str | Path,
    session: requests.Session | None = None,
) -> Path:
    """Download *source* into *directory*. The caller deletes the file when done."""
    session = session or requests.Session()
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    filepath = directory / local_file_name(source)

    logger.info("Downloading %s", source.href)
    resp = session.get(source.href, stream=True, timeout=300)
    resp.raise_for_status()

    try:
        with open(filepath, "wb") as f:
            for chunk in resp.iter_content(chunk_size=8192):
                f.write(chunk)
        size_mb = filepath.stat().st_size / (1024 * 1024)
        logger.info("Downloaded %s to %s (%.1f MB)", source.href, filepath, size_mb)
        return filepath
    except Exception:
        filepath.unlink(missing_ok=True)
        raise
