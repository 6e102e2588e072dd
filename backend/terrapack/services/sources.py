"""Remote source locations of the IGN survey datasets.

IGN publishes one archive per department (BD TOPO, BD Foret) or per former
region (RPG) and lists them as links on a download page. The newest archive
of a partition is found by scraping the page's ``<a href>`` links, keeping
those naming the partition code and the shapefile flavour, and picking the
most recent date embedded in the file name.

Example:
    Locate the latest BD Foret archive of Paris:
        >>> async with httpx.AsyncClient() as client:
        ...     url = await resolve_source_url(
        ...         client, models.DatasetKind.VEGETATION, "75", settings
        ...     )
"""

from __future__ import annotations

import datetime
import html.parser
import logging
import re
import urllib.parse
from typing import TYPE_CHECKING

from terrapack.db import models

if TYPE_CHECKING:
    import httpx

    from terrapack.core import config

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")
_EPOCH = datetime.date(1970, 1, 1)


class SourceNotFoundError(LookupError):
    """No archive matching a partition code is listed on the source page."""


class _LinkCollector(html.parser.HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.hrefs: list[str] = []

    def handle_starttag(
        self,
        tag: str,
        attrs: list[tuple[str, str | None]],
    ) -> None:
        if tag != "a":
            return
        for name, value in attrs:
            if name == "href" and value:
                self.hrefs.append(value)


def extract_links(page: str, base_url: str | None = None) -> list[str]:
    """Return the ``<a href>`` targets of an HTML page, in document order.

    Args:
        page: HTML document.
        base_url: When given, relative links are made absolute.
    """
    collector = _LinkCollector()
    collector.feed(page)
    collector.close()
    if base_url:
        return [urllib.parse.urljoin(base_url, h) for h in collector.hrefs]
    return collector.hrefs


def source_page(kind: models.DatasetKind, settings: config.Settings) -> str:
    """Return the listing page configured for a dataset kind."""
    return {
        models.DatasetKind.TOPOGRAPHY: settings.topography_source_url,
        models.DatasetKind.VEGETATION: settings.vegetation_source_url,
        models.DatasetKind.PARCELS: settings.parcels_source_url,
    }[kind]


def partition_token(kind: models.DatasetKind, code: str) -> str:
    """Return the token naming a partition in archive file names.

    Departments appear as ``D`` plus a three-character code (D001, D02A,
    D971); RPG regions as ``R`` plus the region code (R11, R01).
    """
    if kind is models.DatasetKind.PARCELS:
        return f"R{code}"
    return f"D{code.zfill(3)}"


def _archive_date(href: str) -> datetime.date:
    match = _DATE_RE.search(href)
    if match:
        try:
            return datetime.date.fromisoformat(match.group(1))
        except ValueError:
            pass
    return _EPOCH


def select_archive(
    hrefs: list[str],
    kind: models.DatasetKind,
    code: str,
) -> str:
    """Pick the newest shapefile archive of a partition among links.

    Args:
        hrefs: Candidate links.
        kind: Dataset kind.
        code: Department code, or RPG region code for parcels.

    Returns:
        The link with the most recent date in its name; ties keep page
        order.

    Raises:
        SourceNotFoundError: if no link matches.
    """
    token = re.compile(
        rf"(?<![A-Za-z0-9]){re.escape(partition_token(kind, code))}"
        r"(?![A-Za-z0-9])"
    )
    candidates = [h for h in hrefs if "SHP" in h and token.search(h)]
    if kind is models.DatasetKind.VEGETATION:
        candidates = [h for h in candidates if "BDFORET_2-0" in h]
    if not candidates:
        raise SourceNotFoundError(
            f"No {kind.value} archive listed for {partition_token(kind, code)}"
        )
    return max(
        enumerate(candidates),
        key=lambda item: (_archive_date(item[1]), -item[0]),
    )[1]


async def resolve_source_url(
    client: httpx.AsyncClient,
    kind: models.DatasetKind,
    code: str,
    settings: config.Settings,
) -> str:
    """Resolve the remote archive URL of one partition.

    Args:
        client: HTTP client used to fetch the listing page.
        kind: Dataset kind.
        code: Partition code (``kind.source_code(region)``).
        settings: Settings holding the listing page URLs.

    Returns:
        Absolute URL of the newest matching archive.

    Raises:
        httpx.HTTPError: if the listing page cannot be fetched.
        SourceNotFoundError: if the page lists no matching archive.
    """
    page_url = source_page(kind, settings)
    response = await client.get(page_url, follow_redirects=True)
    response.raise_for_status()
    url = select_archive(extract_links(response.text, page_url), kind, code)
    logger.debug("Resolved %s/%s to %s", code, kind.value, url)
    return url
