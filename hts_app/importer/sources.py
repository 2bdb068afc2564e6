"""
USITC publisher helpers: URL construction, revision discovery, update checks.

Releases are published as ``hts_<year>_revision_<n>_json.json``; the pipeline
identifies a release by the version string ``<year>_revision_<n>``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Any

import requests
from flask import current_app

from .errors import ImportPipelineError

DEFAULT_URL_TEMPLATE = "https://www.usitc.gov/sites/default/files/tata/hts/hts_{year}_revision_{revision}_json.json"
PDF_URL_TEMPLATE = "https://hts.usitc.gov/reststop/file?release={year}HTSRev{revision}&filename=finalCopy"
HEAD_TIMEOUT_SECONDS = 10
LATEST_ALIASES = frozenset({"latest", "LATEST"})

_VERSION_RE = re.compile(r"^(\d{4})_revision_(\d+)$")


@dataclass(frozen=True)
class SourceRelease:
    year: int
    revision: int
    json_url: str
    pdf_url: str

    @property
    def version(self) -> str:
        return build_source_version(self.year, self.revision)

    def as_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "revision": self.revision,
            "version": self.version,
            "jsonUrl": self.json_url,
            "pdfUrl": self.pdf_url,
        }


def build_source_version(year: int, revision: int) -> str:
    return f"{year}_revision_{revision}"


def parse_source_version(version: str) -> tuple[int, int]:
    """Split ``<year>_revision_<n>``; raise ``ValueError`` for anything else."""
    match = _VERSION_RE.match((version or "").strip())
    if not match:
        raise ValueError(f"Invalid source version '{version}'; expected '<year>_revision_<n>'.")
    return int(match.group(1)), int(match.group(2))


class UsitcSource:
    """Thin client for the USITC bulk download location."""

    def __init__(
        self,
        *,
        url_template: str = DEFAULT_URL_TEMPLATE,
        max_revision: int = 10,
        session: requests.Session | None = None,
        logger=None,
    ):
        self.url_template = url_template
        self.max_revision = max_revision
        self.session = session or requests.Session()
        self._logger = logger

    @property
    def logger(self):
        return self._logger or current_app.logger

    def build_url(self, year: int, revision: int) -> str:
        return self.url_template.format(year=year, revision=revision)

    def build_pdf_url(self, year: int, revision: int) -> str:
        return PDF_URL_TEMPLATE.format(year=year, revision=revision)

    def release(self, year: int, revision: int) -> SourceRelease:
        return SourceRelease(
            year=year,
            revision=revision,
            json_url=self.build_url(year, revision),
            pdf_url=self.build_pdf_url(year, revision),
        )

    def url_for_version(self, version: str) -> str:
        year, revision = parse_source_version(version)
        return self.build_url(year, revision)

    def url_exists(self, url: str) -> bool:
        try:
            response = self.session.head(url, timeout=HEAD_TIMEOUT_SECONDS, allow_redirects=True)
        except requests.RequestException as exc:
            self.logger.debug("HEAD %s failed: %s", url, exc)
            return False
        return response.status_code == 200

    def find_latest_revision(self, *, today: date | None = None) -> SourceRelease | None:
        """
        Probe revisions ``max_revision..1`` for the current year, then the
        previous year, returning the first release that exists.
        """
        current_year = (today or date.today()).year
        for year in (current_year, current_year - 1):
            for revision in range(self.max_revision, 0, -1):
                if self.url_exists(self.build_url(year, revision)):
                    self.logger.info("Found latest HTS release: %s revision %s", year, revision)
                    return self.release(year, revision)
        return None

    def check_for_updates(self, current_version: str | None) -> dict[str, Any]:
        """
        Report whether a release newer than ``current_version`` exists.

        Checks the next revision of the same year and then revision 1 of the
        following year. Without a current version the latest release is
        returned as the update.
        """
        if not current_version:
            latest = self.find_latest_revision()
            if latest is None:
                return {"hasUpdate": False, "currentVersion": None}
            return {
                "hasUpdate": True,
                "currentVersion": None,
                "latestVersion": latest.version,
                "url": latest.json_url,
            }

        year, revision = parse_source_version(current_version)
        for candidate_year, candidate_revision in ((year, revision + 1), (year + 1, 1)):
            url = self.build_url(candidate_year, candidate_revision)
            if self.url_exists(url):
                return {
                    "hasUpdate": True,
                    "currentVersion": current_version,
                    "latestVersion": build_source_version(candidate_year, candidate_revision),
                    "url": url,
                }
        return {"hasUpdate": False, "currentVersion": current_version}

    def resolve(self, version: str) -> tuple[str, str]:
        """Return ``(source_version, source_url)``; ``latest`` triggers discovery."""
        if version.strip() in LATEST_ALIASES:
            latest = self.find_latest_revision()
            if latest is None:
                raise ImportPipelineError("Could not find any available HTS release.")
            return latest.version, latest.json_url
        return version.strip(), self.url_for_version(version)


def get_source(app=None) -> UsitcSource:
    """Build a source client from application config."""
    app = app or current_app
    return UsitcSource(
        url_template=app.config.get("HTS_SOURCE_URL_TEMPLATE") or DEFAULT_URL_TEMPLATE,
        max_revision=int(app.config.get("HTS_SOURCE_MAX_REVISION", 10)),
        logger=app.logger,
    )
