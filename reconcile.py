# -*- coding: utf-8 -*-
"""
Per-file reconciliation against the Sonarr catalog.

UNRESOLVED -> SERIES_RESOLVED -> EPISODE_RESOLVED -> IMPORTED, with FAILED
reachable from every state. Nothing is retried between states; a failure ends
the workflow for that file only.
"""

from __future__ import annotations

import logging
import os

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from filename_parser import ParsedEpisode
from sonarr_api import SonarrClient, SonarrError

logger = logging.getLogger("SonarrAutoImport.reconcile")

PLACEHOLDER_QUALITY: Dict[str, Any] = {"id": 1, "name": "HDTV-1080p"}
PLACEHOLDER_LANGUAGE: Dict[str, Any] = {"id": 1, "name": "English"}


class WorkflowState(Enum):
    UNRESOLVED = "unresolved"
    SERIES_RESOLVED = "series_resolved"
    EPISODE_RESOLVED = "episode_resolved"
    IMPORTED = "imported"
    FAILED = "failed"


class ReconcileError(Exception):
    """A file-scoped, terminal workflow failure."""


class SeriesNotFound(ReconcileError):
    pass


class SeriesCreationFailed(ReconcileError):
    pass


class EpisodeNotFound(ReconcileError):
    pass


class ImportRejected(ReconcileError):
    pass


@dataclass
class ImportSettings:
    """What the reconciler needs from configuration."""
    root_folder: str = "/tv"
    quality_profile_id: int = 1
    language_profile_id: int = 1
    quality: Dict[str, Any] = field(default_factory=lambda: dict(PLACEHOLDER_QUALITY))
    language: Dict[str, Any] = field(default_factory=lambda: dict(PLACEHOLDER_LANGUAGE))
    use_parsed_quality: bool = False
    quality_map: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cache_series_ids: bool = False

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ImportSettings":
        sonarr = (cfg or {}).get("sonarr") or {}
        imp = (cfg or {}).get("import") or {}
        return cls(
            root_folder=str(sonarr.get("root_folder") or "/tv"),
            quality_profile_id=int(sonarr.get("quality_profile") or 1),
            language_profile_id=int(sonarr.get("language_profile") or 1),
            quality=dict(imp.get("quality") or PLACEHOLDER_QUALITY),
            language=dict(imp.get("language") or PLACEHOLDER_LANGUAGE),
            use_parsed_quality=bool(imp.get("use_parsed_quality", False)),
            quality_map={str(k).lower(): dict(v) for k, v in (imp.get("quality_map") or {}).items()},
            cache_series_ids=bool(sonarr.get("cache_series_ids", False)),
        )


@dataclass
class ReconcileResult:
    state: WorkflowState
    series_id: Optional[int] = None
    episode_id: Optional[int] = None
    created_series: bool = False
    error: Optional[ReconcileError] = None
    failed_at: Optional[WorkflowState] = None

    @property
    def ok(self) -> bool:
        return self.state is WorkflowState.IMPORTED


def _normalize_title(title: Optional[str]) -> str:
    return (title or "").strip().lower()


def build_series_payload(candidate: Dict[str, Any], settings: ImportSettings) -> Dict[str, Any]:
    """
    Map a lookup candidate plus configured defaults into a POST /series body.

    Parameters
    ----------
    candidate : dict
        One entry from GET /series/lookup.
    settings : ImportSettings
        Root folder and profile ids.

    Returns
    -------
    dict
        Payload with path = root_folder joined with the candidate's titleSlug.
    """
    slug = candidate.get("titleSlug") or ""
    return {
        "title": candidate.get("title"),
        "sortTitle": candidate.get("sortTitle"),
        "status": candidate.get("status"),
        "overview": candidate.get("overview"),
        "network": candidate.get("network"),
        "images": candidate.get("images") or [],
        "seasons": candidate.get("seasons") or [],
        "year": candidate.get("year"),
        "path": os.path.join(settings.root_folder, slug),
        "qualityProfileId": settings.quality_profile_id,
        "languageProfileId": settings.language_profile_id,
        "seasonFolder": True,
        "monitored": True,
        "useSceneNumbering": False,
        "tvdbId": candidate.get("tvdbId"),
        "titleSlug": slug,
        "rootFolderPath": settings.root_folder,
        "genres": candidate.get("genres") or [],
        "tags": [],
        "addOptions": {
            "ignoreEpisodesWithFiles": False,
            "ignoreEpisodesWithoutFiles": False,
            "searchForMissingEpisodes": False,
        },
    }


class Reconciler:
    """
    Drives one ParsedEpisode at a time through the catalog.

    The optional series cache maps normalized title -> series id. It is only
    used when ``settings.cache_series_ids`` is set and is cleared by
    ``reset_cache`` at the start of every scan.
    """

    def __init__(self, client: SonarrClient, settings: ImportSettings) -> None:
        self.client = client
        self.settings = settings
        self._series_cache: Dict[str, int] = {}

    def reset_cache(self) -> None:
        self._series_cache.clear()

    # ------------------------------- series ----------------------------------

    def find_existing_series(self, title: str) -> Optional[int]:
        wanted = _normalize_title(title)
        for s in self.client.get_series():
            if _normalize_title(s.get("title")) == wanted or _normalize_title(s.get("sortTitle")) == wanted:
                return s.get("id")
        return None

    def resolve_series(self, record: ParsedEpisode) -> Tuple[int, bool]:
        """Return (series_id, created) for the record's title."""
        key = _normalize_title(record.title)
        if self.settings.cache_series_ids and key in self._series_cache:
            logger.debug("Series cache hit: %s -> %d", record.title, self._series_cache[key])
            return self._series_cache[key], False

        try:
            series_id = self.find_existing_series(record.title)
        except SonarrError as e:
            raise SeriesNotFound(f"series list unavailable for {record.title}: {e}") from e

        if series_id:
            logger.info("Found existing series: %s (ID: %d)", record.title, series_id)
            self._remember(key, series_id)
            return series_id, False

        logger.info("Series not found, searching TVDB for: %s", record.title)
        try:
            options = self.client.lookup_series(record.title)
        except SonarrError as e:
            raise SeriesNotFound(f"series lookup failed for {record.title}: {e}") from e
        if not options:
            raise SeriesNotFound(f"no series found for: {record.title}")

        # First candidate wins; no ranking between lookup results.
        selected = options[0]
        logger.info("Found series option: %s (%s)", selected.get("title"), selected.get("year"))

        payload = build_series_payload(selected, self.settings)
        try:
            added = self.client.add_series(payload)
        except SonarrError as e:
            raise SeriesCreationFailed(f"failed to add series {selected.get('title')}: {e}") from e

        new_id = added.get("id")
        if not new_id:
            raise SeriesCreationFailed(f"series {selected.get('title')} was added without an id")
        logger.info("Added new series: %s (ID: %d)", added.get("title") or selected.get("title"), new_id)
        self._remember(key, new_id)
        return new_id, True

    def _remember(self, key: str, series_id: int) -> None:
        if self.settings.cache_series_ids:
            self._series_cache[key] = series_id

    # ------------------------------- episode ---------------------------------

    def resolve_episode(self, series_id: int, season: int, episode: int) -> int:
        try:
            episodes = self.client.get_episodes(series_id)
        except SonarrError as e:
            raise EpisodeNotFound(f"episode list unavailable for series {series_id}: {e}") from e

        for ep in episodes:
            if ep.get("seasonNumber") == season and ep.get("episodeNumber") == episode:
                if not ep.get("id"):
                    raise EpisodeNotFound(f"episode S{season:02d}E{episode:02d} has no id")
                return ep["id"]
        raise EpisodeNotFound(f"episode S{season:02d}E{episode:02d} not found")

    # -------------------------------- import ---------------------------------

    def import_quality(self, record: ParsedEpisode) -> Dict[str, Any]:
        if self.settings.use_parsed_quality:
            mapped = self.settings.quality_map.get(record.quality.lower())
            if mapped:
                return dict(mapped)
        return dict(self.settings.quality)

    def build_import_files(self, record: ParsedEpisode, series_id: int, episode_id: int) -> List[Dict[str, Any]]:
        return [{
            "path": record.file_path,
            "seriesId": series_id,
            "seasonNumber": record.season,
            "episodes": [episode_id],
            "quality": self.import_quality(record),
            "language": dict(self.settings.language),
        }]

    def submit_import(self, record: ParsedEpisode, series_id: int, episode_id: int) -> None:
        try:
            self.client.manual_import(self.build_import_files(record, series_id, episode_id))
        except SonarrError as e:
            raise ImportRejected(f"manual import failed for {record.original_filename}: {e}") from e

    # ------------------------------- workflow --------------------------------

    def reconcile(self, record: ParsedEpisode) -> ReconcileResult:
        """
        Run the full workflow for one valid record.

        Never raises ReconcileError; the failure is returned in the result
        together with the last state reached.
        """
        result = ReconcileResult(state=WorkflowState.UNRESOLVED)
        try:
            result.series_id, result.created_series = self.resolve_series(record)
            result.state = WorkflowState.SERIES_RESOLVED

            result.episode_id = self.resolve_episode(result.series_id, record.season, record.episode)
            result.state = WorkflowState.EPISODE_RESOLVED

            self.submit_import(record, result.series_id, result.episode_id)
            result.state = WorkflowState.IMPORTED
        except ReconcileError as e:
            logger.debug("Workflow for %s stopped at %s: %s", record.original_filename, result.state.value, e)
            result.error = e
            result.failed_at = result.state
            result.state = WorkflowState.FAILED
        return result
