import pytest
import requests

from filename_parser import ParsedEpisode
from reconcile import (
    EpisodeNotFound,
    ImportRejected,
    ImportSettings,
    Reconciler,
    SeriesCreationFailed,
    SeriesNotFound,
    WorkflowState,
    build_series_payload,
)
from sonarr_api import SonarrHTTPError, SonarrTransportError

from conftest import FakeResponse

EPISODES = [
    {"id": 100, "seriesId": 7, "seasonNumber": 1, "episodeNumber": 7},
    {"id": 101, "seriesId": 7, "seasonNumber": 2, "episodeNumber": 6},
    {"id": 102, "seriesId": 7, "seasonNumber": 2, "episodeNumber": 7},
]

CANDIDATES = [
    {"title": "Show Title", "sortTitle": "show title", "year": 2020, "tvdbId": 555,
     "titleSlug": "show-title", "images": [{"coverType": "poster", "url": "p.jpg"}],
     "seasons": [{"seasonNumber": 1, "monitored": True}], "genres": ["Anime"]},
    {"title": "Show Title (2009)", "year": 2009, "tvdbId": 111, "titleSlug": "show-title-2009"},
]


@pytest.fixture
def record():
    return ParsedEpisode("Show Title - 2nd Season [07].mkv", "/downloads/Show Title - 2nd Season [07].mkv",
                         title="Show Title", season=2, episode=7, quality="1080p")


@pytest.fixture
def settings():
    return ImportSettings(root_folder="/tv", quality_profile_id=4, language_profile_id=2)


@pytest.fixture
def reconciler(client, settings):
    return Reconciler(client, settings)


def test_existing_series_is_adopted_without_creation(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, [{"id": 3, "title": "Other"},
                                               {"id": 7, "title": "SHOW TITLE", "sortTitle": "show title"}]),
        ("GET", "/episode"): FakeResponse(200, EPISODES),
        ("PUT", "/manualimport"): FakeResponse(200, {}),
    })

    result = reconciler.reconcile(record)

    assert result.ok
    assert result.state is WorkflowState.IMPORTED
    assert (result.series_id, result.episode_id, result.created_series) == (7, 102, False)
    assert session.calls_for("POST", "/series") == []
    assert session.calls_for("GET", "/series/lookup") == []
    body = session.calls_for("PUT", "/manualimport")[0].body
    assert body == {"files": [{
        "path": "/downloads/Show Title - 2nd Season [07].mkv",
        "seriesId": 7,
        "seasonNumber": 2,
        "episodes": [102],
        "quality": {"id": 1, "name": "HDTV-1080p"},
        "language": {"id": 1, "name": "English"},
    }]}


def test_sort_title_match_counts(reconciler, session, record):
    session.routes[("GET", "/series")] = FakeResponse(200, [{"id": 9, "title": "Shou Taitoru", "sortTitle": "Show Title"}])
    assert reconciler.resolve_series(record) == (9, False)


def test_missing_series_creates_first_candidate(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, []),
        ("GET", "/series/lookup"): FakeResponse(200, CANDIDATES),
        ("POST", "/series"): FakeResponse(201, {"id": 42, "title": "Show Title"}),
        ("GET", "/episode"): FakeResponse(200, EPISODES),
        ("PUT", "/manualimport"): FakeResponse(202, {}),
    })

    result = reconciler.reconcile(record)

    assert result.ok
    assert result.series_id == 42
    assert result.created_series is True
    posts = session.calls_for("POST", "/series")
    assert len(posts) == 1
    payload = posts[0].body
    assert payload["path"] == "/tv/show-title"
    assert payload["rootFolderPath"] == "/tv"
    assert payload["tvdbId"] == 555
    assert payload["qualityProfileId"] == 4
    assert payload["languageProfileId"] == 2
    assert payload["monitored"] is True
    assert payload["seasonFolder"] is True
    assert payload["genres"] == ["Anime"]
    assert session.calls_for("GET", "/episode")[0].params == {"seriesId": 42}


def test_empty_lookup_fails_with_series_not_found(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, []),
        ("GET", "/series/lookup"): FakeResponse(200, []),
    })

    result = reconciler.reconcile(record)

    assert result.state is WorkflowState.FAILED
    assert result.failed_at is WorkflowState.UNRESOLVED
    assert isinstance(result.error, SeriesNotFound)
    assert session.mutating_calls == []


def test_creation_http_failure(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, []),
        ("GET", "/series/lookup"): FakeResponse(200, CANDIDATES),
        ("POST", "/series"): FakeResponse(500, {"message": "boom"}),
    })

    result = reconciler.reconcile(record)

    assert isinstance(result.error, SeriesCreationFailed)
    assert isinstance(result.error.__cause__, SonarrHTTPError)
    assert session.calls_for("GET", "/episode") == []


def test_series_list_transport_failure_is_series_not_found(reconciler, session, record):
    session.routes[("GET", "/series")] = requests.ConnectionError("refused")

    result = reconciler.reconcile(record)

    assert isinstance(result.error, SeriesNotFound)
    assert isinstance(result.error.__cause__, SonarrTransportError)


def test_episode_mismatch_is_not_corrected(reconciler, session, record):
    record.season = 3
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, [{"id": 7, "title": "Show Title"}]),
        ("GET", "/episode"): FakeResponse(200, EPISODES),
    })

    result = reconciler.reconcile(record)

    assert isinstance(result.error, EpisodeNotFound)
    assert result.failed_at is WorkflowState.SERIES_RESOLVED
    assert result.series_id == 7
    assert session.calls_for("PUT") == []


def test_episode_fetch_timeout(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, [{"id": 7, "title": "Show Title"}]),
        ("GET", "/episode"): requests.Timeout("slow"),
    })
    result = reconciler.reconcile(record)
    assert isinstance(result.error, EpisodeNotFound)


def test_rejected_import(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, [{"id": 7, "title": "Show Title"}]),
        ("GET", "/episode"): FakeResponse(200, EPISODES),
        ("PUT", "/manualimport"): FakeResponse(400, {"message": "nope"}),
    })

    result = reconciler.reconcile(record)

    assert isinstance(result.error, ImportRejected)
    assert result.failed_at is WorkflowState.EPISODE_RESOLVED
    assert result.episode_id == 102


def test_series_cache_skips_second_lookup(client, session, settings, record):
    settings.cache_series_ids = True
    reconciler = Reconciler(client, settings)
    session.routes[("GET", "/series")] = FakeResponse(200, [{"id": 7, "title": "Show Title"}])

    assert reconciler.resolve_series(record) == (7, False)
    assert reconciler.resolve_series(record) == (7, False)
    assert len(session.calls_for("GET", "/series")) == 1

    reconciler.reset_cache()
    reconciler.resolve_series(record)
    assert len(session.calls_for("GET", "/series")) == 2


def test_without_cache_every_file_resolves_again(reconciler, session, record):
    session.routes[("GET", "/series")] = FakeResponse(200, [{"id": 7, "title": "Show Title"}])
    reconciler.resolve_series(record)
    reconciler.resolve_series(record)
    assert len(session.calls_for("GET", "/series")) == 2


def test_parsed_quality_is_used_only_when_enabled(client, record):
    settings = ImportSettings.from_config({
        "import": {"use_parsed_quality": True,
                   "quality_map": {"1080P": {"id": 7, "name": "WEBDL-1080p"}}},
    })
    reconciler = Reconciler(client, settings)
    assert reconciler.import_quality(record) == {"id": 7, "name": "WEBDL-1080p"}

    record.quality = "Unknown"
    assert reconciler.import_quality(record) == {"id": 1, "name": "HDTV-1080p"}

    settings.use_parsed_quality = False
    record.quality = "1080p"
    assert reconciler.import_quality(record) == {"id": 1, "name": "HDTV-1080p"}


def test_build_series_payload_defaults(settings):
    payload = build_series_payload({"title": "X", "titleSlug": "x"}, settings)
    assert payload["images"] == []
    assert payload["tags"] == []
    assert payload["addOptions"]["searchForMissingEpisodes"] is False


def test_non_json_accepted_import_is_imported(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, [{"id": 7, "title": "Show Title"}]),
        ("GET", "/episode"): FakeResponse(200, EPISODES),
        ("PUT", "/manualimport"): FakeResponse(202, body=b"Accepted"),
    })

    result = reconciler.reconcile(record)

    assert result.state is WorkflowState.IMPORTED
    assert result.error is None


def test_malformed_series_list_fails_the_record(reconciler, session, record):
    session.routes[("GET", "/series")] = FakeResponse(200, {"message": "weird"})

    result = reconciler.reconcile(record)

    assert isinstance(result.error, SeriesNotFound)
    assert isinstance(result.error.__cause__, SonarrTransportError)
    assert session.mutating_calls == []


def test_malformed_lookup_never_creates(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, []),
        ("GET", "/series/lookup"): FakeResponse(200, {"title": "Show Title"}),
    })

    result = reconciler.reconcile(record)

    assert isinstance(result.error, SeriesNotFound)
    assert session.calls_for("POST", "/series") == []


def test_matching_episode_without_id(reconciler, session, record):
    session.routes.update({
        ("GET", "/series"): FakeResponse(200, [{"id": 7, "title": "Show Title"}]),
        ("GET", "/episode"): FakeResponse(200, [{"seriesId": 7, "seasonNumber": 2, "episodeNumber": 7}]),
    })

    result = reconciler.reconcile(record)

    assert isinstance(result.error, EpisodeNotFound)
    assert session.calls_for("PUT") == []
