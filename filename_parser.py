# -*- coding: utf-8 -*-
"""
Filename parsing for SonarrAutoImport.

Turns a downloaded video filename into a ParsedEpisode record:

- A transform pipeline normalizes separators before anything else runs.
- Structured patterns (with explicit title/season/episode group positions)
  are tried in configured order; the first match wins.
- When no structured pattern matches, a lossy fallback strips episode
  markers from the tail to get a title and scans episode-only patterns.
- Quality keyword and release group are detected independently.
"""

from __future__ import annotations

import logging
import os
import re

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger("SonarrAutoImport.parser")

UNKNOWN = "Unknown"

# ------------------------------ Defaults -------------------------------------

DEFAULT_PATTERNS: List[Dict[str, Any]] = [
    # "Show 2nd Season [07]"
    {"pattern": r"^(.+?)[\s_]+(\d+)(?:nd|rd|th)?[\s_]+Season[\s_]*\[(\d+)\]",
     "title_group": 1, "season_group": 2, "episode_group": 3},
    # "Show Season 2 [07]"
    {"pattern": r"^(.+?)[\s_]+Season[\s_]+(\d+)[\s_]*\[(\d+)\]",
     "title_group": 1, "season_group": 2, "episode_group": 3},
    # "Show [07]"
    {"pattern": r"^(.+?)[\s_]*\[(\d+)\]",
     "title_group": 1, "season_group": 0, "episode_group": 2},
    # "Show S02E07"
    {"pattern": r"^(.+?)[\s_]+S(\d+)E(\d+)",
     "title_group": 1, "season_group": 2, "episode_group": 3},
]

DEFAULT_EPISODE_PATTERNS: List[str] = [
    r"\[(\d+)\]",
    r"E(\d+)",
    r"Episode\s+(\d+)",
    r"Ep\s*(\d+)",
]

DEFAULT_QUALITY_PATTERNS: List[str] = ["1080p", "720p", "480p", "WEBRip", "BluRay", "DVDRip"]

DEFAULT_GROUP_PATTERNS: List[str] = [
    r"\[([^\]]+)\]$",
    r"\(([^)]+)\)$",
]

DEFAULT_TRANSFORMS: List[Dict[str, str]] = [
    {"search": r"_", "replace": " "},
    {"search": r"\.", "replace": " "},
    {"search": r"\s+", "replace": " "},
    {"search": r"^\s+|\s+$", "replace": ""},
]

# Tail markers removed by the fallback title heuristic, applied in order.
# "Episode" goes before "Ep" so "Episode 4" is not cut at "Episod".
TITLE_TAIL_RES = [
    re.compile(r"\s*\[\d+\].*$"),
    re.compile(r"\s*\b[Ee]pisode\s*\d+.*$"),
    re.compile(r"\s*\b[Ee]p?\.?\s*\d+.*$"),
    re.compile(r"\s*\bS\d+E\d+.*$"),
]

# Separators left dangling around a captured title, e.g. "Show Title -".
TITLE_EDGE_CHARS = " \t-_.:"

# --------------------------- Dataclasses / helpers ---------------------------


@dataclass
class TransformRule:
    search: str
    replace: str = ""


@dataclass
class EpisodePattern:
    """A structured pattern plus 1-based group positions (0 = absent)."""
    pattern: str
    title_group: int = 1
    season_group: int = 0
    episode_group: int = 0


@dataclass
class ParserConfig:
    """Everything the extractor needs, detached from the raw config dict."""
    patterns: List[EpisodePattern] = field(default_factory=list)
    episode_patterns: List[str] = field(default_factory=list)
    quality_patterns: List[str] = field(default_factory=list)
    group_patterns: List[str] = field(default_factory=list)
    transforms: List[TransformRule] = field(default_factory=list)

    @classmethod
    def defaults(cls) -> "ParserConfig":
        return cls.from_config({})

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ParserConfig":
        """
        Build a ParserConfig from the ``parsing`` and ``transforms`` sections.

        Missing sections fall back to the built-in defaults; an explicitly
        empty list is respected (e.g. ``patterns: []`` forces the fallback).
        """
        parsing = (cfg or {}).get("parsing") or {}

        def _section(key: str, default: list) -> list:
            value = parsing.get(key)
            return list(default) if value is None else list(value)

        raw_transforms = (cfg or {}).get("transforms")
        if raw_transforms is None:
            raw_transforms = DEFAULT_TRANSFORMS

        return cls(
            patterns=[_episode_pattern(p) for p in _section("patterns", DEFAULT_PATTERNS)],
            episode_patterns=[str(p) for p in _section("episode_patterns", DEFAULT_EPISODE_PATTERNS)],
            quality_patterns=[str(p) for p in _section("quality_patterns", DEFAULT_QUALITY_PATTERNS)],
            group_patterns=[str(p) for p in _section("group_patterns", DEFAULT_GROUP_PATTERNS)],
            transforms=[TransformRule(str(t.get("search", "")), str(t.get("replace") or ""))
                        for t in raw_transforms],
        )


def _episode_pattern(raw: Dict[str, Any]) -> EpisodePattern:
    return EpisodePattern(
        pattern=str(raw.get("pattern", "")),
        title_group=int(raw.get("title_group", 1) or 0),
        season_group=int(raw.get("season_group") or 0),
        episode_group=int(raw.get("episode_group") or 0),
    )


@dataclass
class ParsedEpisode:
    original_filename: str
    file_path: str
    title: str = ""
    season: int = 1
    episode: int = 0
    quality: str = UNKNOWN
    group: str = UNKNOWN

    @property
    def is_valid(self) -> bool:
        return bool(self.title) and self.episode != 0

    @property
    def episode_id(self) -> str:
        return f"S{self.season:02d}E{self.episode:02d}"


class ExtractionError(ValueError):
    """Raised when no usable title/episode can be derived from a filename."""

    def __init__(self, filename: str, title: str = "", episode: int = 0) -> None:
        super().__init__(f"could not parse title or episode from filename: {filename}")
        self.filename = filename
        self.title = title
        self.episode = episode


@lru_cache(maxsize=256)
def _compile_cached(pattern: str, flags: int) -> re.Pattern:
    # lru_cache does not store raised exceptions, so only good patterns stick.
    return re.compile(pattern, flags)


def _compile(pattern: str, flags: int = 0) -> Optional[re.Pattern]:
    """Compile a configured pattern; None (logged every time) when it is malformed."""
    try:
        return _compile_cached(pattern, flags)
    except re.error as e:
        logger.error("Invalid regex pattern %r: %s", pattern, e)
        return None


def _to_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _group(match: re.Match, index: int) -> Optional[str]:
    """Return group *index* or None when it is absent or out of range."""
    if index <= 0 or index > (match.re.groups or 0):
        return None
    return match.group(index)


def _clean_title(raw: str) -> str:
    return (raw or "").strip().strip(TITLE_EDGE_CHARS).strip()

# ------------------------------ Transforms -----------------------------------


def apply_transforms(name: str, rules: Iterable[TransformRule]) -> str:
    """
    Run the ordered search/replace pipeline over *name*.

    Parameters
    ----------
    name : str
        Filename without extension.
    rules : iterable of TransformRule
        Applied in order; each rule sees the output of the previous ones.
        A rule with a malformed pattern or replacement is logged and skipped.
        Replacements use ``re.sub`` syntax (``\\1``, ``\\g<1>``).

    Returns
    -------
    str
        The normalized name.
    """
    result = name
    for rule in rules:
        regex = _compile(rule.search)
        if regex is None:
            continue
        try:
            new_result = regex.sub(rule.replace, result)
        except (re.error, IndexError) as e:
            # Bad replacement template, e.g. "\q" or a group the pattern lacks.
            logger.error("Invalid transform %r -> %r: %s", rule.search, rule.replace, e)
            continue
        if new_result != result:
            logger.debug("Transform applied: %r -> %r", result, new_result)
            result = new_result
    return result

# ------------------------------ Heuristics -----------------------------------


def extract_title(name: str) -> str:
    """Strip trailing episode/season markers from a normalized name."""
    title = name
    for regex in TITLE_TAIL_RES:
        title = regex.sub("", title)
    return _clean_title(title)


def extract_episode(name: str, patterns: Sequence[str]) -> int:
    """First episode-only pattern whose first group parses wins; 0 otherwise."""
    for pattern in patterns:
        regex = _compile(pattern)
        if regex is None:
            continue
        m = regex.search(name)
        if m:
            episode = _to_int(_group(m, 1))
            if episode is not None:
                return episode
    return 0


def extract_quality(filename: str, keywords: Sequence[str]) -> str:
    lower = filename.lower()
    for keyword in keywords:
        if keyword and keyword.lower() in lower:
            return keyword
    return UNKNOWN


def extract_group(stem: str, patterns: Sequence[str]) -> str:
    for pattern in patterns:
        regex = _compile(pattern)
        if regex is None:
            continue
        m = regex.search(stem)
        if m:
            group = _group(m, 1)
            if group:
                return group
    return UNKNOWN

# ------------------------------- Extraction ----------------------------------


def match_structured(name: str, patterns: Sequence[EpisodePattern]) -> Optional[ParsedEpisode]:
    """
    Try structured patterns in order against a normalized name.

    Returns a partially filled ParsedEpisode (title/season/episode only) for
    the first pattern whose title group captured something, else None.
    """
    for pat in patterns:
        regex = _compile(pat.pattern)
        if regex is None:
            continue
        m = regex.search(name)
        if not m:
            continue
        title = _clean_title(_group(m, pat.title_group) or "")
        if not title:
            continue

        season = _to_int(_group(m, pat.season_group)) if pat.season_group else None
        episode = _to_int(_group(m, pat.episode_group)) if pat.episode_group else None
        parsed = ParsedEpisode(
            original_filename="",
            file_path="",
            title=title,
            season=season if season is not None else 1,
            episode=episode if episode is not None else 0,
        )
        logger.debug("Pattern matched: %s -> Title: %s, Season: %d, Episode: %d",
                     pat.pattern, parsed.title, parsed.season, parsed.episode)
        return parsed
    return None


def parse_episode_filename(filename: str, file_path: str, config: ParserConfig) -> ParsedEpisode:
    """
    Parse a video filename into a ParsedEpisode.

    Parameters
    ----------
    filename : str
        Base name of the file, extension included.
    file_path : str
        Full path, carried through to the import request.
    config : ParserConfig
        Patterns and transforms to use.

    Returns
    -------
    ParsedEpisode
        A valid record (non-empty title, non-zero episode).

    Raises
    ------
    ExtractionError
        When no title or no episode number could be derived.
    """
    stem = os.path.splitext(filename)[0]
    clean_name = apply_transforms(stem, config.transforms)
    logger.debug("Cleaned filename: %s", clean_name)

    record = ParsedEpisode(original_filename=filename, file_path=file_path)

    matched = match_structured(clean_name, config.patterns)
    if matched is not None:
        record.title = matched.title
        record.season = matched.season
        record.episode = matched.episode
    else:
        record.title = extract_title(clean_name)
        record.episode = extract_episode(clean_name, config.episode_patterns)
        logger.debug("No structured pattern matched %r; fallback gave title=%r episode=%d",
                     clean_name, record.title, record.episode)

    record.quality = extract_quality(filename, config.quality_patterns)
    record.group = extract_group(stem, config.group_patterns)

    if not record.is_valid:
        raise ExtractionError(filename, record.title, record.episode)
    return record
