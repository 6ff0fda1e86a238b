# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "rich",
# ]
# ///
"""Lighthouse Branch Comparison CLI Tool.

Runs Lighthouse audits (local CLI or PageSpeed Insights API) against a list
of URLs, optionally on two git branches of a project, and reports the score
and metric deltas between them as improvements and regressions.
"""

from __future__ import annotations

import argparse
import json
import math
import os
import subprocess
import sys
import tempfile
import time
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import total_ordering
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import urlparse

import pandas as pd
import requests
from rich.console import Console
from rich.table import Table

__version__ = "1.0.0"

out_console = Console()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CATEGORY_KEYS = ("performance", "accessibility", "best-practices", "seo")
METRIC_KEYS = (
    "first-contentful-paint",
    "largest-contentful-paint",
    "speed-index",
    "cumulative-layout-shift",
    "total-blocking-time",
)

CATEGORY_LABELS = MappingProxyType({
    "performance": "Performance",
    "accessibility": "Accessibility",
    "best-practices": "Best Practices",
    "seo": "SEO",
})

METRIC_LABELS = MappingProxyType({
    "first-contentful-paint": "First Contentful Paint",
    "largest-contentful-paint": "Largest Contentful Paint",
    "speed-index": "Speed Index",
    "cumulative-layout-shift": "Cumulative Layout Shift",
    "total-blocking-time": "Total Blocking Time",
})

# Metrics rendered without a unit and at 3-decimal precision
UNITLESS_METRICS = frozenset({"cumulative-layout-shift"})

# Flat column names used in CSV exports: (key, column_name)
SCORE_COLUMNS = [(key, key.replace("-", "_") + "_score") for key in CATEGORY_KEYS]
METRIC_COLUMNS = [
    ("first-contentful-paint", "fcp_ms"),
    ("largest-contentful-paint", "lcp_ms"),
    ("speed-index", "speed_index_ms"),
    ("cumulative-layout-shift", "cls"),
    ("total-blocking-time", "tbt_ms"),
]

VALID_BACKENDS = ("lighthouse", "pagespeed")
VALID_STRATEGIES = ("mobile", "desktop")
VALID_OUTPUT_FORMATS = ("json", "csv", "both")
VALID_SUMMARY_FORMATS = ("text", "json", "github")
VALID_IMPACT_NAMES = ("minimal", "low", "medium", "high")

DEFAULT_BACKEND = "lighthouse"
DEFAULT_LIGHTHOUSE_BIN = "lighthouse"
DEFAULT_CHROME_FLAGS = "--headless --no-sandbox"
DEFAULT_TIMEOUT = 300
DEFAULT_STRATEGY = "mobile"
DEFAULT_OUTPUT_FORMAT = "json"
DEFAULT_OUTPUT_DIR = "./reports"

GIT_TIMEOUT = 60

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_TIMEOUT = 120
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}

REGRESSION_EXIT_CODE = 2

CONFIG_FILENAMES = ["lighthouse-compare.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-compare",
]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LighthouseCompareError(Exception):
    """Base class for all errors raised by this tool."""


class AuditError(LighthouseCompareError):
    """Raised when auditing a single URL fails."""


class MalformedReportError(AuditError):
    """Raised when a Lighthouse report cannot be parsed or lacks categories/audits."""


class BranchCheckoutError(LighthouseCompareError):
    """Raised when a branch cannot be checked out; aborts that branch's batch."""


class RequestValidationError(LighthouseCompareError):
    """Raised when a request is rejected before any work starts."""


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "backend": "backend",
        "lighthouse_bin": "lighthouse_bin",
        "chrome_flags": "chrome_flags",
        "timeout": "timeout",
        "strategy": "strategy",
        "urls_file": "file",
        "project_path": "project",
        "baseline": "baseline",
        "candidate": "candidate",
        "output_format": "output_format",
        "output_dir": "output_dir",
        "fail_on": "fail_on",
        "summary_format": "summary_format",
        "webhook_url": "webhook",
        "webhook_on": "webhook_on",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        # Only fill options the active subcommand actually defines
        if not hasattr(args, arg_dest):
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if hasattr(args, "api_key") and not args.api_key:
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@total_ordering
class ImpactLevel(Enum):
    """Coarse magnitude bucket for a score or metric change."""

    MINIMAL = "Minimal"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _IMPACT_ORDER.index(self)

    def __lt__(self, other: ImpactLevel) -> bool:
        if not isinstance(other, ImpactLevel):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def from_name(cls, name: str) -> ImpactLevel:
        """Look up a level by case-insensitive name ("low", "High", ...)."""
        for level in cls:
            if level.value.lower() == name.strip().lower():
                return level
        raise ValueError(f"unknown impact level: {name!r}")


_IMPACT_ORDER = (ImpactLevel.MINIMAL, ImpactLevel.LOW, ImpactLevel.MEDIUM, ImpactLevel.HIGH)

# (inclusive lower bound, level), checked top-down
SCORE_IMPACT_THRESHOLDS = ((20, ImpactLevel.HIGH), (10, ImpactLevel.MEDIUM), (5, ImpactLevel.LOW))
CLS_IMPACT_THRESHOLDS = ((0.25, ImpactLevel.HIGH), (0.10, ImpactLevel.MEDIUM), (0.05, ImpactLevel.LOW))
TIMING_IMPACT_PERCENT_THRESHOLDS = ((50, ImpactLevel.HIGH), (25, ImpactLevel.MEDIUM), (10, ImpactLevel.LOW))


@dataclass(frozen=True)
class AuditReport:
    """Result of auditing one URL, either fully scored or an error."""

    url: str
    branch: str | None = None
    scores: Mapping[str, Any] | None = None
    metrics: Mapping[str, Any] | None = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_comparable(self) -> bool:
        return not self.is_error and self.scores is not None and self.metrics is not None

    @classmethod
    def failed(cls, url: str, branch: str | None, message: str) -> AuditReport:
        return cls(url=url, branch=branch, error=message)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditReport:
        branch = data.get("branch", data.get("branchLabel"))
        error = data.get("error")
        if error:
            return cls(url=data.get("url", ""), branch=branch, error=str(error))
        scores = data.get("scores")
        metrics = data.get("metrics")
        return cls(
            url=data.get("url", ""),
            branch=branch,
            scores=dict(scores) if isinstance(scores, Mapping) else None,
            metrics=dict(metrics) if isinstance(metrics, Mapping) else None,
        )

    def to_dict(self) -> dict:
        if self.is_error:
            return {"url": self.url, "branch": self.branch, "error": self.error}
        return {
            "url": self.url,
            "branch": self.branch,
            "scores": dict(self.scores or {}),
            "metrics": dict(self.metrics or {}),
        }


@dataclass(frozen=True)
class ScoreDelta:
    category: str
    baseline: float
    comparison: float
    change: float
    improvement: bool
    change_percent: int
    impact: ImpactLevel

    @property
    def label(self) -> str:
        return category_label(self.category)

    @property
    def regression(self) -> bool:
        return self.change < 0

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "label": self.label,
            "baseline": self.baseline,
            "comparison": self.comparison,
            "change": self.change,
            "improvement": self.improvement,
            "changePercent": self.change_percent,
            "impact": self.impact.value,
        }


@dataclass(frozen=True)
class MetricDelta:
    metric: str
    baseline: float
    comparison: float
    change: float
    improvement: bool
    change_percent: int
    formatted_baseline: str
    formatted_comparison: str
    formatted_change: str
    impact: ImpactLevel

    @property
    def label(self) -> str:
        return metric_label(self.metric)

    @property
    def regression(self) -> bool:
        return self.change != 0 and not self.improvement

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "label": self.label,
            "baseline": self.baseline,
            "comparison": self.comparison,
            "change": self.change,
            "improvement": self.improvement,
            "changePercent": self.change_percent,
            "formattedBaseline": self.formatted_baseline,
            "formattedComparison": self.formatted_comparison,
            "formattedChange": self.formatted_change,
            "impact": self.impact.value,
        }


@dataclass(frozen=True)
class UrlChanges:
    """Score and metric deltas falling into one direction (better or worse)."""

    scores: tuple[ScoreDelta, ...] = ()
    metrics: tuple[MetricDelta, ...] = ()

    @property
    def count(self) -> int:
        return len(self.scores) + len(self.metrics)

    def __bool__(self) -> bool:
        return self.count > 0

    def to_dict(self) -> dict:
        return {
            "scores": [delta.to_dict() for delta in self.scores],
            "metrics": [delta.to_dict() for delta in self.metrics],
        }


@dataclass(frozen=True)
class UrlComparison:
    url: str
    score_changes: Mapping[str, ScoreDelta]
    metric_changes: Mapping[str, MetricDelta]
    improvements: UrlChanges
    regressions: UrlChanges

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "scoreChanges": {key: delta.to_dict() for key, delta in self.score_changes.items()},
            "metricChanges": {key: delta.to_dict() for key, delta in self.metric_changes.items()},
            "improvements": self.improvements.to_dict(),
            "regressions": self.regressions.to_dict(),
        }


@dataclass(frozen=True)
class ComparisonSummary:
    total_urls: int = 0
    urls_with_improvements: int = 0
    urls_with_regressions: int = 0
    total_improvements: int = 0
    total_regressions: int = 0
    skipped_urls: int = 0

    def to_dict(self) -> dict:
        return {
            "totalUrls": self.total_urls,
            "urlsWithImprovements": self.urls_with_improvements,
            "urlsWithRegressions": self.urls_with_regressions,
            "totalImprovements": self.total_improvements,
            "totalRegressions": self.total_regressions,
            "skippedUrls": self.skipped_urls,
        }


@dataclass(frozen=True)
class ComparisonResult:
    baseline_label: str
    candidate_label: str
    per_url: tuple[UrlComparison, ...] = ()
    improvements: tuple[UrlComparison, ...] = ()
    regressions: tuple[UrlComparison, ...] = ()
    summary: ComparisonSummary = field(default_factory=ComparisonSummary)

    def to_dict(self) -> dict:
        return {
            "baselineLabel": self.baseline_label,
            "candidateLabel": self.candidate_label,
            "perUrl": [comparison.to_dict() for comparison in self.per_url],
            "improvements": [comparison.to_dict() for comparison in self.improvements],
            "regressions": [comparison.to_dict() for comparison in self.regressions],
            "summary": self.summary.to_dict(),
        }


# ---------------------------------------------------------------------------
# Comparison Engine
# ---------------------------------------------------------------------------


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (JavaScript Math.round)."""
    return math.floor(value + 0.5)


def category_label(key: str) -> str:
    return CATEGORY_LABELS.get(key, key)


def metric_label(key: str) -> str:
    return METRIC_LABELS.get(key, key)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _classify(magnitude: float, thresholds: Sequence[tuple[float, ImpactLevel]]) -> ImpactLevel:
    for lower_bound, level in thresholds:
        if magnitude >= lower_bound:
            return level
    return ImpactLevel.MINIMAL


def score_impact(change: float) -> ImpactLevel:
    """Impact of a 0-100 score change, by absolute points."""
    return _classify(abs(change), SCORE_IMPACT_THRESHOLDS)


def metric_impact(metric: str, change: float, baseline: float) -> ImpactLevel:
    """Impact of a metric change.

    Layout shift is judged on the absolute change; timing metrics on the
    percentage change relative to the baseline value.
    """
    if metric in UNITLESS_METRICS:
        # strip float noise so 0.15 - 0.10 lands on the 0.05 boundary
        return _classify(round(abs(change), 9), CLS_IMPACT_THRESHOLDS)
    percent = abs(change) / baseline * 100 if baseline > 0 else 0
    return _classify(percent, TIMING_IMPACT_PERCENT_THRESHOLDS)


def format_metric_value(metric: str, value: float) -> str:
    if metric in UNITLESS_METRICS:
        return f"{value:.3f}"
    return f"{round_half_up(value)}ms"


def format_metric_change(metric: str, change: float) -> str:
    sign = "+" if change > 0 else ""
    return f"{sign}{format_metric_value(metric, change)}"


def compare_score(category: str, baseline: float, comparison: float) -> ScoreDelta:
    change = comparison - baseline
    change_percent = round_half_up(change / baseline * 100) if baseline > 0 else 0
    return ScoreDelta(
        category=category,
        baseline=baseline,
        comparison=comparison,
        change=change,
        improvement=change > 0,
        change_percent=change_percent,
        impact=score_impact(change),
    )


def compare_metric(metric: str, baseline: float, comparison: float) -> MetricDelta:
    change = comparison - baseline
    change_percent = round_half_up(abs(change) / baseline * 100) if baseline > 0 else 0
    return MetricDelta(
        metric=metric,
        baseline=baseline,
        comparison=comparison,
        change=change,
        improvement=change < 0,
        change_percent=change_percent,
        formatted_baseline=format_metric_value(metric, baseline),
        formatted_comparison=format_metric_value(metric, comparison),
        formatted_change=format_metric_change(metric, change),
        impact=metric_impact(metric, change, baseline),
    )


def compare_reports(baseline: AuditReport, candidate: AuditReport) -> UrlComparison | None:
    """Compare one positional pair. Returns None when either side is not comparable."""
    if not (baseline.is_comparable and candidate.is_comparable):
        return None

    score_changes: dict[str, ScoreDelta] = {}
    for category, baseline_score in baseline.scores.items():
        candidate_score = candidate.scores.get(category)
        if _is_number(baseline_score) and _is_number(candidate_score):
            score_changes[category] = compare_score(category, baseline_score, candidate_score)

    metric_changes: dict[str, MetricDelta] = {}
    for metric, baseline_value in baseline.metrics.items():
        candidate_value = candidate.metrics.get(metric)
        if _is_number(baseline_value) and _is_number(candidate_value):
            metric_changes[metric] = compare_metric(metric, baseline_value, candidate_value)

    improvements = UrlChanges(
        scores=tuple(delta for delta in score_changes.values() if delta.improvement),
        metrics=tuple(delta for delta in metric_changes.values() if delta.improvement),
    )
    regressions = UrlChanges(
        scores=tuple(delta for delta in score_changes.values() if delta.regression),
        metrics=tuple(delta for delta in metric_changes.values() if delta.regression),
    )

    return UrlComparison(
        url=baseline.url,
        score_changes=MappingProxyType(score_changes),
        metric_changes=MappingProxyType(metric_changes),
        improvements=improvements,
        regressions=regressions,
    )


def compare_branches(
    baseline_reports: Sequence[AuditReport],
    candidate_reports: Sequence[AuditReport],
    baseline_label: str,
    candidate_label: str,
) -> ComparisonResult:
    """Pair two audit runs by position and classify every score/metric delta.

    Pairs are matched by index, not by URL; the shorter run bounds the
    comparison. Pairs where either side errored are skipped.
    """
    if len(baseline_reports) != len(candidate_reports):
        print(
            f"Warning: {baseline_label} has {len(baseline_reports)} result(s) but "
            f"{candidate_label} has {len(candidate_reports)}; comparing the first "
            f"{min(len(baseline_reports), len(candidate_reports))} by position",
            file=sys.stderr,
        )

    per_url: list[UrlComparison] = []
    improvements: list[UrlComparison] = []
    regressions: list[UrlComparison] = []
    total_pairs = 0

    for baseline, candidate in zip(baseline_reports, candidate_reports):
        total_pairs += 1
        if baseline.url != candidate.url:
            print(
                f"Warning: position {total_pairs} pairs {baseline.url} with {candidate.url}",
                file=sys.stderr,
            )
        url_comparison = compare_reports(baseline, candidate)
        if url_comparison is None:
            continue
        per_url.append(url_comparison)
        if url_comparison.improvements:
            improvements.append(url_comparison)
        if url_comparison.regressions:
            regressions.append(url_comparison)

    summary = ComparisonSummary(
        total_urls=total_pairs,
        urls_with_improvements=len(improvements),
        urls_with_regressions=len(regressions),
        total_improvements=sum(c.improvements.count for c in per_url),
        total_regressions=sum(c.regressions.count for c in per_url),
        skipped_urls=total_pairs - len(per_url),
    )

    return ComparisonResult(
        baseline_label=baseline_label,
        candidate_label=candidate_label,
        per_url=tuple(per_url),
        improvements=tuple(improvements),
        regressions=tuple(regressions),
        summary=summary,
    )


def has_regression_at_least(result: ComparisonResult, level: ImpactLevel) -> bool:
    """True when any regressing score or metric has impact >= level."""
    for url_comparison in result.regressions:
        deltas = (*url_comparison.regressions.scores, *url_comparison.regressions.metrics)
        if any(delta.impact >= level for delta in deltas):
            return True
    return False


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------


def build_lighthouse_command(
    url: str,
    output_path: Path,
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN,
    chrome_flags: str = DEFAULT_CHROME_FLAGS,
) -> list[str]:
    return [
        lighthouse_bin,
        url,
        "--output=json",
        f"--output-path={output_path}",
        f"--chrome-flags={chrome_flags}",
    ]


def report_filename(branch: str | None) -> str:
    timestamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
    safe_branch = (branch or "single").replace("/", "-")
    return f"lighthouse-{timestamp}-{safe_branch}.json"


def run_lighthouse(
    url: str,
    branch: str | None = None,
    project_path: str | None = None,
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN,
    chrome_flags: str = DEFAULT_CHROME_FLAGS,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict:
    """Run the Lighthouse CLI for one URL and return the parsed JSON report.

    The report is written to a temporary directory rather than the project
    directory, so the checked-out working tree is never modified.
    """
    with tempfile.TemporaryDirectory(prefix="lighthouse-compare-") as tmp_dir:
        output_path = Path(tmp_dir) / report_filename(branch)
        command = build_lighthouse_command(url, output_path, lighthouse_bin, chrome_flags)
        try:
            completed = subprocess.run(
                command,
                cwd=project_path or os.getcwd(),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise AuditError(f"Lighthouse executable not found: {lighthouse_bin}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AuditError(f"Lighthouse timed out after {timeout}s for {url}") from exc
        except (OSError, UnicodeError) as exc:
            raise AuditError(f"Lighthouse could not be run for {url}: {exc}") from exc

        if completed.returncode != 0:
            raise AuditError(
                f"Lighthouse failed with exit code {completed.returncode}: {completed.stderr.strip()}"
            )

        try:
            with open(output_path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            raise MalformedReportError(f"Failed to parse Lighthouse report: {exc}") from exc


def fetch_pagespeed_result(
    url: str,
    strategy: str = DEFAULT_STRATEGY,
    api_key: str | None = None,
    categories: Sequence[str] = CATEGORY_KEYS,
) -> dict:
    """Fetch a PageSpeed Insights result for a single URL.

    Retries on 429/500/503 with exponential backoff.
    """
    # requests supports list values for repeated query params
    params: dict[str, str | list[str]] = {
        "url": url,
        "strategy": strategy,
        "category": list(categories),
    }
    if api_key:
        params["key"] = api_key

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.get(PAGESPEED_API_URL, params=params, timeout=PAGESPEED_TIMEOUT)

            if response.status_code == 200:
                return response.json()

            if response.status_code in RETRYABLE_STATUS_CODES:
                retry_after = response.headers.get("Retry-After")
                if retry_after and response.status_code == 429:
                    wait_time = float(retry_after)
                else:
                    wait_time = RETRY_BASE_DELAY * (2**attempt)
                last_error = AuditError(f"HTTP {response.status_code} for {url} ({strategy})")
                if attempt < MAX_RETRIES:
                    time.sleep(wait_time)
                    continue

            error_detail = ""
            try:
                error_body = response.json()
                error_detail = error_body.get("error", {}).get("message", response.text[:200])
            except (ValueError, KeyError, AttributeError):
                error_detail = response.text[:200]
            raise AuditError(f"HTTP {response.status_code} for {url} ({strategy}): {error_detail}")

        except requests.RequestException as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue

    raise AuditError(f"Failed after {MAX_RETRIES + 1} attempts for {url} ({strategy}): {last_error}")


def extract_report(raw_report: Mapping[str, Any], url: str, branch: str | None = None) -> AuditReport:
    """Extract the fixed category scores and metrics from a Lighthouse result.

    Accepts the bare Lighthouse result, a Node API style ``{"lhr": ...}``
    wrapper, or a PageSpeed ``{"lighthouseResult": ...}`` response.
    """
    if not isinstance(raw_report, Mapping):
        raise MalformedReportError("Invalid Lighthouse report: expected a JSON object")
    lhr = raw_report.get("lhr") or raw_report.get("lighthouseResult") or raw_report
    if not isinstance(lhr, Mapping) or not lhr.get("categories") or not lhr.get("audits"):
        raise MalformedReportError("Invalid Lighthouse report: missing categories or audits")

    categories = lhr["categories"]
    audits = lhr["audits"]

    try:
        scores = {}
        for category in CATEGORY_KEYS:
            score = (categories.get(category) or {}).get("score")
            scores[category] = round_half_up(score * 100) if score is not None else 0

        metrics = {}
        for metric in METRIC_KEYS:
            value = (audits.get(metric) or {}).get("numericValue")
            metrics[metric] = value if value is not None else 0
    except (AttributeError, TypeError) as exc:
        raise MalformedReportError(f"Invalid Lighthouse report: {exc}") from exc

    return AuditReport(url=url, branch=branch, scores=scores, metrics=metrics)


def audit_url(
    url: str,
    branch: str | None = None,
    project_path: str | None = None,
    *,
    backend: str = DEFAULT_BACKEND,
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN,
    chrome_flags: str = DEFAULT_CHROME_FLAGS,
    timeout: float = DEFAULT_TIMEOUT,
    strategy: str = DEFAULT_STRATEGY,
    api_key: str | None = None,
) -> AuditReport:
    """Audit one URL. Failures come back as an error report, never raised."""
    try:
        if backend == "pagespeed":
            raw_report = fetch_pagespeed_result(url, strategy, api_key)
        else:
            raw_report = run_lighthouse(
                url,
                branch,
                project_path,
                lighthouse_bin=lighthouse_bin,
                chrome_flags=chrome_flags,
                timeout=timeout,
            )
        return extract_report(raw_report, url, branch)
    except AuditError as exc:
        return AuditReport.failed(url, branch, str(exc))


def audit_urls(
    urls: Sequence[str],
    branch: str | None = None,
    project_path: str | None = None,
    verbose: bool = False,
    on_result: Callable[[AuditReport], None] | None = None,
    **audit_options: Any,
) -> list[AuditReport]:
    """Audit URLs one at a time, in order. One entry per URL, errors included."""
    reports: list[AuditReport] = []
    total = len(urls)
    branch_label = f" [{branch}]" if branch else ""

    for index, url in enumerate(urls, start=1):
        if verbose:
            print(f"  Auditing {url}{branch_label}...", file=sys.stderr)
        report = audit_url(url, branch, project_path, **audit_options)
        if report.is_error:
            print(f"  Error: {report.error}", file=sys.stderr)
        reports.append(report)
        if on_result is not None:
            on_result(report)
        print(f"\r  Progress: {index}/{total}{branch_label}", end="", file=sys.stderr, flush=True)

    print("", file=sys.stderr)  # newline after progress
    return reports


# ---------------------------------------------------------------------------
# Branch Switching
# ---------------------------------------------------------------------------


def _run_git(project_path: str, *git_args: str) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["git", *git_args],
            cwd=project_path,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except FileNotFoundError as exc:
        raise BranchCheckoutError("git executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise BranchCheckoutError(f"git {' '.join(git_args)} timed out") from exc


def is_git_repository(project_path: str) -> bool:
    result = _run_git(project_path, "rev-parse", "--is-inside-work-tree")
    return result.returncode == 0 and result.stdout.strip() == "true"


def checkout_branch(project_path: str, branch: str) -> None:
    """Check out ``branch`` in ``project_path`` or raise BranchCheckoutError."""
    prefix = f"Failed to check out branch {branch}"
    if not Path(project_path).is_dir():
        raise BranchCheckoutError(f"{prefix}: {project_path} does not exist")
    try:
        if not is_git_repository(project_path):
            raise BranchCheckoutError(f"{prefix}: {project_path} is not a git repository")
        result = _run_git(project_path, "checkout", branch)
    except BranchCheckoutError as exc:
        if str(exc).startswith(prefix):
            raise
        raise BranchCheckoutError(f"{prefix}: {exc}") from exc
    if result.returncode != 0:
        raise BranchCheckoutError(f"{prefix}: {result.stderr.strip()}")


def current_ref(project_path: str) -> str | None:
    """Return the checked-out branch name, or the commit SHA when detached."""
    result = _run_git(project_path, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    ref = result.stdout.strip()
    if ref == "HEAD":
        result = _run_git(project_path, "rev-parse", "HEAD")
        if result.returncode != 0:
            return None
        ref = result.stdout.strip()
    return ref or None


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def audit_branch(
    urls: Sequence[str],
    project_path: str,
    branch: str,
    verbose: bool = False,
    **audit_options: Any,
) -> list[AuditReport]:
    """Check out a branch, then audit every URL against it."""
    checkout_branch(project_path, branch)
    print(f"Checked out branch {branch} in {project_path}", file=sys.stderr)
    return audit_urls(urls, branch, project_path, verbose=verbose, **audit_options)


def run_branch_comparison(
    urls: Sequence[str],
    project_path: str,
    baseline_branch: str,
    candidate_branch: str,
    restore: bool = True,
    verbose: bool = False,
    **audit_options: Any,
) -> dict:
    """Audit the baseline branch, then the candidate branch, and compare them.

    Returns ``{"branch1": [...], "branch2": [...], "comparison": ComparisonResult}``.
    When ``restore`` is set, the ref checked out beforehand is restored
    afterwards, whether or not the run succeeded.
    """
    original_ref = None
    if restore and Path(project_path).is_dir() and is_git_repository(project_path):
        original_ref = current_ref(project_path)

    try:
        baseline_reports = audit_branch(urls, project_path, baseline_branch, verbose=verbose, **audit_options)
        candidate_reports = audit_branch(urls, project_path, candidate_branch, verbose=verbose, **audit_options)
    finally:
        if original_ref:
            _restore_ref(project_path, original_ref)

    comparison = compare_branches(baseline_reports, candidate_reports, baseline_branch, candidate_branch)
    return {"branch1": baseline_reports, "branch2": candidate_reports, "comparison": comparison}


def _restore_ref(project_path: str, ref: str) -> None:
    try:
        checkout_branch(project_path, ref)
    except BranchCheckoutError as exc:
        print(f"Warning: could not restore {ref}: {exc}", file=sys.stderr)


def results_to_payload(results: Mapping[str, Any]) -> dict:
    """Convert orchestrator results into the JSON-ready response body."""
    payload: dict[str, Any] = {}
    for key, value in results.items():
        if isinstance(value, ComparisonResult):
            payload[key] = value.to_dict()
        else:
            payload[key] = [report.to_dict() for report in value]
    return payload


def validate_request(payload: Any) -> list[str]:
    """Return the request's URL list or raise RequestValidationError."""
    urls = payload.get("urls") if isinstance(payload, Mapping) else None
    if isinstance(urls, str):
        urls = [urls]
    if not urls:
        raise RequestValidationError("At least one URL is required")
    if not isinstance(urls, (list, tuple)):
        raise RequestValidationError("'urls' must be a URL or a list of URLs")
    return [str(url) for url in urls]


def process_request(payload: Any, verbose: bool = False, **audit_options: Any) -> tuple[int, dict]:
    """Handle one audit request and return ``(status_code, body)``.

    ``payload`` has the shape ``{urls, projectPath?, branch1?, branch2?}``.
    A branch comparison runs only when both branches and a project path are
    given; otherwise the URLs are audited once in the current directory.
    """
    try:
        urls = validate_request(payload)
    except RequestValidationError as exc:
        return 400, {"error": str(exc)}

    project_path = payload.get("projectPath")
    branch1 = payload.get("branch1")
    branch2 = payload.get("branch2")

    try:
        if branch1 and branch2 and project_path:
            results = run_branch_comparison(
                urls, project_path, branch1, branch2, verbose=verbose, **audit_options
            )
        else:
            results = {"single": audit_urls(urls, verbose=verbose, **audit_options)}
    except Exception as exc:
        print(f"Error: audit request failed: {exc}", file=sys.stderr)
        return 500, {"error": str(exc)}

    return 200, results_to_payload(results)


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc:
        return None
    return url


def load_urls(url_args: list[str], file_path: str | None, allow_stdin: bool = True) -> list[str]:
    """Load URLs from positional args, file, or stdin. Returns validated list."""
    raw_urls: list[str] = []

    if url_args:
        raw_urls.extend(url_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            print(f"Error: URL file not found: {file_path}", file=sys.stderr)
            sys.exit(1)
        raw_urls.extend(path.read_text().splitlines())
    elif allow_stdin and not sys.stdin.isatty():
        raw_urls.extend(sys.stdin.read().splitlines())

    seen: set[str] = set()
    validated: list[str] = []
    for raw in raw_urls:
        cleaned = validate_url(raw)
        if cleaned:
            if cleaned not in seen:
                seen.add(cleaned)
                validated.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            print(f"Warning: skipping invalid URL: {raw.strip()}", file=sys.stderr)

    if not validated:
        print("Error: no valid URLs provided.", file=sys.stderr)
        sys.exit(1)

    return validated


# ---------------------------------------------------------------------------
# Output Formats
# ---------------------------------------------------------------------------


def generate_output_path(output_dir: str, label: str, extension: str) -> Path:
    """Generate a timestamped output file path."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    safe_label = label.replace("/", "-")
    return dir_path / f"{timestamp}-{safe_label}.{extension}"


def reports_to_dataframe(reports: Iterable[AuditReport]) -> pd.DataFrame:
    """Flatten audit reports into one row per report."""
    rows = []
    for report in reports:
        row: dict[str, Any] = {"url": report.url, "branch": report.branch, "error": report.error}
        for key, column in SCORE_COLUMNS:
            row[column] = (report.scores or {}).get(key)
        for key, column in METRIC_COLUMNS:
            row[column] = (report.metrics or {}).get(key)
        rows.append(row)
    columns = ["url", "branch", "error"] + [c for _, c in SCORE_COLUMNS] + [c for _, c in METRIC_COLUMNS]
    return pd.DataFrame(rows, columns=columns)


def _cell(row: pd.Series, column: str) -> Any:
    value = row.get(column)
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if hasattr(value, "item"):
        # numpy scalar -> plain Python number
        return value.item()
    return value


def dataframe_to_reports(dataframe: pd.DataFrame) -> list[AuditReport]:
    """Rebuild audit reports from a flattened DataFrame (inverse of reports_to_dataframe)."""
    reports = []
    for _, row in dataframe.iterrows():
        url = str(_cell(row, "url") or "")
        branch = _cell(row, "branch")
        error = _cell(row, "error")
        if error:
            reports.append(AuditReport.failed(url, branch, str(error)))
            continue
        scores = {key: _cell(row, column) for key, column in SCORE_COLUMNS if column in dataframe.columns}
        metrics = {key: _cell(row, column) for key, column in METRIC_COLUMNS if column in dataframe.columns}
        reports.append(AuditReport(url=url, branch=branch, scores=scores, metrics=metrics))
    return reports


def comparison_to_dataframe(result: ComparisonResult) -> pd.DataFrame:
    """Flatten a comparison into one row per URL and score/metric."""
    rows = []
    for url_comparison in result.per_url:
        for delta in url_comparison.score_changes.values():
            rows.append({
                "url": url_comparison.url,
                "kind": "score",
                "key": delta.category,
                "label": delta.label,
                "baseline": delta.baseline,
                "comparison": delta.comparison,
                "change": delta.change,
                "change_percent": delta.change_percent,
                "impact": delta.impact.value,
                "improvement": delta.improvement,
                "regression": delta.regression,
            })
        for delta in url_comparison.metric_changes.values():
            rows.append({
                "url": url_comparison.url,
                "kind": "metric",
                "key": delta.metric,
                "label": delta.label,
                "baseline": delta.baseline,
                "comparison": delta.comparison,
                "change": delta.change,
                "change_percent": delta.change_percent,
                "impact": delta.impact.value,
                "improvement": delta.improvement,
                "regression": delta.regression,
            })
    columns = [
        "url", "kind", "key", "label", "baseline", "comparison",
        "change", "change_percent", "impact", "improvement", "regression",
    ]
    return pd.DataFrame(rows, columns=columns)


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


def output_json(payload: Mapping[str, Any], output_path: Path, metadata: Mapping[str, Any] | None = None) -> str:
    """Write a response payload to JSON inside a metadata envelope. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "tool_version": __version__,
            **(metadata or {}),
        },
        **payload,
    }
    with open(output_path, "w") as fh:
        json.dump(output_data, fh, indent=2, default=str)
    return str(output_path)


def write_data_files(
    results: Mapping[str, Any],
    output_format: str,
    output_dir: str,
    explicit_output: str | None,
    label: str,
    metadata: Mapping[str, Any] | None = None,
) -> list[str]:
    """Write JSON and/or CSV data files for a run. Returns list of written paths.

    JSON holds the full response body; CSV holds the comparison deltas when
    there is a comparison, otherwise the flattened audit reports.
    """
    written_files: list[str] = []

    if output_format in ("json", "both"):
        if explicit_output:
            json_path = Path(explicit_output).with_suffix(".json")
        else:
            json_path = generate_output_path(output_dir, label, "json")
        written_files.append(output_json(results_to_payload(results), json_path, metadata))

    if output_format in ("csv", "both"):
        if explicit_output:
            csv_path = Path(explicit_output).with_suffix(".csv")
        else:
            csv_path = generate_output_path(output_dir, label, "csv")
        comparison = results.get("comparison")
        if isinstance(comparison, ComparisonResult):
            dataframe = comparison_to_dataframe(comparison)
        else:
            reports = [report for key, value in results.items() if key != "comparison" for report in value]
            dataframe = reports_to_dataframe(reports)
        written_files.append(output_csv(dataframe, csv_path))

    print(f"\nResults written to:", file=sys.stderr)
    for filepath in written_files:
        print(f"  {filepath}", file=sys.stderr)

    return written_files


def load_report(file_path: str, side: str | None = None) -> list[AuditReport]:
    """Load audit reports from a CSV or JSON results file.

    JSON may be a bare list of reports, a ``{"results": [...]}`` envelope, or
    a single-run response body with a ``"single"`` key. For a branch
    comparison body, ``side`` picks ``"branch1"`` or ``"branch2"``.
    """
    path = Path(file_path)
    if not path.is_file():
        print(f"Error: report file not found: {file_path}", file=sys.stderr)
        sys.exit(1)

    suffix = path.suffix.lower()
    if suffix == ".csv":
        dataframe = pd.read_csv(path)
        dataframe = dataframe.astype(object).where(pd.notna(dataframe), None)
        return dataframe_to_reports(dataframe)
    elif suffix == ".json":
        try:
            with open(path) as fh:
                data = json.load(fh)
        except ValueError as exc:
            print(f"Error: malformed report file {file_path}: {exc}", file=sys.stderr)
            sys.exit(1)
        if isinstance(data, Mapping):
            keys = (side,) if side else ("results", "single")
            for key in keys:
                if key in data:
                    data = data[key]
                    break
            else:
                if not side and "branch1" in data:
                    print(
                        f"Error: {file_path} holds a branch comparison; choose a side with branch1 or branch2",
                        file=sys.stderr,
                    )
                    sys.exit(1)
        if not isinstance(data, list):
            print(f"Error: no audit results found in {file_path}", file=sys.stderr)
            sys.exit(1)
        return [AuditReport.from_dict(item) for item in data if isinstance(item, Mapping)]
    else:
        print(f"Error: unsupported file format '{suffix}'. Use .csv or .json.", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Terminal & Summary Formatting
# ---------------------------------------------------------------------------


def format_terminal_table(reports: Sequence[AuditReport]) -> str:
    """Format audit reports as an aligned terminal table."""
    lines = []
    for report in reports:
        lines.append(f"\n{'=' * 60}")
        lines.append(f"  URL:      {report.url}")
        if report.branch:
            lines.append(f"  Branch:   {report.branch}")

        if report.is_error:
            lines.append(f"  Error:    {report.error}")
            lines.append(f"{'=' * 60}")
            continue

        lines.append(f"{'=' * 60}")

        for key in CATEGORY_KEYS:
            score = (report.scores or {}).get(key)
            if score is None:
                continue
            if key == "performance":
                indicator = "GOOD" if score >= 90 else ("NEEDS WORK" if score >= 50 else "POOR")
                lines.append(f"  {category_label(key)}: {score}/100 ({indicator})")
            else:
                lines.append(f"  {category_label(key)}: {score}/100")

        lines.append("  --- Metrics ---")
        for key in METRIC_KEYS:
            value = (report.metrics or {}).get(key)
            if _is_number(value):
                lines.append(f"    {metric_label(key):.<36} {format_metric_value(key, value)}")

    return "\n".join(lines)


def _impact_style(delta: ScoreDelta | MetricDelta) -> str:
    if delta.improvement:
        return "green"
    if delta.regression:
        return "bold red" if delta.impact >= ImpactLevel.MEDIUM else "red"
    return "dim"


def build_url_table(url_comparison: UrlComparison, baseline_label: str, candidate_label: str) -> Table:
    """Build a rich table of every score and metric delta for one URL."""
    table = Table(title=url_comparison.url, title_justify="left")
    table.add_column("Measure")
    table.add_column(baseline_label, justify="right")
    table.add_column(candidate_label, justify="right")
    table.add_column("Change", justify="right")
    table.add_column("Impact")

    for delta in url_comparison.score_changes.values():
        style = _impact_style(delta)
        change = f"{delta.change:+g} ({delta.change_percent:+d}%)"
        table.add_row(
            delta.label,
            f"{delta.baseline:g}",
            f"{delta.comparison:g}",
            f"[{style}]{change}[/{style}]",
            delta.impact.value,
        )
    for delta in url_comparison.metric_changes.values():
        style = _impact_style(delta)
        change = f"{delta.formatted_change} ({delta.change_percent}%)"
        table.add_row(
            delta.label,
            delta.formatted_baseline,
            delta.formatted_comparison,
            f"[{style}]{change}[/{style}]",
            delta.impact.value,
        )
    return table


def build_summary_table(result: ComparisonResult) -> Table:
    summary = result.summary
    table = Table(title=f"{result.baseline_label} -> {result.candidate_label}", title_justify="left")
    table.add_column("Summary")
    table.add_column("Count", justify="right")
    table.add_row("URLs", str(summary.total_urls))
    table.add_row("URLs skipped (errors)", str(summary.skipped_urls))
    table.add_row("URLs with improvements", str(summary.urls_with_improvements))
    table.add_row("URLs with regressions", str(summary.urls_with_regressions))
    table.add_row("[green]Improvements[/green]", str(summary.total_improvements))
    table.add_row("[red]Regressions[/red]", str(summary.total_regressions))
    return table


def print_comparison(result: ComparisonResult, console: Console | None = None) -> None:
    """Render per-URL delta tables followed by the summary."""
    console = console or out_console
    for url_comparison in result.per_url:
        console.print(build_url_table(url_comparison, result.baseline_label, result.candidate_label))
    console.print(build_summary_table(result))


def format_comparison_json(result: ComparisonResult) -> str:
    return json.dumps(result.to_dict(), indent=2, default=str)


def format_comparison_github(result: ComparisonResult) -> str:
    """Format regressions as GitHub Actions annotations."""
    lines = []
    for url_comparison in result.regressions:
        url = url_comparison.url
        for delta in url_comparison.regressions.scores:
            lines.append(
                f"::warning::Regression: {url} {delta.label} "
                f"{delta.baseline:g} -> {delta.comparison:g} ({delta.change:+g}, {delta.impact.value})"
            )
        for delta in url_comparison.regressions.metrics:
            lines.append(
                f"::warning::Regression: {url} {delta.label} "
                f"{delta.formatted_baseline} -> {delta.formatted_comparison} "
                f"({delta.formatted_change}, {delta.impact.value})"
            )
    if not lines:
        lines.append(
            f"::notice::No regressions: {result.candidate_label} vs {result.baseline_label} "
            f"({result.summary.total_improvements} improvement(s))"
        )
    return "\n".join(lines)


def send_comparison_webhook(webhook_url: str, payload: Mapping[str, Any]) -> None:
    """POST a comparison payload to a webhook URL. Failures are warnings only."""
    try:
        response = requests.post(webhook_url, json=payload, timeout=30)
        response.raise_for_status()
    except (requests.RequestException, OSError) as exc:
        print(f"Warning: webhook delivery failed: {exc}", file=sys.stderr)


def _report_comparison(result: ComparisonResult, args: argparse.Namespace) -> int:
    """Print the comparison, fire the webhook, and return the exit code."""
    cli_explicit = set(getattr(args, "_explicit_args", []))
    summary_format = getattr(args, "summary_format", "text")
    if "summary_format" not in cli_explicit and os.environ.get("GITHUB_ACTIONS"):
        summary_format = "github"

    if summary_format == "json":
        print(format_comparison_json(result))
    elif summary_format == "github":
        print(format_comparison_github(result))
    else:
        print_comparison(result)

    webhook_url = getattr(args, "webhook", None)
    if webhook_url:
        webhook_on = getattr(args, "webhook_on", "always")
        if webhook_on == "always" or (webhook_on == "regression" and result.regressions):
            send_comparison_webhook(webhook_url, result.to_dict())

    fail_on = getattr(args, "fail_on", None)
    if fail_on and has_regression_at_least(result, ImpactLevel.from_name(fail_on)):
        print(f"Regressions at or above '{fail_on}' impact found", file=sys.stderr)
        return REGRESSION_EXIT_CODE
    return 0


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def _add_audit_options(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--backend", dest="backend", action=TrackingAction, default=DEFAULT_BACKEND, choices=VALID_BACKENDS, help="Audit backend: local Lighthouse CLI or PageSpeed Insights API")
    subparser.add_argument("--lighthouse-bin", dest="lighthouse_bin", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_BIN, help="Lighthouse executable (default: lighthouse)")
    subparser.add_argument("--chrome-flags", dest="chrome_flags", action=TrackingAction, default=DEFAULT_CHROME_FLAGS, help="Flags passed to Chrome by Lighthouse")
    subparser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=DEFAULT_TIMEOUT, help="Seconds before a single Lighthouse run is abandoned")
    subparser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="PageSpeed strategy: mobile or desktop")
    subparser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="PageSpeed API key (or set PAGESPEED_API_KEY env var)")


def _add_output_options(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--output-format", dest="output_format", action=TrackingAction, default=DEFAULT_OUTPUT_FORMAT, choices=VALID_OUTPUT_FORMATS, help="Output format: json, csv, or both")
    subparser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Explicit output file path (overrides auto-naming)")
    subparser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named output files")


def _add_summary_options(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--fail-on", dest="fail_on", action=TrackingAction, default=None, choices=VALID_IMPACT_NAMES, help=f"Exit with code {REGRESSION_EXIT_CODE} if any regression reaches this impact")
    subparser.add_argument("--summary-format", dest="summary_format", action=TrackingAction, default="text", choices=VALID_SUMMARY_FORMATS, help="Comparison output: text, json, or github annotations")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-compare",
        description="Run Lighthouse across URLs and compare two git branches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- audit ---
    audit_parser = subparsers.add_parser("audit", help="Audit URLs against the current working tree")
    audit_parser.add_argument("urls", nargs="*", default=[], help="URLs to audit")
    audit_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    _add_audit_options(audit_parser)
    _add_output_options(audit_parser)

    # --- compare-branches ---
    branches_parser = subparsers.add_parser("compare-branches", help="Audit URLs on two git branches and compare")
    branches_parser.add_argument("urls", nargs="*", default=[], help="URLs to audit")
    branches_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    branches_parser.add_argument("--project", dest="project", action=TrackingAction, default=None, help="Path to the git repository serving the URLs")
    branches_parser.add_argument("--baseline", dest="baseline", action=TrackingAction, default=None, help="Baseline branch (reference)")
    branches_parser.add_argument("--candidate", dest="candidate", action=TrackingAction, default=None, help="Candidate branch (evaluated against the baseline)")
    branches_parser.add_argument("--no-restore", dest="no_restore", action=TrackingStoreTrueAction, default=False, help="Leave the candidate branch checked out afterwards")
    branches_parser.add_argument("--webhook", dest="webhook", action=TrackingAction, default=None, help="Webhook URL for comparison notifications")
    branches_parser.add_argument("--webhook-on", dest="webhook_on", action=TrackingAction, default="always", choices=("always", "regression"), help="When to send webhook: always or on regression only")
    _add_audit_options(branches_parser)
    _add_output_options(branches_parser)
    _add_summary_options(branches_parser)

    # --- compare ---
    compare_parser = subparsers.add_parser("compare", help="Compare two saved audit result files")
    compare_parser.add_argument("before", help="Path to the baseline results (CSV or JSON)")
    compare_parser.add_argument("after", help="Path to the candidate results (CSV or JSON)")
    compare_parser.add_argument("--baseline-label", dest="baseline_label", default=None, help="Label for the baseline (default: file name)")
    compare_parser.add_argument("--candidate-label", dest="candidate_label", default=None, help="Label for the candidate (default: file name)")
    compare_parser.add_argument("--before-side", dest="before_side", default=None, choices=("branch1", "branch2"), help="Which branch of a compare-branches JSON file to use as the baseline")
    compare_parser.add_argument("--after-side", dest="after_side", default=None, choices=("branch1", "branch2"), help="Which branch of a compare-branches JSON file to use as the candidate")
    _add_summary_options(compare_parser)

    # --- request ---
    request_parser = subparsers.add_parser("request", help="Process a JSON audit request {urls, projectPath, branch1, branch2}")
    request_parser.add_argument("payload", help="Path to the JSON request, or '-' for stdin")
    _add_audit_options(request_parser)

    return parser


def _audit_options(args: argparse.Namespace) -> dict:
    return {
        "backend": getattr(args, "backend", DEFAULT_BACKEND),
        "lighthouse_bin": getattr(args, "lighthouse_bin", DEFAULT_LIGHTHOUSE_BIN),
        "chrome_flags": getattr(args, "chrome_flags", DEFAULT_CHROME_FLAGS),
        "timeout": getattr(args, "timeout", DEFAULT_TIMEOUT),
        "strategy": getattr(args, "strategy", DEFAULT_STRATEGY),
        "api_key": getattr(args, "api_key", None),
    }


# ---------------------------------------------------------------------------
# Subcommand: audit
# ---------------------------------------------------------------------------


def cmd_audit(args: argparse.Namespace) -> None:
    """Audit URLs against the current working tree and write report files."""
    urls = load_urls(getattr(args, "urls", []), getattr(args, "file", None))
    print(f"Auditing {len(urls)} URL(s) with backend: {args.backend}", file=sys.stderr)

    reports = audit_urls(urls, verbose=args.verbose, **_audit_options(args))
    print(format_terminal_table(reports))

    write_data_files(
        {"single": reports},
        getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT),
        getattr(args, "output_dir", DEFAULT_OUTPUT_DIR),
        getattr(args, "output", None),
        "single",
        metadata={"total_urls": len(urls), "backend": args.backend},
    )

    errors = sum(1 for report in reports if report.is_error)
    if errors:
        print(f"  Errors: {errors}/{len(reports)}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Subcommand: compare-branches
# ---------------------------------------------------------------------------


def cmd_compare_branches(args: argparse.Namespace) -> None:
    """Audit URLs on two branches, compare, and write report files."""
    missing = [flag for flag, dest in (("--project", "project"), ("--baseline", "baseline"), ("--candidate", "candidate")) if not getattr(args, dest, None)]
    if missing:
        print(f"Error: compare-branches requires {', '.join(missing)}", file=sys.stderr)
        sys.exit(1)

    urls = load_urls(getattr(args, "urls", []), getattr(args, "file", None))
    print(
        f"Comparing {len(urls)} URL(s): {args.baseline} (baseline) vs {args.candidate} (candidate)",
        file=sys.stderr,
    )

    try:
        results = run_branch_comparison(
            urls,
            args.project,
            args.baseline,
            args.candidate,
            restore=not getattr(args, "no_restore", False),
            verbose=args.verbose,
            **_audit_options(args),
        )
    except BranchCheckoutError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    write_data_files(
        results,
        getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT),
        getattr(args, "output_dir", DEFAULT_OUTPUT_DIR),
        getattr(args, "output", None),
        f"{args.baseline}-vs-{args.candidate}",
        metadata={"total_urls": len(urls), "backend": args.backend, "project_path": args.project},
    )

    sys.exit(_report_comparison(results["comparison"], args))


# ---------------------------------------------------------------------------
# Subcommand: compare
# ---------------------------------------------------------------------------


def cmd_compare(args: argparse.Namespace) -> None:
    """Compare two saved result files by position."""
    baseline_reports = load_report(args.before, getattr(args, "before_side", None))
    candidate_reports = load_report(args.after, getattr(args, "after_side", None))
    baseline_label = args.baseline_label or Path(args.before).stem
    candidate_label = args.candidate_label or Path(args.after).stem

    result = compare_branches(baseline_reports, candidate_reports, baseline_label, candidate_label)
    sys.exit(_report_comparison(result, args))


# ---------------------------------------------------------------------------
# Subcommand: request
# ---------------------------------------------------------------------------


def cmd_request(args: argparse.Namespace) -> None:
    """Process a JSON request like the original HTTP endpoint and print the response."""
    try:
        if args.payload == "-":
            payload = json.load(sys.stdin)
        else:
            with open(args.payload) as fh:
                payload = json.load(fh)
    except (OSError, ValueError) as exc:
        print(f"Error: cannot read request {args.payload}: {exc}", file=sys.stderr)
        sys.exit(1)

    status, body = process_request(payload, verbose=args.verbose, **_audit_options(args))
    print(json.dumps(body, indent=2, default=str))
    sys.exit(0 if status == 200 else 1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "audit": cmd_audit,
        "compare-branches": cmd_compare_branches,
        "compare": cmd_compare,
        "request": cmd_request,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
