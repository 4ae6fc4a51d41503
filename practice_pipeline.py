#!/usr/bin/env python3
"""
Practice Lead Pipeline - Fault-Tolerant Healthcare Lead Automation

Production Features:
- Every phase degrades to a labelled fallback instead of failing the run
- Ordered provisioning strategies ending in a dependency-free mock
- Circuit breakers and jittered retries around every external provider
- Bounded, thread-safe workflow history for status and recovery
- Windowed batch processing with pacing between windows
- Per-workflow log capture attached to each result

Steps:
1. Enrich the practice URL: Exa search scoped to the practice host, regex
   classification of the returned copy, lead scoring, practice id assignment.
   Without Exa (or when it fails) a URL-derived fallback record is used.
2. Validate and normalize the record for the structured store.
3. Upsert the record into the Notion leads database. Store failures produce a
   local fallback record so the workflow keeps going.
4. Optionally provision a demo: GitHub repository + Railway service, falling
   back through reuse-existing-repo, deploy-without-repo and finally a mock.

Environment variables configure providers and limits. Run with
`python practice_pipeline.py --url https://drsmith-dental.example.com`.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import html
import json
import logging
import os
import random
import re
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from collections import Counter, deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from content_classifier import ClassifiedContent, ContentClassifier
from log_capture import WorkflowLogCapture

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PHASE_ENRICHMENT = "enrichment"
PHASE_VALIDATION = "validation"
PHASE_PERSISTENCE = "persistence"
PHASE_PROVISIONING = "provisioning"

STATUS_COMPLETE = "complete"
STATUS_PARTIAL = "partial-success"
STATUS_FAILED = "failed"

STRATEGY_FULL_CREATE = "full-create-then-deploy"
STRATEGY_REUSE_REPO = "reuse-existing-repo-then-deploy"
STRATEGY_DEPLOY_ONLY = "deploy-without-repo"
STRATEGY_MOCK = "no-dependency-mock"
METHOD_ALL_FAILED = "all-failed"

# Lead scoring weights
SCORE_BASE = 50
SCORE_PER_SERVICE = 5
SCORE_SERVICES_CAP = 25
SCORE_PER_TREATMENT = 3
SCORE_TREATMENTS_CAP = 20
SCORE_PHONE = 10
SCORE_EMAIL = 10
SCORE_LOCATION = 5
SCORE_SPECIALIZATIONS = 5
SCORE_RICH_CONTENT = 5
RICH_CONTENT_THRESHOLD = 1000

# Per-record caps: (max items, max chars per item)
SERVICES_LIMITS = (10, 50)
TREATMENTS_LIMITS = (15, 50)
SPECIALIZATIONS_LIMITS = (8, 40)

# Store field limits
MAX_TEXT_LENGTH = 2000
MAX_SERVICES_TEXT = 1000
MAX_TREATMENTS_TEXT = 1000
MAX_SPECIALIZATIONS_TEXT = 500
MIN_PHONE_DIGITS = 10

FALLBACK_COMPANY = "Healthcare Practice"
FALLBACK_LOCATION = "Healthcare Location"
PLACEHOLDER_LOCATION = "Practice Location"
DEFAULT_PRACTICE_TYPE = "general-healthcare"
DEFAULT_SERVICES: Tuple[str, ...] = ("Healthcare Services",)
DEFAULT_TREATMENTS: Tuple[str, ...] = ("Consultation",)
DEFAULT_SPECIALIZATIONS_TEXT = "General Healthcare"
LEAD_STATUS_CAPTURED = "Lead Captured"

LOCATION_HINTS = [
    "london",
    "newyork",
    "sydney",
    "toronto",
    "vancouver",
    "melbourne",
    "amsterdam",
    "berlin",
    "paris",
]
GENERIC_HOST_TOKENS: Set[str] = {"www", "example", "web", "site", "online", "home"}
_TLD_SUFFIX = re.compile(r"\.(?:com|org|net|co\.uk|nl|de|fr|io|health)$")
_FORBIDDEN_HOST_CHARS = re.compile(r"[\s<>\[\]^|\\]")

# Location keyword -> domain filters for lead discovery
LOCATION_DOMAINS: Dict[str, List[str]] = {
    "london": [".co.uk", ".uk"],
    "uk": [".co.uk", ".uk"],
    "canada": [".ca"],
    "toronto": [".ca"],
    "vancouver": [".ca"],
    "australia": [".com.au", ".au"],
    "sydney": [".com.au", ".au"],
    "amsterdam": [".nl"],
    "netherlands": [".nl"],
    "germany": [".de"],
    "berlin": [".de"],
}

TELEGRAM_API_URL = "https://api.telegram.org"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidTargetError(PipelineError, ValueError):
    """The target identifier cannot be parsed as a practice URL."""


class ProviderNotConfiguredError(PipelineError):
    """A provider client was called without the credentials it needs."""


class StoreUnavailableError(PipelineError):
    """The structured store could not accept the record."""


class CircuitOpenError(PipelineError, RuntimeError):
    """Raised instead of calling a provider whose circuit is open."""


class StrategyError(PipelineError):
    """A provisioning strategy failed; carries any artifacts it left behind."""

    def __init__(self, message: str, category: str = "other", partial: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.category = category
        self.partial: Dict[str, Any] = dict(partial or {})


class OrchestrationError(PipelineError):
    """Unexpected fault in the orchestrator itself, outside phase isolation."""

    def __init__(self, phase: str, cause: BaseException):
        super().__init__(f"Workflow failed during {phase}: {cause}")
        self.phase = phase
        self.cause = cause


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
    max_retries: int = 3,
    retry_backoff: float = 1.5,
) -> Any:
    """
    Perform an HTTP request with JSON support and lightweight retry handling.

    Args:
        method: HTTP method (GET/POST/PATCH/etc.)
        url: Base URL (without query params)
        headers: Optional request headers
        json_body: Optional payload; serialized to JSON if provided
        params: Optional dict appended as query string
        timeout: Per-attempt timeout in seconds
        max_retries: Total attempts before failing
        retry_backoff: Base backoff (seconds) for retryable errors

    Returns:
        Parsed JSON response (dict/list) when possible, else decoded text.

    Raises:
        urllib.error.URLError / urllib.error.HTTPError if all retries fail.
    """
    headers = dict(headers or {})
    data: Optional[bytes] = None

    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    if params:
        encoded = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{url}?{encoded}"

    attempt = 0
    while True:
        attempt += 1
        req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read()
                if not raw:
                    return {}
                text = raw.decode("utf-8", errors="ignore")
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    if "application/json" in (resp.headers.get("Content-Type", "") or "").lower():
                        logging.debug("Failed to decode JSON despite header; returning text")
                    return text

        except urllib.error.HTTPError as exc:
            retryable = exc.code == 429 or exc.code >= 500
            if retryable and attempt < max_retries:
                base_wait = (_retry_after_delay(exc) if exc.code == 429 else None) or (retry_backoff * attempt)
                # Jitter keeps concurrent workflows from retrying in lockstep
                wait_for = base_wait * (0.5 + random.random())
                logging.warning(
                    "HTTP %s from %s; retrying in %.1fs (attempt %d/%d)",
                    exc.code,
                    url,
                    wait_for,
                    attempt,
                    max_retries,
                )
                time.sleep(wait_for)
                continue
            raise

        except urllib.error.URLError as exc:
            if attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning("Network error %s; retrying in %.1fs (attempt %d/%d)", exc, wait_for, attempt, max_retries)
                time.sleep(wait_for)
                continue
            raise


def _retry_after_delay(error: urllib.error.HTTPError) -> Optional[float]:
    """Helper to parse Retry-After header."""
    retry_after = error.headers.get("Retry-After") if getattr(error, "headers", None) else None
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        try:
            parsed = datetime.strptime(retry_after, "%a, %d %b %Y %H:%M:%S %Z")
            delta = parsed.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
            return max(delta.total_seconds(), 0.0)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Circuit breaker pattern for provider resilience
# ---------------------------------------------------------------------------

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    Stop hammering a provider that keeps failing.

    Calls arrive from worker threads (see ``_call_external``), so state
    transitions happen under a lock. The wrapped call itself runs unlocked.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 300.0,
        expected_exception: type = Exception,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = threading.Lock()

    def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection."""
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.last_failure_time and time.time() - self.last_failure_time > self.recovery_timeout:
                    logging.info("Circuit breaker %s entering HALF_OPEN state", self.name)
                    self.state = CircuitState.HALF_OPEN
                else:
                    raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN")

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "failure_count": self.failure_count,
                "last_failure_time": self.last_failure_time,
            }

    def _on_success(self):
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logging.info("Circuit breaker %s recovered, entering CLOSED state", self.name)
            self.failure_count = 0
            self.state = CircuitState.CLOSED

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logging.error("Circuit breaker %s OPEN after %d failures", self.name, self.failure_count)
                self.state = CircuitState.OPEN


async def _call_external(
    func: Callable[..., Any],
    *args: Any,
    timeout: float,
    breaker: Optional[CircuitBreaker] = None,
    **kwargs: Any,
) -> Any:
    """Run a blocking provider call in a worker thread, bounded by ``timeout``."""
    if breaker is not None:
        call = functools.partial(breaker.call, func, *args, **kwargs)
    else:
        call = functools.partial(func, *args, **kwargs)
    return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _load_env_file(path: str = ".env.local") -> None:
    """
    Load environment variables from a simple KEY=VALUE file if present.

    Existing environment variables take precedence. Search order:
    1. Explicit override via PRACTICE_PIPELINE_ENV_FILE.
    2. The provided `path` relative to the current working directory.
    3. The same path relative to this module's directory.
    """
    if not path:
        return

    candidates: List[Path] = []
    override = os.getenv("PRACTICE_PIPELINE_ENV_FILE")
    if override:
        candidates.append(Path(override).expanduser())

    raw_path = Path(path)
    if raw_path.is_absolute():
        candidates.append(raw_path)
    else:
        candidates.append(Path.cwd() / raw_path)
        candidates.append(Path(__file__).resolve().parent / raw_path)

    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()
                    if not key:
                        continue
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
            # Stop after the first successfully loaded file.
            return
        except OSError as exc:
            print(f"Warning: failed to load environment file {candidate}: {exc}", file=sys.stderr)


@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    # Search / content provider
    exa_api_key: str = field(default_factory=lambda: os.getenv("EXA_API_KEY", ""))
    exa_base_url: str = field(default_factory=lambda: os.getenv("EXA_BASE_URL", "https://api.exa.ai"))

    # Structured store
    notion_api_key: str = field(
        default_factory=lambda: os.getenv("NOTION_API_KEY") or os.getenv("NOTION_TOKEN", "")
    )
    notion_database_id: str = field(default_factory=lambda: os.getenv("NOTION_DATABASE_ID", ""))
    notion_base_url: str = field(default_factory=lambda: os.getenv("NOTION_BASE_URL", "https://api.notion.com/v1"))
    notion_version: str = field(default_factory=lambda: os.getenv("NOTION_VERSION", "2022-06-28"))

    # Source control
    github_token: str = field(default_factory=lambda: os.getenv("GITHUB_TOKEN", ""))
    github_owner: str = field(default_factory=lambda: os.getenv("GITHUB_OWNER", ""))
    github_template_repo: str = field(default_factory=lambda: os.getenv("GITHUB_TEMPLATE_REPO", ""))
    github_base_url: str = field(default_factory=lambda: os.getenv("GITHUB_API_URL", "https://api.github.com"))

    # Hosting
    railway_token: str = field(
        default_factory=lambda: os.getenv("RAILWAY_API_TOKEN") or os.getenv("RAILWAY_TOKEN", "")
    )
    railway_project_id: str = field(default_factory=lambda: os.getenv("RAILWAY_PROJECT_ID", ""))
    railway_environment_id: str = field(default_factory=lambda: os.getenv("RAILWAY_ENVIRONMENT_ID", ""))
    railway_api_url: str = field(
        default_factory=lambda: os.getenv("RAILWAY_API_URL", "https://backboard.railway.app/graphql/v2")
    )
    railway_fallback_image: str = field(
        default_factory=lambda: os.getenv("RAILWAY_FALLBACK_IMAGE", "nginxdemos/hello:latest")
    )

    # Notification channel
    telegram_bot_token: str = field(default_factory=lambda: os.getenv("TELEGRAM_BOT_TOKEN", ""))
    telegram_chat_id: str = field(default_factory=lambda: os.getenv("TELEGRAM_CHAT_ID", ""))

    # Timeouts and pacing
    external_call_timeout: float = field(default_factory=lambda: float(os.getenv("EXTERNAL_CALL_TIMEOUT", "30")))
    http_max_retries: int = field(default_factory=lambda: int(os.getenv("HTTP_MAX_RETRIES", "2")))
    batch_concurrency: int = field(default_factory=lambda: int(os.getenv("BATCH_CONCURRENCY", "3")))
    batch_pause_seconds: float = field(default_factory=lambda: float(os.getenv("BATCH_PAUSE_SECONDS", "2.0")))
    strategy_pause_seconds: float = field(default_factory=lambda: float(os.getenv("STRATEGY_PAUSE_SECONDS", "1.0")))

    # Workflow behaviour
    provisioning_enabled: bool = field(
        default_factory=lambda: os.getenv("PROVISIONING_ENABLED", "true").lower() == "true"
    )
    history_limit: int = field(default_factory=lambda: int(os.getenv("HISTORY_LIMIT", "500")))
    workflow_log_lines: int = field(default_factory=lambda: int(os.getenv("WORKFLOW_LOG_LINES", "200")))

    # Circuit breaker settings
    circuit_breaker_enabled: bool = field(default_factory=lambda: os.getenv("CIRCUIT_BREAKER_ENABLED", "true").lower() == "true")
    circuit_breaker_threshold: int = field(default_factory=lambda: int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5")))
    circuit_breaker_timeout: float = field(default_factory=lambda: float(os.getenv("CIRCUIT_BREAKER_TIMEOUT", "300")))

    @property
    def http_attempt_timeout(self) -> float:
        """Per-attempt HTTP timeout; all retries together fit inside EXTERNAL_CALL_TIMEOUT."""
        return self.external_call_timeout / max(1, self.http_max_retries)

    def validate(self) -> None:
        """Reject out-of-range limits. Missing provider credentials are not fatal."""
        invalid = []

        if self.external_call_timeout <= 0 or self.external_call_timeout > 600:
            invalid.append(f"EXTERNAL_CALL_TIMEOUT out of range: {self.external_call_timeout}s (0-600s)")
        if self.http_max_retries < 1:
            invalid.append(f"HTTP_MAX_RETRIES must be at least 1 (got {self.http_max_retries})")
        if self.batch_concurrency < 1 or self.batch_concurrency > 20:
            invalid.append(f"BATCH_CONCURRENCY out of range: {self.batch_concurrency} (1-20)")
        if self.batch_pause_seconds < 0:
            invalid.append(f"BATCH_PAUSE_SECONDS cannot be negative (got {self.batch_pause_seconds})")
        if self.strategy_pause_seconds < 0:
            invalid.append(f"STRATEGY_PAUSE_SECONDS cannot be negative (got {self.strategy_pause_seconds})")
        if self.history_limit < 1:
            invalid.append(f"HISTORY_LIMIT too low: {self.history_limit}")
        if self.workflow_log_lines < 0:
            invalid.append(f"WORKFLOW_LOG_LINES cannot be negative (got {self.workflow_log_lines})")
        if self.circuit_breaker_threshold < 1:
            invalid.append(f"CIRCUIT_BREAKER_THRESHOLD too low: {self.circuit_breaker_threshold}")

        if invalid:
            raise ValueError(f"Invalid configuration: {'; '.join(invalid)}")


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------

class HealthCheck:
    """Report which providers are usable; every gap has a fallback path."""

    def __init__(self, config: Config):
        self.config = config

    def providers(self) -> Dict[str, bool]:
        return {
            "exa": bool(self.config.exa_api_key),
            "notion": bool(self.config.notion_api_key and self.config.notion_database_id),
            "github": bool(self.config.github_token),
            "railway": bool(self.config.railway_token and self.config.railway_project_id),
            "telegram": bool(self.config.telegram_bot_token),
        }

    def report(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {"configured": configured, "status": "ready" if configured else "not_configured"}
            for name, configured in self.providers().items()
        }

    def check_all(self, probe: bool = False) -> Tuple[bool, List[str]]:
        """Return (healthy, issues). With ``probe`` also test network reachability."""
        issues: List[str] = []
        providers = self.providers()
        if not providers["exa"]:
            issues.append("Missing EXA_API_KEY: enrichment will use URL-derived fallback records")
        if not providers["notion"]:
            issues.append("Missing NOTION_API_KEY or NOTION_DATABASE_ID: leads will be kept as local fallback records")
        if not providers["github"]:
            issues.append("Missing GITHUB_TOKEN: repository strategies will be skipped")
        if not providers["railway"]:
            issues.append("Missing RAILWAY_API_TOKEN or RAILWAY_PROJECT_ID: hosting strategies will be skipped")

        if probe:
            for name, url in [
                ("Exa", self.config.exa_base_url),
                ("Notion", self.config.notion_base_url),
            ]:
                if not self._check_connectivity(url):
                    issues.append(f"{name} unreachable at {url}")

        return len(issues) == 0, issues

    def _check_connectivity(self, url: str, timeout: float = 5.0) -> bool:
        """Test basic connectivity to URL."""
        try:
            _http_request("GET", url, timeout=timeout, max_retries=1)
            return True
        except urllib.error.HTTPError as exc:
            # Client errors still prove the host is reachable.
            if 400 <= exc.code < 500:
                return True
            logging.debug("Connectivity check for %s failed with HTTP %s", url, exc.code)
            return False
        except Exception as exc:  # noqa: BLE001
            logging.debug("Connectivity check for %s failed: %s", url, exc)
            return False


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LeadRecord:
    """Structured lead for one practice. Read-only once enrichment built it."""

    company: str
    domain: str
    source_url: str
    practice_id: str
    location: str = ""
    phone: str = ""
    email: str = ""
    services: Tuple[str, ...] = ()
    treatments: Tuple[str, ...] = ()
    specializations: Tuple[str, ...] = ()
    practice_type: str = DEFAULT_PRACTICE_TYPE
    lead_score: int = SCORE_BASE
    enrichment_succeeded: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    fallback_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["services"] = list(self.services)
        data["treatments"] = list(self.treatments)
        data["specializations"] = list(self.specializations)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class NormalizedRecord:
    """Flat, store-ready view of a LeadRecord."""

    company: str
    phone: str
    email: str
    location: str
    website: str
    domain: str
    practice_id: str
    status: str
    practice_type: str
    services: str
    treatments: str
    specializations: str
    lead_score: int
    enrichment_succeeded: bool
    scraped_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PersistedRecord:
    record_id: str
    is_fallback: bool
    payload: NormalizedRecord
    fallback_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "is_fallback": self.is_fallback,
            "fallback_reason": self.fallback_reason,
            "payload": self.payload.to_dict(),
        }


@dataclass
class ProvisioningResult:
    method: str
    success: bool
    repo_url: Optional[str] = None
    service_url: Optional[str] = None
    error: Optional[str] = None
    is_mock: bool = False
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PhaseOutcome:
    """Uniform wrapper the orchestrator keeps for every phase."""

    success: bool
    used_fallback: bool
    data: Any = None
    error: Optional[str] = None
    isolated: bool = False
    detail: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        return {
            "success": self.success,
            "used_fallback": self.used_fallback,
            "error": self.error,
            "isolated": self.isolated,
            "detail": self.detail,
            "duration_seconds": self.duration_seconds,
            "data": data,
        }


@dataclass
class WorkflowResult:
    target_url: str
    overall_status: str
    phases: Dict[str, PhaseOutcome]
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    practice_id: Optional[str] = None
    error: Optional[str] = None
    log: List[str] = field(default_factory=list)

    @classmethod
    def failed(cls, target_url: str, error: str) -> "WorkflowResult":
        now = _utcnow()
        return cls(
            target_url=target_url,
            overall_status=STATUS_FAILED,
            phases={},
            started_at=now,
            completed_at=now,
            duration_seconds=0.0,
            error=error,
        )

    @property
    def timing(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }

    @property
    def provisioning(self) -> Optional[ProvisioningResult]:
        outcome = self.phases.get(PHASE_PROVISIONING)
        if outcome is not None and isinstance(outcome.data, ProvisioningResult):
            return outcome.data
        return None

    def summary(self) -> Dict[str, Any]:
        provisioning = self.provisioning
        return {
            "target_url": self.target_url,
            "practice_id": self.practice_id,
            "overall_status": self.overall_status,
            "error": self.error,
            "method": provisioning.method if provisioning else None,
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_url": self.target_url,
            "practice_id": self.practice_id,
            "overall_status": self.overall_status,
            "error": self.error,
            "phases": {name: outcome.to_dict() for name, outcome in self.phases.items()},
            "timing": self.timing,
            "log": list(self.log),
        }


# ---------------------------------------------------------------------------
# Lead scoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoringSignals:
    services: int = 0
    treatments: int = 0
    specializations: int = 0
    has_phone: bool = False
    has_email: bool = False
    has_location: bool = False
    content_length: int = 0


def score_lead(signals: ScoringSignals) -> int:
    """Map enrichment signals to a 0-100 quality score. Pure and monotonic."""
    score = SCORE_BASE
    score += min(max(signals.services, 0) * SCORE_PER_SERVICE, SCORE_SERVICES_CAP)
    score += min(max(signals.treatments, 0) * SCORE_PER_TREATMENT, SCORE_TREATMENTS_CAP)
    if signals.has_phone:
        score += SCORE_PHONE
    if signals.has_email:
        score += SCORE_EMAIL
    if signals.has_location:
        score += SCORE_LOCATION
    if signals.specializations > 0:
        score += SCORE_SPECIALIZATIONS
    if signals.content_length > RICH_CONTENT_THRESHOLD:
        score += SCORE_RICH_CONTENT
    return max(0, min(100, score))


# ---------------------------------------------------------------------------
# Record validation / normalization
# ---------------------------------------------------------------------------

_CONTROL_WHITESPACE = re.compile(r"[\n\r\t]")
_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_DISALLOWED = re.compile(r"[^+\d\s()-]")
_SCHEME_PREFIX = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def _sanitize_text(value: Any, limit: int = MAX_TEXT_LENGTH) -> str:
    if value is None:
        return ""
    text = _NON_PRINTABLE.sub("", _CONTROL_WHITESPACE.sub(" ", str(value))).strip()
    return text[:limit].strip()


def _validate_email(value: Any) -> str:
    email = _sanitize_text(value, 254)
    return email if _EMAIL_PATTERN.match(email) else ""


def _validate_phone(value: Any) -> str:
    phone = _PHONE_DISALLOWED.sub("", _sanitize_text(value, 40)).strip()
    if sum(ch.isdigit() for ch in phone) < MIN_PHONE_DIGITS:
        return ""
    return phone


def _validate_url(value: Any, domain: str = "") -> str:
    url = _sanitize_text(value)
    if not url:
        return f"https://{domain}" if domain else ""
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        parsed = None
    if parsed is not None and parsed.scheme in ("http", "https") and parsed.netloc:
        return url
    return _sanitize_text(f"https://{_SCHEME_PREFIX.sub('', url)}")


def _join_items(value: Union[str, Sequence[str], None], limit: int, default: str) -> str:
    if isinstance(value, str):
        joined = _sanitize_text(value, limit)
    else:
        items = [_sanitize_text(item, 100) for item in (value or ())]
        joined = _sanitize_text(", ".join(item for item in items if item), limit)
    return joined or default


def _clamp_score(value: Any) -> int:
    try:
        score = int(value)
    except (TypeError, ValueError):
        score = SCORE_BASE
    return max(0, min(100, score))


def normalize_record(record: Union[LeadRecord, NormalizedRecord]) -> NormalizedRecord:
    """
    Make a record safe for the store. Total and idempotent.

    Accepts an already-normalized record so ``normalize_record`` can be
    re-applied (recovery, retries) without drifting.
    """
    if isinstance(record, NormalizedRecord):
        website = record.website
        scraped_at = record.scraped_at
        status = record.status
    else:
        website = record.source_url
        scraped_at = record.created_at.isoformat()
        status = LEAD_STATUS_CAPTURED

    domain = _sanitize_text(record.domain, 253)
    return NormalizedRecord(
        company=_sanitize_text(record.company) or FALLBACK_COMPANY,
        phone=_validate_phone(record.phone),
        email=_validate_email(record.email),
        location=_sanitize_text(record.location) or FALLBACK_LOCATION,
        website=_validate_url(website, domain),
        domain=domain,
        practice_id=_sanitize_text(record.practice_id, 100),
        status=_sanitize_text(status, 100) or LEAD_STATUS_CAPTURED,
        practice_type=_sanitize_text(record.practice_type, 100) or "healthcare",
        services=_join_items(record.services, MAX_SERVICES_TEXT, DEFAULT_SERVICES[0]),
        treatments=_join_items(record.treatments, MAX_TREATMENTS_TEXT, DEFAULT_TREATMENTS[0]),
        specializations=_join_items(record.specializations, MAX_SPECIALIZATIONS_TEXT, DEFAULT_SPECIALIZATIONS_TEXT),
        lead_score=_clamp_score(record.lead_score),
        enrichment_succeeded=bool(record.enrichment_succeeded),
        scraped_at=_sanitize_text(scraped_at, 64) or _utcnow().isoformat(),
    )


def _minimal_normalized(record: LeadRecord) -> NormalizedRecord:
    """Store-shaped record built without any validation logic."""
    return NormalizedRecord(
        company=record.company or FALLBACK_COMPANY,
        phone="",
        email="",
        location=FALLBACK_LOCATION,
        website=f"https://{record.domain}" if record.domain else "",
        domain=record.domain,
        practice_id=record.practice_id,
        status=LEAD_STATUS_CAPTURED,
        practice_type="healthcare",
        services=DEFAULT_SERVICES[0],
        treatments=DEFAULT_TREATMENTS[0],
        specializations=DEFAULT_SPECIALIZATIONS_TEXT,
        lead_score=SCORE_BASE,
        enrichment_succeeded=False,
        scraped_at=_utcnow().isoformat(),
    )


# ---------------------------------------------------------------------------
# Target parsing and identifiers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedTarget:
    url: str
    hostname: str


def parse_target(target_url: Any) -> ParsedTarget:
    """Parse a practice URL; a bare host gets an https scheme."""
    if not isinstance(target_url, str) or not target_url.strip():
        raise InvalidTargetError("Target URL must be a non-empty string")
    raw = target_url.strip()
    if "://" not in raw:
        raw = f"https://{raw}"
    try:
        parsed = urllib.parse.urlparse(raw)
        hostname = (parsed.hostname or "").lower().rstrip(".")
    except ValueError as exc:
        raise InvalidTargetError(f"Cannot parse target URL {target_url!r}: {exc}") from exc
    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidTargetError(f"Unsupported URL scheme in {target_url!r}")
    if not hostname or _FORBIDDEN_HOST_CHARS.search(hostname):
        raise InvalidTargetError(f"Cannot parse target URL {target_url!r}: invalid host")
    try:
        # Internationalised and single-label hosts are fine; empty or oversized labels are not
        hostname.encode("idna")
    except UnicodeError as exc:
        raise InvalidTargetError(f"Cannot parse target URL {target_url!r}: invalid host") from exc
    return ParsedTarget(url=raw, hostname=hostname)


def company_from_hostname(hostname: str) -> str:
    """'drsmith-dental.example.com' -> 'Drsmith Dental Healthcare'."""
    name = _TLD_SUFFIX.sub("", re.sub(r"^www\.", "", hostname.lower()))
    parts = [part for part in re.split(r"[.-]", name) if len(part) > 2 and part not in GENERIC_HOST_TOKENS]
    if not parts:
        return FALLBACK_COMPANY
    return " ".join(part[:1].upper() + part[1:] for part in parts) + " Healthcare"


def location_from_hostname(hostname: str) -> str:
    domain = hostname.lower()
    for hint in LOCATION_HINTS:
        if hint in domain:
            return hint[:1].upper() + hint[1:]
    return PLACEHOLDER_LOCATION


class _MillisecondClock:
    """Strictly increasing millisecond counter shared by the process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._last = max(int(time.time() * 1000), self._last + 1)
            return self._last


_practice_id_clock = _MillisecondClock()


def slugify_company(company: str) -> str:
    slug = re.sub(r"[^a-z0-9\s]", "", (company or "").lower())
    slug = re.sub(r"\s+", "-", slug.strip())[:30].strip("-")
    return slug or "practice"


def generate_practice_id(company: str) -> str:
    """Slug of the company plus a six digit time-based suffix."""
    return f"{slugify_company(company)}-{_practice_id_clock.next() % 1_000_000:06d}"


def _fallback_record_id() -> str:
    return f"fallback_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _cap_items(items: Iterable[str], max_items: int, max_length: int) -> Tuple[str, ...]:
    capped: List[str] = []
    for item in items or ():
        text = str(item).strip()[:max_length].strip()
        if text and text not in capped:
            capped.append(text)
        if len(capped) >= max_items:
            break
    return tuple(capped)


def build_lead_record(
    target: ParsedTarget,
    *,
    company: str,
    location: str,
    services: Iterable[str] = (),
    treatments: Iterable[str] = (),
    specializations: Iterable[str] = (),
    phone: str = "",
    email: str = "",
    practice_type: str = DEFAULT_PRACTICE_TYPE,
    content_length: int = 0,
    enrichment_succeeded: bool = False,
    fallback_reason: Optional[str] = None,
) -> LeadRecord:
    """Assemble a LeadRecord, scoring it and assigning its practice id."""
    company = company or FALLBACK_COMPANY
    services_t = _cap_items(services, *SERVICES_LIMITS)
    treatments_t = _cap_items(treatments, *TREATMENTS_LIMITS)
    specializations_t = _cap_items(specializations, *SPECIALIZATIONS_LIMITS)
    signals = ScoringSignals(
        services=len(services_t),
        treatments=len(treatments_t),
        specializations=len(specializations_t),
        has_phone=bool(phone),
        has_email=bool(email),
        has_location=bool(location) and location != PLACEHOLDER_LOCATION,
        content_length=content_length,
    )
    return LeadRecord(
        company=company,
        domain=target.hostname,
        source_url=target.url,
        practice_id=generate_practice_id(company),
        location=location,
        phone=phone,
        email=email,
        services=services_t,
        treatments=treatments_t,
        specializations=specializations_t,
        practice_type=practice_type or DEFAULT_PRACTICE_TYPE,
        lead_score=score_lead(signals),
        enrichment_succeeded=enrichment_succeeded,
        fallback_reason=fallback_reason,
    )


def build_fallback_record(target: ParsedTarget, reason: str) -> LeadRecord:
    """URL-derived record used whenever real enrichment is unavailable."""
    return build_lead_record(
        target,
        company=company_from_hostname(target.hostname),
        location=location_from_hostname(target.hostname),
        services=DEFAULT_SERVICES,
        treatments=DEFAULT_TREATMENTS,
        enrichment_succeeded=False,
        fallback_reason=reason,
    )


def synthesize_recovery_record(practice_id: str) -> LeadRecord:
    """Minimal record rebuilt from a practice id alone."""
    pid = _sanitize_text(practice_id, 100) or "unknown"
    host_label = re.sub(r"[^a-z0-9-]", "", pid.lower()).strip("-") or "unknown"
    domain = f"{host_label}.example.com"
    return LeadRecord(
        company=f"{FALLBACK_COMPANY} {pid}",
        domain=domain,
        source_url=f"https://{domain}",
        practice_id=pid,
        location="Recovery Location",
        services=("Recovery Services",),
        practice_type="healthcare-recovery",
        lead_score=SCORE_BASE,
        enrichment_succeeded=False,
        fallback_reason="synthesized for recovery",
    )


# ---------------------------------------------------------------------------
# Provider clients
# ---------------------------------------------------------------------------

class ExaSearchClient:
    """Exa neural search for practice content and lead discovery."""

    def __init__(self, config: Config):
        self.api_key = config.exa_api_key
        self.base_url = config.exa_base_url.rstrip("/")
        self.timeout = config.http_attempt_timeout
        self.max_retries = config.http_max_retries

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _post_search(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not self.configured:
            raise ProviderNotConfiguredError("Exa API key not configured")
        response = _http_request(
            "POST",
            f"{self.base_url}/search",
            headers={"x-api-key": self.api_key},
            json_body=payload,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        results = response.get("results") if isinstance(response, dict) else None
        return [item for item in results or [] if isinstance(item, dict)]

    def search(self, query: str, scope_host: str) -> str:
        """Return the best page text for ``query`` on ``scope_host`` ('' if none)."""
        results = self._post_search(
            {
                "query": query,
                "type": "neural",
                "useAutoprompt": True,
                "numResults": 3,
                "includeDomains": [scope_host],
                "contents": {"text": {"maxCharacters": 4000, "includeHtmlTags": False}},
            }
        )
        if not results:
            return ""
        return str(results[0].get("text") or "")

    def discover(self, query: str, include_domains: Optional[List[str]] = None, limit: int = 10) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "query": query,
            "type": "neural",
            "useAutoprompt": True,
            "numResults": limit,
            "contents": {"text": {"maxCharacters": 2000, "includeHtmlTags": False}},
        }
        if include_domains:
            payload["includeDomains"] = include_domains
        return self._post_search(payload)


class NotionLeadStore:
    """Upserts normalized leads into a Notion database, keyed on Website."""

    def __init__(self, config: Config):
        self.api_key = config.notion_api_key
        self.database_id = config.notion_database_id
        self.base_url = config.notion_base_url.rstrip("/")
        self.timeout = config.http_attempt_timeout
        self.max_retries = config.http_max_retries
        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Notion-Version": config.notion_version,
            "Content-Type": "application/json",
        }

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.database_id)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return _http_request(
            method,
            f"{self.base_url}/{path.lstrip('/')}",
            headers=self.headers,
            json_body=payload,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

    @staticmethod
    def _rich_text(value: str) -> Dict[str, Any]:
        return {"rich_text": [{"text": {"content": value[:2000]}}] if value else []}

    def _properties(self, record: NormalizedRecord) -> Dict[str, Any]:
        return {
            "Company": {"title": [{"text": {"content": record.company[:2000]}}]},
            "Phone": {"phone_number": record.phone or None},
            "Email": {"email": record.email or None},
            "Location": self._rich_text(record.location),
            "Website": {"url": record.website or None},
            "Domain": self._rich_text(record.domain),
            "Practice ID": self._rich_text(record.practice_id),
            "Status": {"select": {"name": record.status}},
            "Practice Type": {"select": {"name": record.practice_type.replace(",", " ")}},
            "Services": self._rich_text(record.services),
            "Treatments": self._rich_text(record.treatments),
            "Specializations": self._rich_text(record.specializations),
            "Lead Score": {"number": record.lead_score},
            "Enriched": {"checkbox": record.enrichment_succeeded},
            "Scraped At": {"date": {"start": record.scraped_at}},
        }

    def find_existing(self, website: str) -> Optional[str]:
        if not website:
            return None
        response = self._request(
            "POST",
            f"databases/{self.database_id}/query",
            {"filter": {"property": "Website", "url": {"equals": website}}, "page_size": 1},
        )
        results = response.get("results") if isinstance(response, dict) else None
        if results and isinstance(results[0], dict):
            return results[0].get("id")
        return None

    def upsert(self, record: NormalizedRecord) -> str:
        """Create or update the lead page; returns the Notion page id."""
        if not self.configured:
            raise StoreUnavailableError("Notion credentials not configured")
        properties = self._properties(record)
        existing_id = self.find_existing(record.website)
        if existing_id:
            logging.info("Lead %s already in Notion (%s); updating", record.practice_id, existing_id)
            self._request("PATCH", f"pages/{existing_id}", {"properties": properties})
            return existing_id
        page = self._request(
            "POST",
            "pages",
            {"parent": {"database_id": self.database_id}, "properties": properties},
        )
        page_id = page.get("id") if isinstance(page, dict) else None
        if not page_id:
            raise StoreUnavailableError("Notion response missing page id")
        return page_id


def repo_ref_from_url(repo_url: str) -> str:
    """'https://github.com/acme/site' -> 'acme/site'."""
    path = urllib.parse.urlparse(repo_url or "").path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    return path or repo_url


class GitHubClient:
    """Creates and looks up demo repositories."""

    def __init__(self, config: Config):
        self.token = config.github_token
        self.owner = config.github_owner
        self.base_url = config.github_base_url.rstrip("/")
        self.timeout = config.http_attempt_timeout
        self.max_retries = config.http_max_retries

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _require_token(self) -> None:
        if not self.token:
            raise ProviderNotConfiguredError("GitHub token not configured")

    def create_repo(self, name: str, description: str) -> str:
        self._require_token()
        response = _http_request(
            "POST",
            f"{self.base_url}/user/repos",
            headers=self.headers,
            json_body={"name": name, "description": description, "private": False, "auto_init": True},
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        repo_url = response.get("html_url") if isinstance(response, dict) else None
        if not repo_url:
            raise RuntimeError("GitHub repository response missing html_url")
        logging.info("Created GitHub repository %s", repo_url)
        return repo_url

    def find_repo(self, name: str) -> Optional[str]:
        """Return the repository URL for ``owner/name`` (or ``name`` under GITHUB_OWNER)."""
        self._require_token()
        full_name = name if "/" in name else f"{self.owner}/{name}" if self.owner else ""
        if not full_name:
            raise ProviderNotConfiguredError("GITHUB_OWNER not configured for repository lookup")
        try:
            response = _http_request(
                "GET",
                f"{self.base_url}/repos/{full_name}",
                headers=self.headers,
                timeout=self.timeout,
                max_retries=1,
            )
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                return None
            raise
        return response.get("html_url") if isinstance(response, dict) else None


SERVICE_CREATE_MUTATION = """
mutation serviceCreate($input: ServiceCreateInput!) {
  serviceCreate(input: $input) { id name }
}
"""

SERVICE_DOMAIN_MUTATION = """
mutation serviceDomainCreate($input: ServiceDomainCreateInput!) {
  serviceDomainCreate(input: $input) { domain }
}
"""


class RailwayClient:
    """Deploys demo services through the Railway GraphQL API."""

    def __init__(self, config: Config):
        self.token = config.railway_token
        self.project_id = config.railway_project_id
        self.environment_id = config.railway_environment_id
        self.api_url = config.railway_api_url
        self.fallback_image = config.railway_fallback_image
        self.timeout = config.http_attempt_timeout
        self.max_retries = config.http_max_retries

    @property
    def configured(self) -> bool:
        return bool(self.token and self.project_id)

    def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        response = _http_request(
            "POST",
            self.api_url,
            headers={"Authorization": f"Bearer {self.token}"},
            json_body={"query": query, "variables": variables},
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        if not isinstance(response, dict):
            raise RuntimeError("Railway API returned a non-JSON response")
        errors = response.get("errors")
        if errors:
            message = errors[0].get("message") if isinstance(errors[0], dict) else errors[0]
            raise RuntimeError(f"Railway API error: {message}")
        return response.get("data") or {}

    def create_service(self, repo_ref: Optional[str], env_vars: Dict[str, str], name: Optional[str] = None) -> str:
        """Create a service from ``repo_ref`` (or the fallback image) and return its URL."""
        if not self.configured:
            raise ProviderNotConfiguredError("Railway token or project id not configured")
        source = {"repo": repo_ref} if repo_ref else {"image": self.fallback_image}
        data = self._graphql(
            SERVICE_CREATE_MUTATION,
            {
                "input": {
                    "projectId": self.project_id,
                    "name": name,
                    "source": source,
                    "variables": env_vars,
                }
            },
        )
        service_id = (data.get("serviceCreate") or {}).get("id")
        if not service_id:
            raise RuntimeError("Railway deployment response missing service id")
        if not self.environment_id:
            return f"https://railway.app/project/{self.project_id}/service/{service_id}"
        domain_data = self._graphql(
            SERVICE_DOMAIN_MUTATION,
            {"input": {"serviceId": service_id, "environmentId": self.environment_id}},
        )
        domain = (domain_data.get("serviceDomainCreate") or {}).get("domain")
        if not domain:
            raise RuntimeError("Railway deployment response missing service domain")
        return f"https://{domain}"


class TelegramNotifier:
    """Outbound chat notifications. Callers treat failures as non-fatal."""

    def __init__(self, config: Config):
        self.token = config.telegram_bot_token
        self.timeout = config.external_call_timeout

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def send(self, recipient: str, text: str) -> Optional[Dict[str, Any]]:
        if not self.configured:
            logging.warning("Telegram bot token not configured; dropping notification")
            return None
        response = _http_request(
            "POST",
            f"{TELEGRAM_API_URL}/bot{self.token}/sendMessage",
            json_body={"chat_id": recipient, "text": text, "parse_mode": "HTML"},
            timeout=self.timeout,
            max_retries=1,
        )
        logging.info("Telegram message sent to %s", recipient)
        return response if isinstance(response, dict) else None


def format_workflow_summary(result: WorkflowResult) -> str:
    enrichment = result.phases.get(PHASE_ENRICHMENT)
    persistence = result.phases.get(PHASE_PERSISTENCE)
    record = enrichment.data if enrichment and isinstance(enrichment.data, LeadRecord) else None
    lines = [f"<b>Practice lead processed</b> ({html.escape(result.overall_status)})"]
    if record is not None:
        lines.extend(
            [
                f"Practice: {html.escape(record.company)}",
                f"Location: {html.escape(record.location)}",
                f"Treatments: {html.escape(', '.join(record.treatments[:3]) or 'n/a')}",
                f"Services: {html.escape(', '.join(record.services[:3]) or 'n/a')}",
                f"Lead score: {record.lead_score}/100",
            ]
        )
    if persistence and isinstance(persistence.data, PersistedRecord):
        kind = "fallback" if persistence.data.is_fallback else "stored"
        lines.append(f"Record: {html.escape(persistence.data.record_id)} ({kind})")
    provisioning = result.provisioning
    if provisioning and provisioning.service_url:
        lines.append(f"Demo: {html.escape(provisioning.service_url)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Enrichment adapter
# ---------------------------------------------------------------------------

def _noop_track(service: str, success: bool = True) -> None:
    return None


class EnrichmentAdapter:
    """Turns a practice URL into a LeadRecord; degrades to URL-derived data."""

    def __init__(
        self,
        config: Config,
        search: Any,
        classifier: Any,
        *,
        breaker: Optional[CircuitBreaker] = None,
        track: Callable[[str, bool], None] = _noop_track,
    ):
        self.config = config
        self.search = search
        self.classifier = classifier
        self.breaker = breaker
        self.track = track

    async def enrich(self, target_url: str) -> LeadRecord:
        target = parse_target(target_url)
        company = company_from_hostname(target.hostname)
        baseline_location = location_from_hostname(target.hostname)

        if not getattr(self.search, "configured", True):
            logging.warning("Exa API key not configured, using URL-derived data for %s", target.hostname)
            return build_fallback_record(target, "search provider not configured")

        query = f"{company} healthcare services treatments specializations contact information"
        try:
            text = await _call_external(
                self.search.search,
                query,
                target.hostname,
                timeout=self.config.external_call_timeout,
                breaker=self.breaker,
            )
        except asyncio.TimeoutError:
            self.track("exa", False)
            logging.warning("Exa search timed out for %s, falling back", target.hostname)
            return build_fallback_record(target, f"search timed out after {self.config.external_call_timeout:.0f}s")
        except Exception as exc:  # noqa: BLE001
            self.track("exa", False)
            logging.warning("Exa search failed for %s: %s", target.hostname, exc)
            return build_fallback_record(target, f"search failed: {exc}")
        self.track("exa", True)

        text = text if isinstance(text, str) else ""
        if not text.strip():
            logging.info("No Exa content for %s, using URL-derived data", target.hostname)
            return build_fallback_record(target, "search returned no content")

        logging.info("Analyzing %d characters of content for %s", len(text), company)
        try:
            classified: ClassifiedContent = await _call_external(
                self.classifier.classify,
                text,
                timeout=self.config.external_call_timeout,
            )
        except Exception as exc:  # noqa: BLE001
            logging.warning("Content classification failed for %s: %s", target.hostname, exc)
            return build_fallback_record(target, f"classification failed: {exc}")

        record = build_lead_record(
            target,
            company=company,
            location=classified.location or baseline_location,
            services=classified.services,
            treatments=classified.treatments,
            specializations=classified.specializations,
            phone=classified.phone,
            email=classified.email,
            practice_type=classified.practice_type or DEFAULT_PRACTICE_TYPE,
            content_length=classified.content_length or len(text),
            enrichment_succeeded=True,
        )
        logging.info(
            "Enriched %s: %d services, %d treatments, lead score %d",
            record.company,
            len(record.services),
            len(record.treatments),
            record.lead_score,
        )
        return record


# ---------------------------------------------------------------------------
# Persistence adapter
# ---------------------------------------------------------------------------

class LeadPersistence:
    """Stores normalized records; never fails outward."""

    def __init__(
        self,
        config: Config,
        store: Any,
        *,
        breaker: Optional[CircuitBreaker] = None,
        track: Callable[[str, bool], None] = _noop_track,
    ):
        self.config = config
        self.store = store
        self.breaker = breaker
        self.track = track

    async def persist(self, record: NormalizedRecord) -> PersistedRecord:
        try:
            record_id = await _call_external(
                self.store.upsert,
                record,
                timeout=self.config.external_call_timeout,
                breaker=self.breaker,
            )
            if not record_id:
                raise StoreUnavailableError("store returned an empty record id")
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, asyncio.TimeoutError):
                reason = f"store call timed out after {self.config.external_call_timeout:.0f}s"
            else:
                reason = f"{type(exc).__name__}: {exc}"
            self.track("notion", False)
            logging.warning("Lead store unavailable for %s (%s); keeping a local fallback record", record.practice_id, reason)
            return PersistedRecord(
                record_id=_fallback_record_id(),
                is_fallback=True,
                payload=record,
                fallback_reason=reason,
            )
        self.track("notion", True)
        logging.info("Stored lead %s as %s", record.practice_id, record_id)
        return PersistedRecord(record_id=str(record_id), is_fallback=False, payload=record)


# ---------------------------------------------------------------------------
# Provisioning strategies
# ---------------------------------------------------------------------------

SERVICE_CATEGORIES = {"github": "source_control", "railway": "hosting"}


@dataclass(frozen=True)
class ProvisioningContext:
    record: LeadRecord
    repo_name: str
    description: str
    env_vars: Dict[str, str]

    @classmethod
    def from_record(cls, record: LeadRecord) -> "ProvisioningContext":
        env_vars = {
            "PRACTICE_ID": record.practice_id,
            "PRACTICE_NAME": record.company,
            "PRACTICE_LOCATION": record.location,
            "PRACTICE_PHONE": record.phone,
            "PRACTICE_EMAIL": record.email,
            "PRACTICE_TYPE": record.practice_type,
            "PRACTICE_SERVICES": ", ".join(record.services[:5]),
            "PRACTICE_TREATMENTS": ", ".join(record.treatments[:5]),
            "LEAD_SCORE": str(record.lead_score),
        }
        return cls(
            record=record,
            repo_name=f"{record.practice_id}-demo"[:100],
            description=f"Demo site for {record.company}"[:350],
            env_vars={key: value for key, value in env_vars.items() if value},
        )


class ProvisioningStrategy:
    """One way of getting a demo online. Raise or return success=False to fail."""

    name = "strategy"
    requires_external = True

    async def attempt(self, context: ProvisioningContext) -> ProvisioningResult:
        raise NotImplementedError


class _ProviderStrategy(ProvisioningStrategy):
    def __init__(
        self,
        source_control: Any,
        hosting: Any,
        *,
        timeout: float,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
    ):
        self.source_control = source_control
        self.hosting = hosting
        self.timeout = timeout
        self.breakers = breakers or {}

    async def _call(self, service: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await _call_external(func, *args, timeout=self.timeout, breaker=self.breakers.get(service), **kwargs)
        except ProviderNotConfiguredError as exc:
            raise StrategyError(str(exc), category="not_configured") from exc
        except asyncio.TimeoutError as exc:
            raise StrategyError(f"{service} call timed out after {self.timeout:.0f}s", category="timeout") from exc
        except (ConnectionError, urllib.error.URLError) as exc:
            if isinstance(exc, urllib.error.HTTPError):
                raise StrategyError(f"{service} call failed: {exc}", category=SERVICE_CATEGORIES.get(service, "other")) from exc
            raise StrategyError(f"{service} unreachable: {exc}", category="network") from exc
        except Exception as exc:  # noqa: BLE001
            raise StrategyError(f"{service} call failed: {exc}", category=SERVICE_CATEGORIES.get(service, "other")) from exc

    async def _deploy(self, context: ProvisioningContext, repo_ref: Optional[str], repo_url: Optional[str] = None) -> str:
        try:
            return await self._call("railway", self.hosting.create_service, repo_ref, context.env_vars, name=context.repo_name)
        except StrategyError as exc:
            if repo_url:
                # Repository stays behind; later strategies supersede it.
                exc.partial["repo_url"] = repo_url
            raise


class FullCreateStrategy(_ProviderStrategy):
    name = STRATEGY_FULL_CREATE

    async def attempt(self, context: ProvisioningContext) -> ProvisioningResult:
        repo_url = await self._call("github", self.source_control.create_repo, context.repo_name, context.description)
        service_url = await self._deploy(context, repo_ref_from_url(repo_url), repo_url)
        return ProvisioningResult(method=self.name, success=True, repo_url=repo_url, service_url=service_url)


class ReuseRepoStrategy(_ProviderStrategy):
    name = STRATEGY_REUSE_REPO

    def __init__(self, source_control: Any, hosting: Any, *, template_repo: str = "", **kwargs: Any):
        super().__init__(source_control, hosting, **kwargs)
        self.template_repo = template_repo

    async def attempt(self, context: ProvisioningContext) -> ProvisioningResult:
        candidates = [context.repo_name]
        if self.template_repo:
            candidates.append(self.template_repo)
        repo_url = None
        for candidate in candidates:
            repo_url = await self._call("github", self.source_control.find_repo, candidate)
            if repo_url:
                break
        if not repo_url:
            raise StrategyError("no existing repository to reuse", category="source_control")
        service_url = await self._deploy(context, repo_ref_from_url(repo_url), repo_url)
        return ProvisioningResult(method=self.name, success=True, repo_url=repo_url, service_url=service_url)


class DeployWithoutRepoStrategy(_ProviderStrategy):
    name = STRATEGY_DEPLOY_ONLY

    async def attempt(self, context: ProvisioningContext) -> ProvisioningResult:
        service_url = await self._deploy(context, None)
        return ProvisioningResult(method=self.name, success=True, service_url=service_url)


class MockProvisioningStrategy(ProvisioningStrategy):
    """Terminal strategy: synthetic URLs, no external calls, always succeeds."""

    name = STRATEGY_MOCK
    requires_external = False

    async def attempt(self, context: ProvisioningContext) -> ProvisioningResult:
        practice_id = context.record.practice_id
        return ProvisioningResult(
            method=self.name,
            success=True,
            repo_url=f"https://demo.invalid/repos/{context.repo_name}",
            service_url=f"https://{practice_id}.demo.invalid",
            is_mock=True,
        )


class StrategyCascade:
    """
    Try provisioning strategies in priority order; first success wins.

    Failed strategies are logged and the next one runs after a short pause.
    Nothing is retried inside a strategy. The last strategy must not depend
    on external services, which keeps the cascade total.
    """

    def __init__(
        self,
        strategies: Sequence[ProvisioningStrategy],
        *,
        pause_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not strategies:
            raise ValueError("StrategyCascade needs at least one strategy")
        if strategies[-1].requires_external:
            raise ValueError(f"Terminal strategy {strategies[-1].name!r} must not require external services")
        self.strategies = list(strategies)
        self.pause_seconds = pause_seconds
        self._sleep = sleep

    @classmethod
    def default(
        cls,
        config: Config,
        source_control: Any,
        hosting: Any,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
    ) -> "StrategyCascade":
        common = {"timeout": config.external_call_timeout, "breakers": breakers}
        return cls(
            [
                FullCreateStrategy(source_control, hosting, **common),
                ReuseRepoStrategy(source_control, hosting, template_repo=config.github_template_repo, **common),
                DeployWithoutRepoStrategy(source_control, hosting, **common),
                MockProvisioningStrategy(),
            ],
            pause_seconds=config.strategy_pause_seconds,
        )

    @property
    def primary(self) -> str:
        return self.strategies[0].name

    async def provision(self, record: LeadRecord) -> ProvisioningResult:
        context = ProvisioningContext.from_record(record)
        attempts: List[Dict[str, Any]] = []
        total = len(self.strategies)

        for index, strategy in enumerate(self.strategies, 1):
            logging.info("Provisioning %s: strategy %d/%d (%s)", record.practice_id, index, total, strategy.name)
            try:
                result = await strategy.attempt(context)
            except Exception as exc:  # noqa: BLE001
                category = exc.category if isinstance(exc, StrategyError) else "other"
                attempt = {"strategy": strategy.name, "category": category, "error": str(exc)}
                if isinstance(exc, StrategyError) and exc.partial:
                    attempt["partial"] = dict(exc.partial)
                attempts.append(attempt)
                logging.warning("Strategy %s failed [%s]: %s", strategy.name, category, exc)
            else:
                if result.success:
                    logging.info("Provisioned %s via %s", record.practice_id, strategy.name)
                    return replace(result, method=strategy.name, attempts=attempts)
                attempts.append(
                    {"strategy": strategy.name, "category": "other", "error": result.error or "strategy reported failure"}
                )
                logging.warning("Strategy %s reported failure: %s", strategy.name, result.error)

            if index < total and self.pause_seconds > 0:
                await self._sleep(self.pause_seconds)

        logging.error("All %d provisioning strategies failed for %s", total, record.practice_id)
        return ProvisioningResult(
            method=METHOD_ALL_FAILED,
            success=False,
            error="; ".join(f"{a['strategy']}: {a['error']}" for a in attempts),
            attempts=attempts,
        )


# ---------------------------------------------------------------------------
# Workflow history
# ---------------------------------------------------------------------------

def categorize_error_message(message: str) -> str:
    text = (message or "").lower()
    if "notion" in text or "store" in text:
        return "notion_api"
    if "github" in text or "repository" in text:
        return "github_api"
    if "railway" in text or "deploy" in text:
        return "railway_api"
    if "network" in text or "timeout" in text or "timed out" in text:
        return "network_issues"
    if "exa" in text or "search" in text or "url" in text:
        return "scraping_issues"
    return "other"


class WorkflowHistory:
    """Bounded, lock-protected record of recent WorkflowResults (oldest evicted)."""

    def __init__(self, limit: int = 500):
        self.limit = max(1, limit)
        self._items: Deque[WorkflowResult] = deque(maxlen=self.limit)
        self._lock = threading.Lock()
        self.total_recorded = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def append(self, result: WorkflowResult) -> None:
        with self._lock:
            self._items.append(result)
            self.total_recorded += 1

    def snapshot(self) -> List[WorkflowResult]:
        with self._lock:
            return list(self._items)

    def recent(self, limit: int = 10) -> List[WorkflowResult]:
        items = self.snapshot()
        return items[-limit:] if limit > 0 else []

    def find_record(self, practice_id: str) -> Optional[LeadRecord]:
        for result in reversed(self.snapshot()):
            outcome = result.phases.get(PHASE_ENRICHMENT)
            if outcome and isinstance(outcome.data, LeadRecord) and outcome.data.practice_id == practice_id:
                return outcome.data
        return None

    def stats(self) -> Dict[str, Any]:
        items = self.snapshot()
        statuses = Counter(item.overall_status for item in items)
        total = len(items)
        successful = total - statuses.get(STATUS_FAILED, 0)
        methods = Counter(item.provisioning.method for item in items if item.provisioning)
        errors = Counter(
            categorize_error_message(item.error) for item in items if item.overall_status == STATUS_FAILED and item.error
        )
        return {
            "total_workflows": total,
            "total_recorded": self.total_recorded,
            "evicted": self.total_recorded - total,
            "complete": statuses.get(STATUS_COMPLETE, 0),
            "partial_success": statuses.get(STATUS_PARTIAL, 0),
            "failed": statuses.get(STATUS_FAILED, 0),
            "success_rate_percent": round(successful / total * 100, 2) if total else 0.0,
            "average_duration_seconds": round(sum(i.duration_seconds for i in items) / total, 3) if total else 0.0,
            "method_breakdown": dict(methods),
            "error_patterns": dict(errors),
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def aggregate_status(phases: Dict[str, PhaseOutcome]) -> str:
    """
    complete: every phase succeeded without a fallback.
    failed: provisioning exhausted every strategy, or no phase succeeded.
    partial-success: anything in between (any fallback counts here).
    """
    provisioning = phases.get(PHASE_PROVISIONING)
    if (
        provisioning is not None
        and not provisioning.isolated
        and isinstance(provisioning.data, ProvisioningResult)
        and provisioning.data.method == METHOD_ALL_FAILED
    ):
        return STATUS_FAILED
    outcomes = list(phases.values())
    if outcomes and all(o.success and not o.used_fallback for o in outcomes):
        return STATUS_COMPLETE
    if any(o.success for o in outcomes):
        return STATUS_PARTIAL
    return STATUS_FAILED


class PracticeOrchestrator:
    """Runs enrichment → validation → persistence → provisioning for one practice."""

    def __init__(
        self,
        config: Config,
        *,
        search: Any = None,
        classifier: Any = None,
        store: Any = None,
        source_control: Any = None,
        hosting: Any = None,
        notifier: Any = None,
        history: Optional[WorkflowHistory] = None,
        cascade: Optional[StrategyCascade] = None,
    ):
        config.validate()
        self.config = config

        # Provider clients
        self.search = search or ExaSearchClient(config)
        self.classifier = classifier or ContentClassifier()
        self.store = store or NotionLeadStore(config)
        self.source_control = source_control or GitHubClient(config)
        self.hosting = hosting or RailwayClient(config)
        self.notifier = notifier or TelegramNotifier(config)
        self.history = history if history is not None else WorkflowHistory(config.history_limit)

        # Metrics
        self.metrics: Dict[str, Any] = {
            "start_time": time.time(),
            "workflows_started": 0,
            "api_calls": {},
            "errors": deque(maxlen=100),
        }

        # Circuit breakers for external services
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        if config.circuit_breaker_enabled:
            self.circuit_breakers = {
                name: CircuitBreaker(name, config.circuit_breaker_threshold, config.circuit_breaker_timeout)
                for name in ("exa", "notion", "github", "railway")
            }

        self.enrichment = EnrichmentAdapter(
            config,
            self.search,
            self.classifier,
            breaker=self.circuit_breakers.get("exa"),
            track=self._track_api_call,
        )
        self.persistence = LeadPersistence(
            config,
            self.store,
            breaker=self.circuit_breakers.get("notion"),
            track=self._track_api_call,
        )
        self.cascade = cascade or StrategyCascade.default(
            config,
            self.source_control,
            self.hosting,
            {name: b for name, b in self.circuit_breakers.items() if name in ("github", "railway")},
        )

    def _track_api_call(self, service: str, success: bool = True) -> None:
        """Track API call metrics."""
        counts = self.metrics["api_calls"].setdefault(service, {"success": 0, "failure": 0})
        counts["success" if success else "failure"] += 1

    def _track_error(self, error: str, context: Dict[str, Any]) -> None:
        """Track error with context."""
        self.metrics["errors"].append({
            "timestamp": _utcnow().isoformat(),
            "error": error,
            "context": context,
        })
        logging.error("Error: %s | Context: %s", error, json.dumps(context, default=str))

    async def _run_phase(
        self,
        name: str,
        factory: Callable[[], Awaitable[PhaseOutcome]],
        fallback: Callable[[str], Any],
    ) -> PhaseOutcome:
        """Run one phase; an unexpected exception becomes a synthetic outcome."""
        started = time.monotonic()
        try:
            outcome = await factory()
        except Exception as exc:  # noqa: BLE001
            error = f"{type(exc).__name__}: {exc}"
            logging.exception("Phase %s raised unexpectedly; continuing with a synthetic outcome", name)
            self._track_error(f"Phase {name} isolated", {"error": error})
            outcome = PhaseOutcome(
                success=False,
                used_fallback=True,
                data=fallback(error),
                error=error,
                isolated=True,
                detail="synthetic outcome built after an unexpected error",
            )
        outcome.duration_seconds = round(time.monotonic() - started, 3)
        return outcome

    async def enrichment_phase(self, target: ParsedTarget) -> PhaseOutcome:
        async def run() -> PhaseOutcome:
            record = await self.enrichment.enrich(target.url)
            return PhaseOutcome(
                success=True,
                used_fallback=not record.enrichment_succeeded,
                data=record,
                error=record.fallback_reason,
            )

        return await self._run_phase(PHASE_ENRICHMENT, run, lambda error: build_fallback_record(target, error))

    async def validation_phase(self, record: LeadRecord) -> PhaseOutcome:
        async def run() -> PhaseOutcome:
            return PhaseOutcome(success=True, used_fallback=False, data=normalize_record(record))

        return await self._run_phase(PHASE_VALIDATION, run, lambda error: _minimal_normalized(record))

    async def persistence_phase(self, normalized: NormalizedRecord) -> PhaseOutcome:
        async def run() -> PhaseOutcome:
            persisted = await self.persistence.persist(normalized)
            return PhaseOutcome(
                success=True,
                used_fallback=persisted.is_fallback,
                data=persisted,
                error=persisted.fallback_reason,
            )

        return await self._run_phase(
            PHASE_PERSISTENCE,
            run,
            lambda error: PersistedRecord(
                record_id=_fallback_record_id(),
                is_fallback=True,
                payload=normalized,
                fallback_reason=error,
            ),
        )

    async def provisioning_phase(self, record: LeadRecord) -> PhaseOutcome:
        async def run() -> PhaseOutcome:
            result = await self.cascade.provision(record)
            return PhaseOutcome(
                success=result.success,
                used_fallback=result.method != self.cascade.primary,
                data=result,
                error=result.error,
            )

        return await self._run_phase(
            PHASE_PROVISIONING,
            run,
            lambda error: ProvisioningResult(method=METHOD_ALL_FAILED, success=False, error=error),
        )

    async def run_workflow(self, target_url: str, provision: Optional[bool] = None) -> WorkflowResult:
        """
        Process one practice URL end to end.

        Raises InvalidTargetError for unparseable input and OrchestrationError
        (carrying the current phase) for faults outside phase isolation.
        """
        target = parse_target(target_url)
        do_provision = self.config.provisioning_enabled if provision is None else bool(provision)
        self.metrics["workflows_started"] += 1

        started_at = _utcnow()
        started = time.monotonic()
        phases: Dict[str, PhaseOutcome] = {}
        current_phase = PHASE_ENRICHMENT
        capture = WorkflowLogCapture(f"{target.hostname}:{uuid.uuid4().hex[:8]}", self.config.workflow_log_lines)

        try:
            with capture:
                logging.info("Starting workflow for %s", target.url)
                phases[PHASE_ENRICHMENT] = await self.enrichment_phase(target)
                record: LeadRecord = phases[PHASE_ENRICHMENT].data

                current_phase = PHASE_VALIDATION
                phases[PHASE_VALIDATION] = await self.validation_phase(record)

                current_phase = PHASE_PERSISTENCE
                phases[PHASE_PERSISTENCE] = await self.persistence_phase(phases[PHASE_VALIDATION].data)

                if do_provision:
                    current_phase = PHASE_PROVISIONING
                    phases[PHASE_PROVISIONING] = await self.provisioning_phase(record)

                current_phase = "aggregation"
                status = aggregate_status(phases)
                error = None
                if status == STATUS_FAILED:
                    error = next((o.error for o in phases.values() if o.error), "no phase produced usable output")
                logging.info(
                    "Workflow for %s finished: %s (practice %s)",
                    target.url,
                    status,
                    record.practice_id,
                )
        except Exception as exc:
            self._track_error(
                "Workflow orchestration failed",
                {"target": target.url, "phase": current_phase, "error": str(exc)},
            )
            raise OrchestrationError(current_phase, exc) from exc

        result = WorkflowResult(
            target_url=target.url,
            overall_status=status,
            phases=phases,
            started_at=started_at,
            completed_at=_utcnow(),
            duration_seconds=round(time.monotonic() - started, 3),
            practice_id=record.practice_id,
            error=error,
            log=capture.lines,
        )
        self.history.append(result)
        await self._notify(result)
        return result

    async def _notify(self, result: WorkflowResult) -> None:
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not chat_id:
            return
        try:
            await _call_external(
                self.notifier.send,
                chat_id,
                format_workflow_summary(result),
                timeout=self.config.external_call_timeout,
            )
            self._track_api_call("telegram", True)
        except Exception as exc:  # noqa: BLE001
            self._track_api_call("telegram", False)
            logging.warning("Telegram notification failed for %s: %s", result.practice_id, exc)


# ---------------------------------------------------------------------------
# Batch coordinator
# ---------------------------------------------------------------------------

class BatchCoordinator:
    """Fans targets through the orchestrator in fixed-size concurrent windows."""

    def __init__(
        self,
        orchestrator: PracticeOrchestrator,
        *,
        concurrency: int = 3,
        pause_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.concurrency = max(1, concurrency)
        self.pause_seconds = pause_seconds
        self._sleep = sleep

    def windows(self, targets: Sequence[str]) -> List[List[str]]:
        items = list(targets)
        return [items[i:i + self.concurrency] for i in range(0, len(items), self.concurrency)]

    async def run_batch(self, targets: Sequence[str], provision: Optional[bool] = None) -> List[WorkflowResult]:
        windows = self.windows(targets)
        logging.info("Batch processing %d practices in %d windows", len(targets), len(windows))
        results: List[WorkflowResult] = []
        for index, window in enumerate(windows, 1):
            logging.info("Processing window %d/%d (%d targets)", index, len(windows), len(window))
            results.extend(await asyncio.gather(*(self._run_one(target, provision) for target in window)))
            if index < len(windows) and self.pause_seconds > 0:
                await self._sleep(self.pause_seconds)
        return results

    async def _run_one(self, target: str, provision: Optional[bool]) -> WorkflowResult:
        try:
            return await self.orchestrator.run_workflow(target, provision=provision)
        except Exception as exc:  # noqa: BLE001
            logging.error("Batch target %s failed: %s", target, exc)
            result = WorkflowResult.failed(str(target), str(exc))
            history = getattr(self.orchestrator, "history", None)
            if history is not None:
                history.append(result)
            return result


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

RECOVERY_PHASES = {
    "persistence": PHASE_PERSISTENCE,
    "notion": PHASE_PERSISTENCE,
    "provisioning": PHASE_PROVISIONING,
    "deployment": PHASE_PROVISIONING,
}


class RecoveryService:
    """Re-run a single phase for a practice id, for manual remediation."""

    def __init__(self, orchestrator: PracticeOrchestrator):
        self.orchestrator = orchestrator

    async def recover(self, practice_id: str, phase: str) -> PhaseOutcome:
        resolved = RECOVERY_PHASES.get((phase or "").strip().lower())
        if resolved is None:
            raise ValueError(f"Unknown recovery phase {phase!r}; expected persistence or provisioning")

        record = self.orchestrator.history.find_record(practice_id)
        if record is not None:
            detail = "recovered from workflow history"
        else:
            record = synthesize_recovery_record(practice_id)
            detail = "recovered from a synthesized record; original enrichment data is no longer in history"
        logging.info("Recovery for %s: re-running %s (%s)", practice_id, resolved, detail)

        if resolved == PHASE_PERSISTENCE:
            outcome = await self.orchestrator.persistence_phase(normalize_record(record))
        else:
            outcome = await self.orchestrator.provisioning_phase(record)
        outcome.detail = f"{outcome.detail}; {detail}" if outcome.detail else detail
        return outcome


# ---------------------------------------------------------------------------
# Lead discovery
# ---------------------------------------------------------------------------

def build_discovery_query(query: str, location: Optional[str] = None, practice_type: Optional[str] = None) -> str:
    search_query = query.strip()
    lowered = search_query.lower()
    if "healthcare" not in lowered and "medical" not in lowered:
        search_query += " healthcare medical practice clinic"
    if location:
        search_query += f" in {location}"
    if practice_type and practice_type != "healthcare":
        search_query += f" {practice_type}"
    return search_query + " treatment services appointments booking"


def location_domains(location: Optional[str]) -> Optional[List[str]]:
    lowered = (location or "").lower()
    if not lowered:
        return None
    for key, domains in LOCATION_DOMAINS.items():
        if key in lowered:
            return list(domains)
    return None


class LeadDiscovery:
    """Finds candidate practice URLs; demo leads when search is unavailable."""

    def __init__(self, config: Config, search: Any, *, breaker: Optional[CircuitBreaker] = None):
        self.config = config
        self.search = search
        self.breaker = breaker

    @staticmethod
    def demo_leads(query: str, limit: int) -> List[Dict[str, Any]]:
        now = _utcnow().isoformat()
        leads = [
            {
                "url": "https://demo-healthcare-clinic.com",
                "title": f"{query} Healthcare Practice",
                "snippet": f"Professional healthcare practice offering {query.lower()} services and treatments...",
                "score": 0.85,
                "domain": "demo-healthcare-clinic.com",
                "discovered_at": now,
                "demo": True,
            },
            {
                "url": "https://advanced-medical-center.com",
                "title": f"Advanced Medical Center - {query}",
                "snippet": f"Specialized medical center providing comprehensive {query.lower()} care and modern treatments...",
                "score": 0.78,
                "domain": "advanced-medical-center.com",
                "discovered_at": now,
                "demo": True,
            },
        ]
        return leads[:max(0, limit)]

    async def discover(
        self,
        query: str,
        location: Optional[str] = None,
        practice_type: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        if not getattr(self.search, "configured", True):
            logging.warning("Exa API key not configured, returning demo leads")
            return self.demo_leads(query, limit)

        search_query = build_discovery_query(query, location, practice_type)
        logging.info("Lead discovery query: %s", search_query)
        try:
            results = await _call_external(
                self.search.discover,
                search_query,
                location_domains(location),
                limit,
                timeout=self.config.external_call_timeout,
                breaker=self.breaker,
            )
        except Exception as exc:  # noqa: BLE001
            logging.warning("Exa lead discovery failed: %s", exc)
            return self.demo_leads(query, limit)

        leads: List[Dict[str, Any]] = []
        for result in results or []:
            url = result.get("url")
            if not url:
                continue
            text = str(result.get("text") or "")
            leads.append(
                {
                    "url": url,
                    "title": result.get("title"),
                    "snippet": f"{text[:200]}..." if text else "",
                    "score": result.get("score") or 0.5,
                    "domain": (urllib.parse.urlparse(url).hostname or "").lower(),
                    "discovered_at": _utcnow().isoformat(),
                    "demo": False,
                }
            )
        logging.info("Discovered %d healthcare leads", len(leads))
        return leads


# ---------------------------------------------------------------------------
# Boundary handlers
# ---------------------------------------------------------------------------

class AutomationService:
    """
    Transport-agnostic request handlers.

    Each handler returns ``(status_code, body)``: 200 on success, 400 on
    malformed input, 500 on orchestration faults (with ``current_phase``).
    """

    def __init__(
        self,
        orchestrator: PracticeOrchestrator,
        *,
        batch: Optional[BatchCoordinator] = None,
        recovery: Optional[RecoveryService] = None,
        discovery: Optional[LeadDiscovery] = None,
    ):
        config = orchestrator.config
        self.orchestrator = orchestrator
        self.batch = batch or BatchCoordinator(
            orchestrator,
            concurrency=config.batch_concurrency,
            pause_seconds=config.batch_pause_seconds,
        )
        self.recovery = recovery or RecoveryService(orchestrator)
        self.discovery = discovery or LeadDiscovery(
            config,
            orchestrator.search,
            breaker=orchestrator.circuit_breakers.get("exa"),
        )
        self.started = time.monotonic()

    async def automate(self, body: Optional[Dict[str, Any]]) -> Tuple[int, Dict[str, Any]]:
        body = body or {}
        url = body.get("url")
        urls = body.get("urls")
        provision = body.get("provision")
        if not url and not urls:
            return 400, {"error": "URL or URLs array required"}
        if provision is not None and not isinstance(provision, bool):
            return 400, {"error": "provision must be a boolean"}

        try:
            if urls:
                if not isinstance(urls, list) or not all(isinstance(item, str) for item in urls):
                    return 400, {"error": "urls must be an array of strings"}
                results = await self.batch.run_batch(urls, provision=provision)
                statuses = Counter(result.overall_status for result in results)
                return 200, {
                    "success": True,
                    "total_processed": len(results),
                    "complete": statuses.get(STATUS_COMPLETE, 0),
                    "partial_success": statuses.get(STATUS_PARTIAL, 0),
                    "failed": statuses.get(STATUS_FAILED, 0),
                    "batch_results": [result.to_dict() for result in results],
                }
            result = await self.orchestrator.run_workflow(url, provision=provision)
            return 200, result.to_dict()
        except InvalidTargetError as exc:
            return 400, {"error": str(exc)}
        except OrchestrationError as exc:
            logging.error("Automation failed during %s: %s", exc.phase, exc)
            return 500, {"success": False, "error": str(exc), "current_phase": exc.phase}
        except Exception as exc:  # noqa: BLE001
            logging.exception("Automation request failed")
            return 500, {"success": False, "error": str(exc), "current_phase": "batch" if urls else "unknown"}

    async def recover(self, body: Optional[Dict[str, Any]]) -> Tuple[int, Dict[str, Any]]:
        body = body or {}
        practice_id = body.get("practice_id") or body.get("practiceId")
        phase = body.get("phase") or body.get("retry_phase")
        if not practice_id or not isinstance(practice_id, str):
            return 400, {"error": "practice_id required"}
        try:
            outcome = await self.recovery.recover(practice_id, phase)
        except ValueError as exc:
            return 400, {"error": str(exc)}
        return 200, {"practice_id": practice_id, "phase": phase, **outcome.to_dict()}

    def status(self) -> Tuple[int, Dict[str, Any]]:
        orchestrator = self.orchestrator
        healthy, issues = HealthCheck(orchestrator.config).check_all()
        return 200, {
            "agent_status": "fault-tolerant-ready",
            "uptime_seconds": round(time.monotonic() - self.started, 1),
            "workflow_stats": orchestrator.history.stats(),
            "workflows_started": orchestrator.metrics["workflows_started"],
            "api_calls": orchestrator.metrics["api_calls"],
            "recent_errors": list(orchestrator.metrics["errors"])[-10:],
            "circuit_breakers": {name: b.snapshot() for name, b in orchestrator.circuit_breakers.items()},
            "config_health": {
                "healthy": healthy,
                "issues": issues,
                "providers": HealthCheck(orchestrator.config).report(),
            },
            "recent_results": [result.summary() for result in orchestrator.history.recent(10)],
        }

    def deployments(self, limit: int = 50, status: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
        items = self.orchestrator.history.snapshot()
        if status == "success":
            items = [item for item in items if item.overall_status != STATUS_FAILED]
        elif status in (STATUS_COMPLETE, STATUS_PARTIAL, STATUS_FAILED):
            items = [item for item in items if item.overall_status == status]
        elif status not in (None, "", "all"):
            return 400, {"error": f"Unknown status filter {status!r}"}
        limit = max(1, int(limit))
        return 200, {
            "deployments": [item.summary() for item in items[-limit:]],
            "analytics": self.orchestrator.history.stats(),
            "filters_applied": {"status": status or "all", "limit": limit},
        }

    def health(self, probe: bool = False) -> Tuple[int, Dict[str, Any]]:
        """Liveness; with ``probe`` also checks that provider endpoints answer."""
        body: Dict[str, Any] = {
            "status": "healthy",
            "agent": "practice-pipeline",
            "version": __version__,
            "uptime_seconds": round(time.monotonic() - self.started, 1),
        }
        if probe:
            _, issues = HealthCheck(self.orchestrator.config).check_all(probe=True)
            unreachable = [issue for issue in issues if "unreachable" in issue]
            body["connectivity"] = {"reachable": not unreachable, "issues": unreachable}
            if unreachable:
                body["status"] = "degraded"
        return 200, body

    async def discover(self, body: Optional[Dict[str, Any]]) -> Tuple[int, Dict[str, Any]]:
        body = body or {}
        query = body.get("query")
        if not query or not isinstance(query, str):
            return 400, {"error": "Search query required"}
        try:
            limit = int(body.get("limit") or 10)
        except (TypeError, ValueError):
            return 400, {"error": "limit must be an integer"}
        location = body.get("location") or None
        leads = await self.discovery.discover(
            query,
            location=location,
            practice_type=body.get("practice_type") or "healthcare",
            limit=limit,
        )
        return 200, {
            "success": True,
            "query": query,
            "location": location,
            "leads_found": len(leads),
            "leads": leads,
            "timestamp": _utcnow().isoformat(),
        }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

EXIT_CODES = {200: 0, 400: 2, 500: 1}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Healthcare practice lead pipeline")
    parser.add_argument("--url", help="Practice URL to process")
    parser.add_argument("--urls", nargs="*", help="Several practice URLs, processed in batch windows")
    parser.add_argument("--recover", metavar="PRACTICE_ID", help="Re-run one phase for a practice id")
    parser.add_argument(
        "--phase",
        default="persistence",
        choices=sorted(RECOVERY_PHASES),
        help="Phase to re-run with --recover",
    )
    parser.add_argument("--discover", metavar="QUERY", help="Search for candidate practices")
    parser.add_argument("--location", help="Location filter for --discover")
    parser.add_argument("--limit", type=int, default=10, help="Maximum leads for --discover")
    parser.add_argument(
        "--no-provision",
        dest="provision",
        action="store_false",
        default=None,
        help="Skip the provisioning phase",
    )
    parser.add_argument("--health", action="store_true", help="Report service health and exit")
    parser.add_argument("--probe", action="store_true", help="With --health, also check provider connectivity")
    parser.add_argument("--status", action="store_true", help="Include status counters in the output")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--output", help="Optional path to write JSON results (defaults to stdout only)")
    return parser


async def _dispatch(service: AutomationService, args: argparse.Namespace) -> Tuple[int, Dict[str, Any]]:
    if args.health:
        return service.health(probe=args.probe)
    if args.recover:
        return await service.recover({"practice_id": args.recover, "phase": args.phase})
    if args.discover:
        return await service.discover({"query": args.discover, "location": args.location, "limit": args.limit})
    return await service.automate({"url": args.url, "urls": args.urls, "provision": args.provision})


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    if not (args.url or args.urls is not None or args.recover or args.discover or args.health):
        parser.error("one of --url, --urls, --recover, --discover or --health is required")

    try:
        service = AutomationService(PracticeOrchestrator(Config()))
    except ValueError as exc:
        logging.error("Fatal error: %s", exc)
        return 1

    status_code, body = asyncio.run(_dispatch(service, args))
    if args.status:
        body = {"response": body, "status": service.status()[1]}

    output_json = json.dumps(body, indent=2, default=str)
    print(output_json)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote results to %s", args.output)

    return EXIT_CODES.get(status_code, 1)


if __name__ == "__main__":
    sys.exit(main())
