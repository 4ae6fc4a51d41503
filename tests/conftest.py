import os
import sys

import pytest

from practice_pipeline import CircuitBreaker, Config, HealthCheck, PracticeOrchestrator, WorkflowHistory

PROVIDER_ENV = [
    "EXA_API_KEY",
    "NOTION_API_KEY",
    "NOTION_TOKEN",
    "NOTION_DATABASE_ID",
    "GITHUB_TOKEN",
    "GITHUB_OWNER",
    "GITHUB_TEMPLATE_REPO",
    "RAILWAY_API_TOKEN",
    "RAILWAY_TOKEN",
    "RAILWAY_PROJECT_ID",
    "RAILWAY_ENVIRONMENT_ID",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "PROVISIONING_ENABLED",
    "HISTORY_LIMIT",
    "BATCH_CONCURRENCY",
    "EXTERNAL_CALL_TIMEOUT",
]


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # Ensure project root on sys.path for imports
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
    if root not in sys.path:
        sys.path.insert(0, root)
    # Keep tests offline: no provider credentials unless a test sets them
    for name in PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CIRCUIT_BREAKER_ENABLED", "false")
    # No pacing between windows or strategies
    monkeypatch.setenv("BATCH_PAUSE_SECONDS", "0")
    monkeypatch.setenv("STRATEGY_PAUSE_SECONDS", "0")


@pytest.fixture
def base_config():
    return Config()


@pytest.fixture
def circuit_breaker():
    return CircuitBreaker(name="test", failure_threshold=3, recovery_timeout=60.0)


@pytest.fixture
def health_check(base_config):
    return HealthCheck(base_config)


@pytest.fixture
def make_orchestrator(base_config):
    """Build an orchestrator wired to fakes; keyword overrides replace any fake."""

    def factory(**overrides):
        providers = {
            "search": FakeSearch(text=PRACTICE_COPY),
            "store": FakeStore(),
            "source_control": FakeSourceControl(),
            "hosting": FakeHosting(),
            "notifier": FakeNotifier(),
            "history": WorkflowHistory(base_config.history_limit),
        }
        providers.update(overrides)
        return PracticeOrchestrator(base_config, **providers)

    return factory


PRACTICE_COPY = (
    "Welcome to Bright Smile Dental. We offer cosmetic dental services and family care. "
    "Our treatments include teeth whitening, dental implants, root canal therapy and orthodontics. "
    "We specialize in cosmetic dentistry, and our clinicians focus on pain-free care.\n"
    "Call us on +44 20 7946 0958 or email hello@brightsmile.co.uk. "
    "Located in Central London near Harley Street."
)


class FakeSearch:
    def __init__(self, text="", error=None, configured=True, results=None):
        self.text = text
        self.error = error
        self.configured = configured
        self.results = results or []
        self.calls = []

    def search(self, query, scope_host):
        self.calls.append((query, scope_host))
        if self.error:
            raise self.error
        return self.text

    def discover(self, query, include_domains=None, limit=10):
        self.calls.append((query, include_domains, limit))
        if self.error:
            raise self.error
        return self.results


class FakeStore:
    def __init__(self, record_id="page-123", error=None):
        self.record_id = record_id
        self.error = error
        self.records = []

    def upsert(self, record):
        self.records.append(record)
        if self.error:
            raise self.error
        return self.record_id


class FakeSourceControl:
    def __init__(self, create_error=None, find_error=None, existing=None):
        self.create_error = create_error
        self.find_error = find_error
        self.existing = existing or {}
        self.created = []
        self.lookups = []

    def create_repo(self, name, description):
        if self.create_error:
            raise self.create_error
        self.created.append(name)
        return f"https://github.com/acme/{name}"

    def find_repo(self, name):
        self.lookups.append(name)
        if self.find_error:
            raise self.find_error
        return self.existing.get(name)


class FakeHosting:
    def __init__(self, error=None):
        self.error = error
        self.deployments = []

    def create_service(self, repo_ref, env_vars, name=None):
        if self.error:
            raise self.error
        self.deployments.append({"repo_ref": repo_ref, "env_vars": env_vars, "name": name})
        return f"https://{name or 'service'}.up.railway.app"


class FakeNotifier:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    def send(self, recipient, text):
        self.messages.append((recipient, text))
        if self.error:
            raise self.error
        return {"ok": True}
