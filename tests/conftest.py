import json
from collections.abc import Iterator
from pathlib import Path

import pytest

AGENT_ENGINE_ENV_VARS = (
    "VERTEX_PROJECT_ID",
    "VERTEX_LOCATION",
    "VERTEX_REASONING_ENGINE",
    "AGENT_ENGINE_API_BASE_URL",
    "AGENT_ENGINE_READ_TIMEOUT",
    "AGENT_ENGINE_SESSION_RECOVERY_ATTEMPTS",
    "AGENT_ENGINE_STATUS_PREFIXES",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_SERVICE_ACCOUNT_KEY_FILE",
    "TOKEN_REFRESH_BUFFER_SECONDS",
    "TOKEN_REQUEST_MAX_ATTEMPTS",
    "LOG_LEVEL",
    "LOG_FILE",
    "LOG_REDACT_TOKENS",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    """Remove every variable the config layer reads from the process env.

    Each variable is recorded first so values set during the test (for
    example by a loaded .env file) are removed again at teardown.
    """
    for name in AGENT_ENGINE_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    yield monkeypatch


# Provide env fixtures used by config tests
@pytest.fixture
def mock_env_vars(clean_env: pytest.MonkeyPatch) -> dict[str, str]:
    env = {
        "VERTEX_PROJECT_ID": "demo-project",
        "VERTEX_LOCATION": "europe-west4",
        "VERTEX_REASONING_ENGINE": "projects/demo-project/locations/europe-west4/reasoningEngines/4242",
        "TOKEN_REFRESH_BUFFER_SECONDS": "120",
        "TOKEN_REQUEST_MAX_ATTEMPTS": "2",
        "LOG_LEVEL": "debug",
    }
    for k, v in env.items():
        clean_env.setenv(k, v)
    return env


@pytest.fixture
def temp_config_path(tmp_path: Path) -> Path:
    """Create a minimal valid YAML config file and return its path."""
    import yaml

    cfg = {
        "agent_engine": {
            "project_id": "yaml-project",
            "reasoning_engine": "777",
            "status_prefixes": ["Thinking"],
        },
        "service_account": {"max_attempts": 3},
        "logging": {"level": "WARNING"},
    }
    p = tmp_path / "agent-engine.yaml"
    with p.open("w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)
    return p


@pytest.fixture
def write_json(tmp_path: Path):
    """Write ``data`` as JSON under tmp_path and return the file path."""

    def _write(name: str, data: object) -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write
