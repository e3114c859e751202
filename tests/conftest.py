"""Root conftest for test suite.

Auto-skips e2e and slow tests unless explicitly requested.
Run explicitly with: pytest -m e2e   (needs Postgres, Meilisearch, MinIO, Chromium)
                  or: pytest -m slow
"""

import pytest

from bookmark_pipeline.core.resilience import reset_circuits
from bookmark_pipeline.jobs.broker import reset_job_queue


def pytest_collection_modifyitems(config, items):
    """Skip e2e and slow tests unless explicitly requested."""
    markexpr = config.getoption("-m", default="")
    explicit_e2e = "e2e" in markexpr
    explicit_slow = "slow" in markexpr

    skip_e2e = pytest.mark.skip(
        reason="e2e tests require running services. Run with: pytest -m e2e"
    )
    skip_slow = pytest.mark.skip(reason="slow tests skipped by default. Run with: pytest -m slow")

    for item in items:
        if "e2e" in item.keywords and not explicit_e2e:
            item.add_marker(skip_e2e)
        if "slow" in item.keywords and not explicit_slow:
            item.add_marker(skip_slow)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Circuit breakers and the broker singleton are process-global."""
    reset_circuits()
    reset_job_queue()
    yield
    reset_circuits()
    reset_job_queue()
