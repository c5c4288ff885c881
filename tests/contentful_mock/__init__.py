"""Contentful Management API mock for integration testing.

Provides an in-memory RemoteStore so the full run can be exercised without
network access to Contentful.

Key Features:
- Environment lifecycle simulation (queued -> ready/failed)
- Version tracking entries per environment
- Alias and API key state
- Error injection per operation
- Ordered call log for sequencing assertions

Usage:
    from contentful_mock import MockContentfulStore

    store = MockContentfulStore(reads_until_ready=2)
    result = await run_action(config, store, event)
    assert store.calls_of("write_version") == ["1", "2"]
"""

from .store import DEFAULT_LOCALE, MockContentfulStore, MockEnvironment, make_error

__all__ = [
    "DEFAULT_LOCALE",
    "MockContentfulStore",
    "MockEnvironment",
    "make_error",
]
