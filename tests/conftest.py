from typing import Callable

import pytest

from xscraper.config import CollectionConfig


@pytest.fixture
def fast_config() -> Callable[..., CollectionConfig]:
    """CollectionConfig without scroll or retry delays."""
    def factory(**overrides):
        values = {'scroll_delay_ms': 0, 'retry_backoff_ms': 0}
        values.update(overrides)
        return CollectionConfig(**values)
    return factory
