import asyncio

import pytest

from logtape import config as logtape_config
from logtape.config import reset, reset_sync


def _reset_logging() -> None:
    if logtape_config._async_disposables:
        asyncio.run(reset())
    else:
        reset_sync()


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset global logging state before and after each test."""
    _reset_logging()
    yield
    _reset_logging()
