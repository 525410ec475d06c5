"""
Root conftest for tests.

This ensures:
1. Cached process settings never leak between tests
2. The resolution pass ID context starts empty for every test
"""

import pytest

from config.settings import get_settings
from libs.common.logging.context import clear_pass_id


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Clear the get_settings() cache and pass ID around each test.

    Tests that patch environment variables (DEPLOYMENT_ENV, SECRET_BACKEND,
    SECRETS_*) rely on Settings being re-read from the environment.
    """
    get_settings.cache_clear()
    clear_pass_id()
    yield
    get_settings.cache_clear()
    clear_pass_id()
