"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages.
"""

import sys
from collections.abc import Generator
from pathlib import Path

import pytest

# Insert local src directory at the beginning of sys.path
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))


@pytest.fixture(autouse=True)
def _clear_run_id() -> Generator[None, None, None]:
    """Keep run correlation ids from leaking between tests."""
    from codesift.core.logging import clear_run_id

    clear_run_id()
    yield
    clear_run_id()
