"""
Test configuration and fixtures
"""
import sys
from pathlib import Path

# Add project root and src to Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(project_root))
sys.path.insert(0, str(src_path))

import pytest


@pytest.fixture(autouse=True)
def _quiet_account_logs(caplog):
    """Capture account logs so failing tests show the structured events."""
    caplog.set_level("DEBUG", logger="guardian_account")
    yield
