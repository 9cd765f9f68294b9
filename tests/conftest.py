"""
Pytest configuration and shared fixtures for faultguard tests
"""
import sys
import pytest
from pathlib import Path

# Add project source to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from faultguard.clock import ManualClock
from faultguard.destinations import MemoryDestination
from faultguard.error_handling import ErrorClassifier, ErrorManager


# ========================================
# Clock Fixtures
# ========================================

@pytest.fixture
def clock():
    """Manual clock starting at t=1000s"""
    return ManualClock(start=1000.0)


# ========================================
# Error Model Fixtures
# ========================================

@pytest.fixture
def classifier(clock):
    """Classifier reading time from the manual clock"""
    return ErrorClassifier(clock=clock)


@pytest.fixture
def manager(clock, classifier):
    """Fresh error manager per test"""
    return ErrorManager(clock=clock, classifier=classifier)


# ========================================
# Reporting Fixtures
# ========================================

@pytest.fixture
def memory_destination():
    """In-memory destination recording delivered batches"""
    return MemoryDestination()


@pytest.fixture
def config_file(tmp_path):
    """Write a YAML settings file and return its path"""
    def _write(content: str) -> Path:
        path = tmp_path / "faultguard.yaml"
        path.write_text(content, encoding="utf-8")
        return path
    return _write
