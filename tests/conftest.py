"""
Root conftest.py - Global configuration for all test layers.

Test Layers:
    - component/  : Component tests (in-memory repository, broker and senders)
    - unit/       : Unit tests (pure functions, no I/O)
    - contracts/  : Shared models and test data factories
"""
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

# Testing env file only
os.environ.setdefault("ENV", "testing")
