"""
Root conftest.py for all tests
Provides common fixtures and configuration
"""
import os
import sys

# Test environment must be in place before core.config builds its settings
os.environ["ENVIRONMENT"] = "test"
os.environ["RENTCAST_API_KEY"] = "test-rentcast-key"
os.environ["LOG_FORMAT"] = "text"
os.environ.pop("QUOTA_ALERT_WEBHOOK", None)

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
