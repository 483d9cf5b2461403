"""
Shared test fixtures and utilities for alerts engine tests.

This package provides:
- sample_data: builders for metric responses, rule records and alerts
"""

from tests.fixtures import sample_data
