# src/jira_time/utils/__init__.py

from .headless_detection import is_headless_environment
from .url import encode_params, percent_encode

__all__ = ["is_headless_environment", "encode_params", "percent_encode"]
