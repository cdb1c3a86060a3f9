"""
Core utilities and configuration for the beaver client.

This package provides core functionality including settings, logging
configuration and the shared domain models.
"""

from beaver_client.core.logging_config import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
