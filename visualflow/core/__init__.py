# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Core utilities and shared modules for the Visual Flow engine.

This package contains:
- config: Configuration management
- errors: Custom exceptions
- logging: Structured logging
"""

from visualflow.core.config import get_config, Config
from visualflow.core.errors import VisualFlowError, NotFoundError, ValidationError
from visualflow.core.logging import get_logger

__all__ = [
    "get_config",
    "Config",
    "VisualFlowError",
    "NotFoundError",
    "ValidationError",
    "get_logger",
]
