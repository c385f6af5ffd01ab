# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Application services used by the API routes.
"""

from .execution_service import ExecutionService
from .export_service import export_workflow, import_workflow, scan_for_secrets, validate_connections

__all__ = [
    "ExecutionService",
    "export_workflow",
    "import_workflow",
    "scan_for_secrets",
    "validate_connections",
]
