# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Dependency injection for the API.

Runtime objects are created once by create_app() and kept in app.state;
these dependencies hand them to the routes.
"""

from fastapi import Request

from visualflow.core.config import Config


def get_current_config(request: Request) -> Config:
    """
    Get the configuration the app was built with.

    Returns:
        Config: Application configuration
    """
    return request.app.state.config


def get_flow_repository(request: Request):
    """Get the FlowRepository bound to the app's store."""
    return request.app.state.flows


def get_execution_repository(request: Request):
    """Get the ExecutionRepository bound to the app's store."""
    return request.app.state.executions


def get_execution_service(request: Request):
    """Get the ExecutionService (initialized at startup)."""
    return request.app.state.execution_service
