# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Suite for the Visual Flow engine

Structure:
- engine/: Scheduling, interpolation, dispatch and execution
- persistence/: Stores, repositories and session state
- sync/: Merge, remote client, sync queue and autosave
- unit/: Config, errors, services and API routes
"""
