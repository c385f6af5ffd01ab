# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Visual Flow Engine

Executes node/edge workflow graphs built in the visual editor and keeps
flow and execution history in sync between local and remote stores.
"""

__version__ = "1.0.0"
