# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Setup configuration for the Visual Flow execution engine
"""

from setuptools import setup, find_packages

setup(
    name="visualflow-engine",
    version="1.0.0",
    description="Flow execution engine, persistence and sync for the visual flow editor",
    author="Jason Cafarelli",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.0",
        "httpx>=0.25.0",
        "pyyaml>=6.0",
        "aiofiles>=23.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
)
