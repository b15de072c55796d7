# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Setup configuration for pkgmgr transactional package manager core
"""

from setuptools import setup, find_packages

setup(
    name="pkgmgr",
    version="1.0.0",
    description="Dependency resolution and journaled install transactions for a host package manager",
    author="Jason Cafarelli",
    packages=find_packages(include=["pkgmgr", "pkgmgr.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0.0",
        "pyyaml>=6.0",
        "httpx>=0.25.0",
        "semantic_version>=2.10.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
)
