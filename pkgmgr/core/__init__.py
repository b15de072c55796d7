# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Core utilities and shared modules for pkgmgr.

This package contains:
- config: Configuration management
- errors: Exception hierarchy
- logging: Structured logging
"""
