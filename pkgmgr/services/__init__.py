# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Service layer for pkgmgr.

This package contains:
- transaction: resolution, planning and journaled execution of package changes
"""
