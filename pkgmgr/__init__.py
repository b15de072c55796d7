# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
pkgmgr - transactional package manager core.

Resolves versioned dependency graphs against repository indexes and applies
the result to the filesystem through a write-ahead journal.
"""

__version__ = "1.0.0"
