# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle - Over-the-air Bundle Updater

Lets a long-running application swap its executable content bundles
over the network, with integrity checks and automatic rollback when a
freshly activated bundle never reports itself ready.
"""

__version__ = "1.4.0"
__author__ = "The LiveBundle Authors"
