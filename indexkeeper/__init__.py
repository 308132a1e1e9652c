# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper - Search Index Server Supervisor

Keeps a search-index server process running while fetching newer
dataset snapshots in the background and hot-swapping them into place.
"""

__version__ = "20261019.1"
__author__ = "The IndexKeeper Authors"
