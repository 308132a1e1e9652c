# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""Entry point for ``python -m indexkeeper``."""

from .main import main

if __name__ == "__main__":
    main()
