# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin and other framework integrations.
"""

from cdchistory.integrations.fastapi import (
    setup_cdchistory_plugin,
    cdchistory_lifespan,
    register_cdchistory_routes,
    verify_api_key,
)

__all__ = [
    "setup_cdchistory_plugin",
    "cdchistory_lifespan",
    "register_cdchistory_routes",
    "verify_api_key",
]
