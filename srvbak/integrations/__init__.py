# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin routes and lifespan.
"""

from srvbak.integrations.fastapi import (
    register_srvbak_routes,
    srvbak_lifespan,
    verify_api_key,
)

__all__ = [
    "register_srvbak_routes",
    "srvbak_lifespan",
    "verify_api_key",
]
