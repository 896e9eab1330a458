"""
API module for GridSync.

This module provides the aiohttp HTTP transport:
- REST endpoints for schema, writes, reads, presence, locks and audit
- Long-poll and Server-Sent Events change feeds
- Pydantic request models
"""

from .http_server import create_http_app

__all__ = ["create_http_app"]
