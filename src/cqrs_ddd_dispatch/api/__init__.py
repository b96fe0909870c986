"""Operator HTTP surface (requires the ``fastapi`` extra)."""

from __future__ import annotations

from .fastapi import CompleteRequest, create_admin_router

__all__ = ["CompleteRequest", "create_admin_router"]
