"""Caller identity dependencies.

Authentication happens upstream of this service; the gateway forwards the
caller's tenant and user as headers.
"""

from __future__ import annotations

from collections.abc import Mapping

from fastapi import Header

from .errors import missing_identity_error

TENANT_HEADER = "X-Tenant-Id"


def tenant_id_from_headers(headers: Mapping[str, str]) -> str | None:
    """Caller tenant for routes that cannot use header dependencies, such as sockets."""

    value = (headers.get(TENANT_HEADER.lower()) or "").strip()
    return value or None


def require_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    if x_tenant_id is None or not x_tenant_id.strip():
        raise missing_identity_error(TENANT_HEADER)
    return x_tenant_id.strip()


def require_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if x_user_id is None or not x_user_id.strip():
        raise missing_identity_error("X-User-Id")
    return x_user_id.strip()


__all__ = ["TENANT_HEADER", "require_tenant_id", "require_user_id", "tenant_id_from_headers"]
