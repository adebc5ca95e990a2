"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status


def require_token_or_loopback(request: Request, token: Optional[str], *, label: str = "metrics") -> None:
    """Enforce operator endpoint authentication via token or localhost constraint."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {label} token")
        return

    client = request.client
    client_host = client.host if client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{label.capitalize()} access denied")

    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{label.capitalize()} access denied") from exc
    if not loopback:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{label.capitalize()} access restricted to localhost",
        )


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    require_token_or_loopback(request, token, label="metrics")


def require_admin_access(request: Request, token: Optional[str]) -> None:
    require_token_or_loopback(request, token, label="admin")
