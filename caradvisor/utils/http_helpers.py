# -*- coding: utf-8 -*-
"""HTTP helper functions shared by the blueprints and the app factory."""

from typing import Any, Optional
from flask import jsonify, g, current_app, request


def get_request_id() -> str:
    """Get the current request_id from Flask g object."""
    return getattr(g, 'request_id', 'unknown')


def api_ok(payload: Any = None, status: int = 200, request_id: Optional[str] = None):
    """JSON success response. The mobile client expects bare payloads, no envelope."""
    rid = request_id or get_request_id()
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["X-Request-ID"] = rid
    return resp


def api_error(code: str, message: str, status: int = 400, request_id: Optional[str] = None, **extra: Any):
    """JSON error response: ``{"error": code, "message": message}``."""
    rid = request_id or get_request_id()
    body = {"error": code, "message": message}
    body.update(extra)
    resp = jsonify(body)
    resp.status_code = status
    resp.headers["X-Request-ID"] = rid
    return resp


def log_access_decision(route_name: str, user_id: Optional[str], decision: str, reason: str = "") -> None:
    user_info = f"user_id={user_id}" if user_id else "anonymous"
    log_msg = f"[ACCESS] request_id={get_request_id()} {route_name} | {user_info} | {decision}"
    if reason:
        log_msg += f" | {reason}"
    current_app.logger.info(log_msg)


def log_rejection(reason: str, details: str = "") -> None:
    """
    Log rejection reasons without exposing sensitive data.

    Args:
        reason: Short category (unauthenticated, quota, validation, server_error)
        details: Safe description of the issue (no secrets, tokens or DB details)
    """
    endpoint = request.endpoint or "unknown"
    current_app.logger.warning(
        f"[REJECT] request_id={get_request_id()} endpoint={endpoint} user={g.get('user_id') or 'anonymous'} "
        f"reason={reason} details={details}"
    )
