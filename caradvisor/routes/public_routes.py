# -*- coding: utf-8 -*-
"""
Public routes blueprint - liveness checks.
"""

from flask import Blueprint

from caradvisor.utils.http_helpers import api_ok

bp = Blueprint('public', __name__)


@bp.route('/health')
def health():
    return api_ok({"status": "ok"})


@bp.route('/healthz')
def healthz():
    return api_ok({"status": "ok"})
