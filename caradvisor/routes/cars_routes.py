# -*- coding: utf-8 -*-
"""Car recommendation and credit purchase API used by the mobile app."""

import math
from functools import wraps

from flask import Blueprint, current_app, g, request
from flask_login import current_user, login_required

from caradvisor.exceptions import (
    PurchaseProcessingError,
    RateLimitedError,
    StoreNotInitializedError,
)
from caradvisor.identity import bearer_required
from caradvisor.rate_limit import get_client_ip
from caradvisor.utils.http_helpers import api_ok, log_access_decision, log_rejection
from caradvisor.utils.validation import validate_recommend_request

bp = Blueprint('cars', __name__, url_prefix='/api/cars')

# Endpoints whose clients only understand one generic 5xx error code
SERVER_ERROR_OVERRIDES = {
    'cars.add_credits': PurchaseProcessingError,
}


def _component(name: str):
    component = current_app.extensions.get(name)
    if component is None:
        raise StoreNotInitializedError()
    return component


def rate_limited(view):
    """Per-IP sliding-window throttle, checked before authentication."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        limiter = current_app.extensions["rate_limiter"]
        client_ip = get_client_ip()
        allowed, count, retry_after = limiter.check(client_ip)
        if not allowed:
            log_rejection("rate_limited", f"count={count}")
            raise RateLimitedError(retry_after=int(math.ceil(retry_after)))
        return view(*args, **kwargs)

    return wrapped


@bp.route('/recommend', methods=['POST'])
@rate_limited
@bearer_required()
def recommend():
    user_id = current_user.id
    g.user_id = user_id

    prefs = validate_recommend_request(request.get_json(silent=True))
    service = _component("recommendation_service")
    log_access_decision('/api/cars/recommend', user_id, 'allowed')
    return api_ok(service.recommend(user_id, prefs))


@bp.route('/add-credits', methods=['POST'])
@bearer_required(distinguish_invalid_token=False)
def add_credits():
    user_id = current_user.id
    g.user_id = user_id

    # 5xx failures here are reported as "server_error", see SERVER_ERROR_OVERRIDES
    service = _component("purchase_service")
    result = service.add_credits(user_id, request.get_json(silent=True))
    return api_ok({"ok": True, "alreadyProcessed": result.already_processed, "total": result.total})


@bp.route('/credits', methods=['GET'])
@login_required
def credits():
    user_id = current_user.id
    g.user_id = user_id
    ledger = _component("credit_ledger")
    return api_ok({"credits": ledger.ensure(user_id)})
