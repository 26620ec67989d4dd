"""Bearer-token identity verification.

Mobile clients send ``Authorization: Bearer <id token>``. The token is an
RS256 JWT (Firebase/Google style) checked against a JWKS trust root loaded at
boot. Without a trust root every authenticated request fails closed with
:class:`~caradvisor.exceptions.IdentityNotConfiguredError`.

The verifier is wired into Flask-Login through a ``request_loader`` so views
can rely on ``current_user`` like any other Flask-Login app.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Mapping, Optional

from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError
from flask import current_app, g
from flask_login import UserMixin, current_user

from caradvisor.exceptions import (
    IdentityNotConfiguredError,
    InvalidCredentialError,
    UnauthorizedError,
)
from caradvisor.extensions import login_manager

logger = logging.getLogger(__name__)

DEFAULT_ISSUER_PREFIX = "https://securetoken.google.com/"
TOKEN_LEEWAY_SEC = 60

_jwt = JsonWebToken(["RS256"])


@dataclass(frozen=True)
class UserIdentity:
    uid: str
    email: Optional[str] = None


class AuthenticatedUser(UserMixin):
    def __init__(self, identity: UserIdentity):
        self.id = identity.uid
        self.email = identity.email or ""

    def __repr__(self):
        return f"<AuthenticatedUser id={self.id}>"


class TokenVerifier:
    """Verifies ID tokens against a JWKS key set."""

    def __init__(
        self,
        key_set=None,
        project_id: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway: int = TOKEN_LEEWAY_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.key_set = key_set
        self.project_id = (project_id or "").strip() or None
        self.issuer = issuer or (f"{DEFAULT_ISSUER_PREFIX}{self.project_id}" if self.project_id else None)
        self.leeway = leeway
        self._clock = clock

    @property
    def configured(self) -> bool:
        return self.key_set is not None and bool(self.project_id)

    def verify(self, credential: str) -> UserIdentity:
        if not self.configured:
            raise IdentityNotConfiguredError()
        if not credential:
            raise InvalidCredentialError()
        try:
            claims = _jwt.decode(
                credential,
                self.key_set,
                claims_options={
                    "iss": {"essential": True, "value": self.issuer},
                    "aud": {"essential": True, "value": self.project_id},
                    "sub": {"essential": True},
                    "exp": {"essential": True},
                },
            )
            claims.validate(now=int(self._clock()), leeway=self.leeway)
        except (JoseError, ValueError, TypeError) as e:
            raise InvalidCredentialError() from e

        uid = str(claims["sub"])
        if len(uid) > 128:
            raise InvalidCredentialError()
        return UserIdentity(uid=uid, email=claims.get("email"))


def load_key_set(jwks: Any):
    """Import a JWKS given as a dict or JSON string."""
    if isinstance(jwks, str):
        jwks = json.loads(jwks)
    return JsonWebKey.import_key_set(jwks)


def build_verifier(config: Mapping[str, Any]) -> TokenVerifier:
    """Build the verifier from IDENTITY_* settings. Never raises; an unusable
    trust root yields an unconfigured verifier that fails closed."""
    project_id = config.get("IDENTITY_PROJECT_ID")
    issuer = config.get("IDENTITY_ISSUER") or None
    raw = config.get("IDENTITY_JWKS_JSON") or ""
    path = config.get("IDENTITY_JWKS_PATH") or ""

    key_set = None
    try:
        if path:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        if raw:
            key_set = load_key_set(raw)
    except (OSError, ValueError, JoseError):
        logger.exception("[AUTH] failed to load identity trust root")
        key_set = None

    verifier = TokenVerifier(key_set=key_set, project_id=project_id, issuer=issuer)
    if verifier.configured:
        logger.info("[AUTH] identity verifier ready project=%s", verifier.project_id)
    else:
        logger.warning("[AUTH] identity trust root missing; authenticated endpoints will fail closed")
    return verifier


def _bearer_token(header: str) -> str:
    scheme, _, token = (header or "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


@login_manager.request_loader
def load_user_from_request(req):
    token = _bearer_token(req.headers.get("Authorization", ""))
    if not token:
        g.auth_error = "unauthorized"
        return None

    verifier = current_app.extensions.get("token_verifier")
    if verifier is None:
        raise IdentityNotConfiguredError()
    try:
        identity = verifier.verify(token)
    except InvalidCredentialError:
        g.auth_error = "invalid_token"
        logger.info("[AUTH] rejected bearer token path=%s", req.path)
        return None
    return AuthenticatedUser(identity)


def raise_for_auth_failure(distinguish_invalid_token: bool = True) -> None:
    if distinguish_invalid_token and g.get("auth_error") == "invalid_token":
        raise InvalidCredentialError()
    raise UnauthorizedError()


def bearer_required(distinguish_invalid_token: bool = True):
    """Like ``login_required`` but lets an endpoint report a bad token as
    plain ``unauthorized`` instead of ``invalid_token``."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                raise_for_auth_failure(distinguish_invalid_token)
            return view(*args, **kwargs)
        return wrapped

    return decorator
