"""Credential extraction and principal resolution.

The WebSocket upgrade and the HTTP dependency both go through
`IdentityResolver.resolve`, so there is one path from credential to
`Principal`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import jwt

from .config import ChatRuntimeConfig
from .constants import ANONYMOUS_NAME, UNKNOWN_TENANT_NAME
from .errors import ChatError, Unauthorized
from .models import PRINCIPAL_COLLECTIONS, Principal, Role
from .store import ChatStore
from .util import normalize_display_name

# Cookie name -> role hint. Order is the lookup order.
CREDENTIAL_COOKIES: tuple[tuple[str, Role | None], ...] = (
    ("token", None),
    ("admintoken", Role.ADMIN),
    ("clientToken", Role.CLIENT),
)

ID_CLAIMS = ("userId", "adminId", "clientId", "id")


@dataclass(frozen=True)
class Credential:
    token: str
    role_hint: Role | None = None


def _bearer(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def extract_credential(
    *,
    headers: Mapping[str, str] | None = None,
    query: Mapping[str, str] | None = None,
    cookies: Mapping[str, str] | None = None,
) -> Credential | None:
    """Pick the credential a request carries, or None.

    Priority: `Authorization: Bearer`, then the `token` query parameter,
    then the `token`, `admintoken` and `clientToken` cookies.
    """
    if headers is not None:
        token = _bearer(headers.get("authorization") or headers.get("Authorization"))
        if token:
            return Credential(token)

    if query is not None:
        token = query.get("token")
        if isinstance(token, str) and token.strip():
            return Credential(token.strip())

    if cookies is not None:
        for name, hint in CREDENTIAL_COOKIES:
            token = cookies.get(name)
            if isinstance(token, str) and token.strip():
                return Credential(token.strip(), hint)

    return None


def _display_name(doc: Mapping[str, Any], claims: Mapping[str, Any]) -> str:
    for source in (doc, claims):
        for key in ("firstName", "name", "fullName", "username"):
            name = normalize_display_name(source.get(key))
            if name:
                return name
    return ANONYMOUS_NAME


class IdentityResolver:
    def __init__(self, config: ChatRuntimeConfig, store: ChatStore) -> None:
        self.config = config
        self.store = store
        self.log = logging.getLogger("tenantchat.identity")

    def verify_token(self, token: str) -> dict[str, Any]:
        if not self.config.jwt_secret:
            raise Unauthorized("Authentication is not configured")
        try:
            claims = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=list(self.config.jwt_algorithms),
            )
        except jwt.ExpiredSignatureError as e:
            raise Unauthorized("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise Unauthorized("Invalid token") from e
        if not isinstance(claims, dict):
            raise Unauthorized("Invalid token")
        return claims

    async def resolve(self, credential: Credential | None) -> Principal:
        if credential is None or not credential.token:
            raise Unauthorized("Authentication required")

        claims = self.verify_token(credential.token)

        principal_id = None
        for key in ID_CLAIMS:
            value = claims.get(key)
            if value is not None and str(value).strip():
                principal_id = str(value).strip()
                break
        if principal_id is None:
            raise Unauthorized("Token carries no principal id")

        try:
            found = await self._lookup(principal_id)
            if found is None:
                raise Unauthorized("User not found")
            doc, role = found

            position = doc.get("position") or claims.get("position")
            if position not in self.config.allowed_positions:
                self.log.info(
                    "Refused principal=%s role=%s position=%r",
                    principal_id,
                    role.value,
                    position,
                )
                raise Unauthorized("Access denied")

            tenant_id = doc.get("companyId") or claims.get("companyId")
            if tenant_id is None or not str(tenant_id).strip():
                raise Unauthorized("Principal has no company")
            tenant_id = str(tenant_id)

            tenant_name = await self.store.find_tenant_name(tenant_id)
        except Unauthorized:
            raise
        except ChatError as e:
            self.log.warning("Identity lookup failed principal=%s: %s", principal_id, e)
            raise Unauthorized("Authentication failed") from e

        if credential.role_hint is not None and credential.role_hint != role:
            self.log.debug(
                "Role hint mismatch principal=%s hint=%s resolved=%s",
                principal_id,
                credential.role_hint.value,
                role.value,
            )

        email = doc.get("email") or claims.get("email")
        return Principal(
            id=principal_id,
            tenant_id=tenant_id,
            role=role,
            display_name=_display_name(doc, claims),
            email=str(email) if email else None,
            tenant_name=tenant_name or UNKNOWN_TENANT_NAME,
            position=str(position),
        )

    async def _lookup(self, principal_id: str) -> tuple[dict[str, Any], Role] | None:
        for collection, role in PRINCIPAL_COLLECTIONS:
            doc = await self.store.find_principal_doc(collection, principal_id)
            if doc is not None:
                return doc, role
        return None


def describe_principal_doc(doc: Mapping[str, Any], role: Role) -> dict[str, Any]:
    """Directory entry for a stored principal document."""
    return {
        "userId": str(doc["_id"]),
        "firstName": _display_name(doc, {}),
        "email": doc.get("email"),
        "position": doc.get("position"),
        "companyId": str(doc.get("companyId") or ""),
        "role": role.value,
    }
