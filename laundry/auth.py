# laundry/auth.py
"""Caller identity from Supabase access tokens.

Accepts tokens signed with:
  - HS256 (project JWT secret)  -> verified locally with SUPABASE_JWT_SECRET
  - RS256 / ES256 (JWKS)        -> verified with the project's JWKS
Falls back to Supabase's /auth/v1/user when neither applies.
"""
from __future__ import annotations

import time
from typing import Any, Dict, Literal, Optional

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel

from .errors import Forbidden, Unauthenticated

Role = Literal["customer", "washer", "operator"]
ROLES = ("customer", "washer", "operator")
JWKS_TTL_SECONDS = 600


class Identity(BaseModel):
    user_id: str
    role: Role


def identity_from_claims(user_id: Optional[str], app_metadata: Optional[Dict[str, Any]] = None) -> Identity:
    """Build the caller's identity.

    The role is read from ``app_metadata`` only: users can edit their own
    ``user_metadata`` through ``auth.updateUser``.
    """
    if not user_id:
        raise Unauthenticated("Token missing subject (sub)")
    role = (app_metadata or {}).get("role") or "customer"
    if role not in ROLES:
        raise Forbidden(f"Unknown role '{role}'")
    return Identity(user_id=user_id, role=role)


class SupabaseIdentityProvider:
    def __init__(
        self,
        supabase_url: str,
        anon_key: Optional[str] = None,
        jwt_secret: Optional[str] = None,
        timeout: float = 10.0,
    ):
        if not supabase_url:
            raise RuntimeError("SUPABASE_URL not set")
        self.issuer = f"{supabase_url.rstrip('/')}/auth/v1"
        self.jwks_url = f"{self.issuer}/.well-known/jwks.json"
        self._anon_key = anon_key or ""
        self._jwt_secret = jwt_secret or ""
        self._timeout = timeout
        self._cache: Dict[str, Any] = {"jwks": None, "fetched_at": 0.0}

    async def _get_jwks(self) -> Dict[str, Any]:
        now = time.time()
        if not self._cache["jwks"] or now - self._cache["fetched_at"] > JWKS_TTL_SECONDS:
            headers = {}
            if self._anon_key:
                headers = {"apikey": self._anon_key, "Authorization": f"Bearer {self._anon_key}"}
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self.jwks_url, headers=headers)
            resp.raise_for_status()
            self._cache["jwks"] = resp.json()
            self._cache["fetched_at"] = now
        return self._cache["jwks"]

    async def _fetch_user(self, token: str) -> Identity:
        """Fallback: ask Supabase who this token belongs to."""
        headers = {"Authorization": f"Bearer {token}", "apikey": self._anon_key}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(f"{self.issuer}/user", headers=headers)
        except httpx.HTTPError as e:
            raise Unauthenticated(f"Could not verify token with Supabase: {e}") from e
        if resp.status_code != 200:
            raise Unauthenticated("Invalid or expired token")
        data = resp.json() or {}
        user = data.get("user") or data
        return identity_from_claims(user.get("id"), user.get("app_metadata"))

    def _decode(self, token: str, key: Any, algorithm: str) -> Identity:
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                options={"verify_aud": False},
                issuer=self.issuer,
            )
        except JWTError as e:
            raise Unauthenticated(f"Invalid token ({algorithm}): {e}") from e
        return identity_from_claims(claims.get("sub"), claims.get("app_metadata"))

    async def authenticate(self, token: str) -> Identity:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return await self._fetch_user(token)
        alg = (header.get("alg") or "").upper()

        if alg == "HS256" and self._jwt_secret:
            return self._decode(token, self._jwt_secret, "HS256")

        if alg in ("RS256", "ES256"):
            try:
                jwks = await self._get_jwks()
            except httpx.HTTPError as e:
                raise Unauthenticated(f"Could not load signing keys: {e}") from e
            key = next((k for k in jwks.get("keys", []) if k.get("kid") == header.get("kid")), None)
            if not key:
                raise Unauthenticated("Signing key not found")
            return self._decode(token, key, alg)

        return await self._fetch_user(token)
