"""
SP-API Authentication Module
Handles OAuth 2.0 token refresh via Login With Amazon (LWA) for each seller.

Refresh tokens live in the tenant's sp_api_authorizations table. A refresh
rejected with invalid_grant means the seller revoked access; the authorization
is flagged lost and the seller is skipped until it is re-authorized.
"""

import logging
import requests
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqp_pull.utils import db

logger = logging.getLogger(__name__)

# LWA Token endpoint
LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh this long before the token actually expires
EXPIRY_MARGIN = timedelta(minutes=5)


class MissingCredentialsError(ValueError):
    """LWA app credentials or the seller's refresh token are not configured."""
    pass


class SellerAuthorizationLost(Exception):
    """The seller revoked SP-API access; skip until re-authorized."""
    def __init__(self, amazon_seller_id: str):
        super().__init__(f"SP-API authorization lost for seller {amazon_seller_id}")
        self.amazon_seller_id = amazon_seller_id


@dataclass
class AccessToken:
    access_token: Optional[str]
    lost: bool = False


class CredentialProvider:
    """
    Issues valid access tokens per seller, refreshing when needed.

    Tokens are cached per (tenant, seller) until five minutes before expiry.
    """

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], session: requests.Session = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self._token_cache: Dict[tuple, Dict] = {}

    def get_valid_access_token(
        self,
        ctx: "db.TenantContext",
        amazon_seller_id: str,
        force_refresh: bool = False
    ) -> AccessToken:
        """
        Get a valid access token for a seller.

        Args:
            ctx: Active tenant context (holds the seller's refresh token)
            amazon_seller_id: Amazon seller id
            force_refresh: Ignore the cache and refresh now

        Returns:
            AccessToken; lost=True if the authorization is revoked

        Raises:
            MissingCredentialsError: If app credentials or the refresh token are missing
            requests.HTTPError: If token refresh fails for another reason
        """
        cache_key = (ctx.tenant_id, amazon_seller_id)

        if not force_refresh:
            cached = self._token_cache.get(cache_key)
            if cached and datetime.now() < cached["expires_at"] - EXPIRY_MARGIN:
                return AccessToken(cached["access_token"])

        authorization = db.get_authorization(ctx, amazon_seller_id)
        if authorization and authorization.get("is_lost"):
            return AccessToken(None, lost=True)

        refresh_token = (authorization or {}).get("refresh_token")
        self._validate(amazon_seller_id, refresh_token)

        response = self.session.post(
            LWA_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=30
        )

        if response.status_code in (400, 401) and self._is_invalid_grant(response):
            self._token_cache.pop(cache_key, None)
            db.mark_authorization_lost(ctx, amazon_seller_id, "invalid_grant")
            return AccessToken(None, lost=True)

        response.raise_for_status()
        data = response.json()

        access_token = data["access_token"]
        expires_in = data.get("expires_in", 3600)
        self._token_cache[cache_key] = {
            "access_token": access_token,
            "expires_at": datetime.now() + timedelta(seconds=expires_in)
        }

        logger.info(f"Access token refreshed for {amazon_seller_id}, expires in {expires_in} seconds")
        return AccessToken(access_token)

    def _validate(self, amazon_seller_id: str, refresh_token: Optional[str]):
        missing = []
        if not self.client_id:
            missing.append("SP_LWA_CLIENT_ID")
        if not self.client_secret:
            missing.append("SP_LWA_CLIENT_SECRET")
        if not refresh_token:
            missing.append(f"refresh token for {amazon_seller_id}")
        if missing:
            raise MissingCredentialsError(f"Missing required credentials: {', '.join(missing)}")

    @staticmethod
    def _is_invalid_grant(response: requests.Response) -> bool:
        try:
            body = response.json()
        except ValueError:
            return False
        return body.get("error") == "invalid_grant"

    def invalidate(self, ctx: "db.TenantContext", amazon_seller_id: str):
        self._token_cache.pop((ctx.tenant_id, amazon_seller_id), None)
