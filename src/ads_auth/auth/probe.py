"""
Best-effort identity, permission and ad account lookup after a code exchange.

Nothing here is allowed to fail a callback: every provider error is turned
into a warning on the returned ``ProbeResult``.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config.settings import settings
from ..utils.logger import logger
from .http import ProviderHTTPClient
from .normalize import NormalizedToken
from .platforms import PlatformConfig, PlatformRegistry
from .token_store import AdAccount

GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_ADS_BASE_URL = "https://googleads.googleapis.com"
AD_ACCOUNT_FIELDS = "id,name,account_id,currency,account_status"


@dataclass
class ProbeResult:
    """What could be learned about the freshly connected account."""

    user_info: Dict[str, Any] = field(default_factory=dict)
    permissions: List[str] = field(default_factory=list)
    ad_accounts: List[AdAccount] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # False when the account list is partial or was not looked up at all
    ad_accounts_complete: bool = False

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


class AccountProbe:
    """Queries provider identity endpoints with a fresh access token."""

    def __init__(
        self,
        registry: PlatformRegistry,
        http: ProviderHTTPClient,
        graph_api_version: Optional[str] = None,
        google_ads_developer_token: Optional[str] = None,
        google_ads_api_version: Optional[str] = None,
        max_pages: int = 50,
    ):
        self.registry = registry
        self.http = http
        self.graph_base_url = f"https://graph.facebook.com/{graph_api_version or settings.fb_api_version}"
        self.google_ads_developer_token = (
            settings.google_ads_developer_token if google_ads_developer_token is None else google_ads_developer_token
        )
        self.google_ads_api_version = google_ads_api_version or settings.google_ads_api_version
        self.max_pages = max_pages

    async def probe(self, platform_id: str, token: NormalizedToken) -> ProbeResult:
        """
        Collect user info, granted permissions and ad accounts.

        Args:
            platform_id: Platform the token was issued for
            token: Token returned by the code exchange

        Returns:
            ProbeResult; ``degraded`` when any lookup failed
        """
        config = self.registry.get_config(platform_id)
        if config.is_facebook_family:
            return await self._probe_facebook(config, token)
        return await self._probe_google(config, token)

    @staticmethod
    def _collect(result: ProbeResult, label: str, outcome: Any) -> Any:
        """Return a gathered value, or record the exception as a warning."""
        if isinstance(outcome, Exception):
            logger.warning(f"Could not fetch {label}: {outcome}")
            result.warnings.append(f"Could not fetch {label}: {outcome}")
            return None
        return outcome

    async def _fetch_paginated(self, url: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Fetch every page of a Graph API edge.

        Args:
            url: Edge URL
            params: Query parameters of the first page

        Returns:
            Items of all pages, up to ``max_pages`` pages
        """
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        next_params: Optional[Dict[str, Any]] = params
        pages = 0

        while next_url and pages < self.max_pages:
            data = await self.http.get_json(next_url, params=next_params)
            items.extend(data.get("data", []))
            pages += 1
            next_url = data.get("paging", {}).get("next")
            next_params = None  # Next URL already has params

        logger.debug(f"Fetched {len(items)} items across {pages} pages from {url}")
        return items

    async def _probe_google(self, config: PlatformConfig, token: NormalizedToken) -> ProbeResult:
        result = ProbeResult(permissions=token.scope.split() if token.scope else [])
        headers = {"Authorization": f"Bearer {token.access_token}"}

        lookups = [self.http.get_json(GOOGLE_USERINFO_URL, headers=headers)]
        if self.google_ads_developer_token:
            lookups.append(self.http.get_json(
                f"{GOOGLE_ADS_BASE_URL}/{self.google_ads_api_version}/customers:listAccessibleCustomers",
                headers={**headers, "developer-token": self.google_ads_developer_token},
            ))
        else:
            logger.info("GOOGLE_ADS_DEVELOPER_TOKEN not set, skipping Google Ads customer lookup")

        outcomes = await asyncio.gather(*lookups, return_exceptions=True)

        user_info = self._collect(result, "Google user info", outcomes[0])
        if user_info:
            result.user_info = {
                "id": user_info.get("id"),
                "email": user_info.get("email"),
                "name": user_info.get("name"),
                "picture": user_info.get("picture"),
            }

        if len(outcomes) > 1:
            customers = self._collect(result, "Google Ads customers", outcomes[1])
            result.ad_accounts_complete = customers is not None
            for resource_name in (customers or {}).get("resourceNames", []):
                result.ad_accounts.append(AdAccount(
                    account_id=resource_name.split("/")[-1],
                    kind="google_customer",
                ))

        logger.info(
            f"Probed {config.platform_id} account {result.user_info.get('email')}: "
            f"{len(result.ad_accounts)} customers, {len(result.warnings)} warnings"
        )
        return result

    async def _probe_facebook(self, config: PlatformConfig, token: NormalizedToken) -> ProbeResult:
        result = ProbeResult()
        auth = {"access_token": token.access_token}

        outcomes = await asyncio.gather(
            self.http.get_json(f"{self.graph_base_url}/me", params={**auth, "fields": "id,name,email,picture"}),
            self.http.get_json(f"{self.graph_base_url}/me/permissions", params=auth),
            self._fetch_paginated(
                f"{self.graph_base_url}/me/adaccounts",
                {**auth, "fields": AD_ACCOUNT_FIELDS, "limit": 100},
            ),
            self._fetch_paginated(
                f"{self.graph_base_url}/me/accounts",
                {**auth, "fields": "id,name,instagram_business_account{id,username}", "limit": 100},
            ),
            return_exceptions=True,
        )
        me, permissions, ad_accounts, pages = outcomes
        result.ad_accounts_complete = not isinstance(ad_accounts, Exception) and not isinstance(pages, Exception)

        me = self._collect(result, "Facebook user info", me)
        if me:
            picture = me.get("picture")
            result.user_info = {
                "id": me.get("id"),
                "name": me.get("name"),
                "email": me.get("email"),
                "picture": picture.get("data", {}).get("url") if isinstance(picture, dict) else picture,
            }

        permissions = self._collect(result, "Facebook permissions", permissions)
        if permissions:
            result.permissions = [
                entry["permission"]
                for entry in permissions.get("data", [])
                if entry.get("status") == "granted" and entry.get("permission")
            ]

        for account in self._collect(result, "Facebook ad accounts", ad_accounts) or []:
            result.ad_accounts.append(AdAccount(
                account_id=account.get("id") or f"act_{account.get('account_id')}",
                name=account.get("name"),
                status=str(account["account_status"]) if account.get("account_status") is not None else None,
                currency=account.get("currency"),
            ))

        for page in self._collect(result, "Instagram business accounts", pages) or []:
            instagram = page.get("instagram_business_account")
            if instagram and instagram.get("id"):
                result.ad_accounts.append(AdAccount(
                    account_id=instagram["id"],
                    name=instagram.get("username") or page.get("name"),
                    kind="instagram_business",
                ))

        logger.info(
            f"Probed {config.platform_id} user {result.user_info.get('id')}: "
            f"{len(result.ad_accounts)} accounts, {len(result.permissions)} permissions, "
            f"{len(result.warnings)} warnings"
        )
        return result
