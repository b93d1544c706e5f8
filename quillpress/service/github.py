from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlencode

import httpx

from quillpress.logging import get_logger
from quillpress.storage.models import GitHubIdentity

GITHUB_OAUTH = {
    "auth_url": "https://github.com/login/oauth/authorize",
    "token_url": "https://github.com/login/oauth/access_token",
    "userinfo_url": "https://api.github.com/user",
    "emails_url": "https://api.github.com/user/emails",
    "scope": "read:user user:email",
}

logger = get_logger(__name__)


class GitHubIdentityProvider:
    """Authorization URL building and code exchange against GitHub OAuth."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport
        self._registered_codes: dict[str, GitHubIdentity] = {}
        self._registry_lock = threading.Lock()

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "scope": GITHUB_OAUTH["scope"],
            "state": state,
        }
        return f"{GITHUB_OAUTH['auth_url']}?{urlencode(params)}"

    def register_code(self, code: str, identity: GitHubIdentity) -> None:
        """Record an identity for ``code`` so offline and test flows skip GitHub."""
        with self._registry_lock:
            self._registered_codes[code] = identity

    async def exchange_code(self, code: str) -> Optional[GitHubIdentity]:
        """Exchange an authorization code for the user's GitHub identity.

        Returns None when GitHub rejects the code or returns an unusable profile.
        """
        with self._registry_lock:
            registered = self._registered_codes.pop(code, None)
        if registered:
            return registered

        if not self.is_configured:
            logger.error("oauth_credentials_missing", provider="github")
            return None

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GITHUB_OAUTH["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    logger.error(
                        "oauth_no_access_token",
                        provider="github",
                        error=token_result.get("error") if isinstance(token_result, dict) else None,
                    )
                    return None

                headers = {
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/vnd.github+json",
                }
                userinfo_response = await client.get(
                    GITHUB_OAUTH["userinfo_url"], headers=headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict) or userinfo.get("id") is None:
                    logger.error("oauth_userinfo_invalid_format", provider="github")
                    return None

                email = userinfo.get("email")
                if not email:
                    # Private addresses only show up on the emails endpoint
                    emails_response = await client.get(
                        GITHUB_OAUTH["emails_url"], headers=headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        if not isinstance(emails, list):
                            emails = []
                        email = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict)
                                and e.get("primary")
                                and e.get("verified")
                            ),
                            None,
                        )
                if not email:
                    logger.error("oauth_identity_missing_email", provider="github")
                    return None

                identity = GitHubIdentity(
                    github_id=int(userinfo["id"]),
                    username=userinfo.get("login") or "",
                    email=email,
                    name=userinfo.get("name"),
                    avatar_url=userinfo.get("avatar_url"),
                )
                logger.info(
                    "oauth_exchange_success",
                    provider="github",
                    github_id=identity.github_id,
                )
                return identity
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="github",
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "oauth_exchange_error",
                provider="github",
                error_type=type(exc).__name__,
            )
            return None
