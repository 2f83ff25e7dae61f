"""
Async Meta Graph API publisher for Facebook pages and Instagram.

Uses one shared ``httpx.AsyncClient`` for every call. Failed responses
are raised as ``PlatformError`` carrying the HTTP status and the Graph
``error.code`` so the retry policy can classify them; transport errors
propagate as ``httpx`` exceptions (classified as network errors).

A local per-platform budget of ``requests_per_hour`` calls is enforced
before every request; exhausting it raises a ``rate_limit`` error
without touching the network.

Publishing flows:
    - Facebook text: ``POST /{page_id}/feed``
    - Facebook image: ``POST /{page_id}/photos`` (unpublished) then
      ``POST /{page_id}/feed`` with ``attached_media``
    - Instagram: ``POST /{account}/media`` (container) then
      ``POST /{account}/media_publish``
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx

from postscheduler.config import PLATFORM_LIMITS
from postscheduler.exceptions import PlatformError
from postscheduler.models import Platform, ProcessedContent, PublishReceipt

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600.0


@dataclass
class _RequestBudget:
    """Hourly request counter for one platform."""

    limit: int
    used: int = 0
    reset_at: float = 0.0

    def consume(self, now: float) -> bool:
        if now >= self.reset_at:
            self.used = 0
            self.reset_at = now + HOUR_SECONDS
        if self.used >= self.limit:
            return False
        self.used += 1
        return True


class MetaGraphClient:
    """Publisher for the Meta Graph API.

    Args:
        facebook_token: Facebook user/page access token. Falls back to
            ``FACEBOOK_ACCESS_TOKEN``.
        page_id: Facebook page id. Falls back to ``FACEBOOK_PAGE_ID``.
        instagram_token: Instagram access token. Falls back to
            ``INSTAGRAM_ACCESS_TOKEN``.
        instagram_account_id: Instagram business account id. Falls back
            to ``INSTAGRAM_ACCOUNT_ID``, then ``me``.
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests pass a
            ``MockTransport``).
        clock: Monotonic clock used by the request budget.
    """

    BASE_URL: str = "https://graph.facebook.com/v18.0"

    def __init__(
        self,
        facebook_token: Optional[str] = None,
        page_id: Optional[str] = None,
        instagram_token: Optional[str] = None,
        instagram_account_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.facebook_token = facebook_token or os.environ.get("FACEBOOK_ACCESS_TOKEN", "")
        self.page_id = page_id or os.environ.get("FACEBOOK_PAGE_ID", "")
        self.instagram_token = instagram_token or os.environ.get("INSTAGRAM_ACCESS_TOKEN", "")
        self.instagram_account_id = (
            instagram_account_id or os.environ.get("INSTAGRAM_ACCOUNT_ID") or "me"
        )
        self.clock = clock
        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL, timeout=timeout, transport=transport
        )
        self._page_token: Optional[str] = None
        self._budgets: Dict[Platform, _RequestBudget] = {
            platform: _RequestBudget(limit=PLATFORM_LIMITS[platform].requests_per_hour)
            for platform in Platform
        }

        if not self.facebook_token:
            logger.warning("Facebook access token not configured")
        if not self.page_id:
            logger.warning("Facebook page ID not configured")
        if not self.instagram_token:
            logger.warning("Instagram access token not configured")

    # ------------------------------------------------------------------
    # Publisher interface
    # ------------------------------------------------------------------

    async def publish(self, platform: Platform, processed: ProcessedContent) -> PublishReceipt:
        """Publish processed content to ``platform``.

        Raises:
            PlatformError: On an error response, missing credentials or an
                exhausted request budget.
            httpx.TransportError: On connection failures and timeouts.
        """
        logger.info(
            "Starting %s post (has_image=%s, content_length=%d)",
            platform.value,
            bool(processed.images),
            len(processed.text),
        )
        if platform is Platform.FACEBOOK:
            post_id = await self._publish_facebook(processed)
        elif platform is Platform.INSTAGRAM:
            post_id = await self._publish_instagram(processed)
        else:
            raise PlatformError(str(platform), "Unsupported platform", error_type="client_error")

        logger.info("%s post published: %s", platform.value, post_id)
        return PublishReceipt(platform=platform, post_id=post_id)

    async def validate_connection(self, platform: Platform) -> bool:
        """Check the platform's token with a ``/me`` call. Never raises
        ``PlatformError``; failures are logged and reported as ``False``."""
        try:
            if platform is Platform.FACEBOOK:
                self._require(platform, self.facebook_token, "access token")
                me = await self._request(
                    platform, "GET", "/me", params={"access_token": self.facebook_token}
                )
                logger.info("Facebook token validated (user_id=%s)", me.get("id"))
                await self._page_access_token()
            else:
                self._require(platform, self.instagram_token, "access token")
                me = await self._request(
                    platform,
                    "GET",
                    "/me",
                    params={"fields": "id,username", "access_token": self.instagram_token},
                )
                logger.info("Instagram token validated (user_id=%s)", me.get("id"))
        except (PlatformError, httpx.HTTPError) as exc:
            logger.error("%s connection validation failed: %s", platform.value, exc)
            return False
        return True

    async def probe(self) -> bool:
        """Healthy when at least one platform connection validates."""
        results = [await self.validate_connection(p) for p in Platform]
        return any(results)

    def rate_limit_status(self) -> Dict[str, Dict[str, Any]]:
        now = self.clock()
        status = {}
        for platform, budget in self._budgets.items():
            reset_in = max(0.0, budget.reset_at - now) if budget.reset_at else 0.0
            status[platform.value] = {
                "requests_used": budget.used,
                "requests_remaining": budget.limit - budget.used,
                "reset_in_minutes": int(-(-reset_in // 60)),
            }
        return status

    async def aclose(self) -> None:
        await self._client.aclose()
        logger.debug("Meta Graph client closed")

    # ------------------------------------------------------------------
    # Facebook
    # ------------------------------------------------------------------

    async def _page_access_token(self) -> str:
        if self._page_token is None:
            self._require(Platform.FACEBOOK, self.page_id, "page ID")
            info = await self._request(
                Platform.FACEBOOK,
                "GET",
                f"/{self.page_id}",
                params={"fields": "id,name,access_token", "access_token": self.facebook_token},
            )
            self._page_token = info.get("access_token") or self.facebook_token
        return self._page_token

    async def _publish_facebook(self, processed: ProcessedContent) -> str:
        self._require(Platform.FACEBOOK, self.facebook_token, "access token")
        token = await self._page_access_token()
        payload: Dict[str, Any] = {"access_token": token}

        if processed.primary_image:
            photo_id = await self._upload_facebook_photo(processed.primary_image, token)
            payload["attached_media"] = json.dumps([{"media_fbid": photo_id}])
            if processed.text:
                payload["message"] = processed.text
        else:
            payload["message"] = processed.text

        response = await self._request(
            Platform.FACEBOOK, "POST", f"/{self.page_id}/feed", data=payload
        )
        return self._id_from(Platform.FACEBOOK, response)

    async def _upload_facebook_photo(self, image_path: str, token: str) -> str:
        path = Path(image_path)
        with open(path, "rb") as fh:
            response = await self._request(
                Platform.FACEBOOK,
                "POST",
                f"/{self.page_id}/photos",
                data={"published": "false", "access_token": token},
                files={"source": (path.name, fh.read())},
            )
        photo_id = self._id_from(Platform.FACEBOOK, response)
        logger.info("Facebook image uploaded (photo_id=%s)", photo_id)
        return photo_id

    # ------------------------------------------------------------------
    # Instagram
    # ------------------------------------------------------------------

    async def _publish_instagram(self, processed: ProcessedContent) -> str:
        self._require(Platform.INSTAGRAM, self.instagram_token, "access token")
        if not processed.primary_image:
            raise PlatformError(
                Platform.INSTAGRAM.value,
                "Instagram requires an image for posting",
                error_type="content_error",
            )

        container_data = {
            "image_url": processed.primary_image,
            "access_token": self.instagram_token,
        }
        if processed.text:
            container_data["caption"] = processed.text
        container = await self._request(
            Platform.INSTAGRAM,
            "POST",
            f"/{self.instagram_account_id}/media",
            data=container_data,
        )
        creation_id = self._id_from(Platform.INSTAGRAM, container)
        logger.info("Instagram media container created (creation_id=%s)", creation_id)

        published = await self._request(
            Platform.INSTAGRAM,
            "POST",
            f"/{self.instagram_account_id}/media_publish",
            data={"creation_id": creation_id, "access_token": self.instagram_token},
        )
        return self._id_from(Platform.INSTAGRAM, published)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require(platform: Platform, value: str, what: str) -> None:
        if not value:
            raise PlatformError(
                platform.value,
                f"{platform.value.capitalize()} {what} not configured",
                error_type="authentication_error",
            )

    @staticmethod
    def _id_from(platform: Platform, body: Dict[str, Any]) -> str:
        if not body.get("id"):
            raise PlatformError(platform.value, "Response missing ID", error_type="unknown")
        return str(body["id"])

    def _consume_budget(self, platform: Platform) -> None:
        budget = self._budgets[platform]
        if not budget.consume(self.clock()):
            wait_minutes = int(-(-(budget.reset_at - self.clock()) // 60))
            raise PlatformError(
                platform.value,
                f"Rate limit exceeded. Try again in {wait_minutes} minutes.",
                error_type="rate_limit",
            )

    async def _request(
        self,
        platform: Platform,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._consume_budget(platform)
        response = await self._client.request(
            method, path, params=params, data=data, files=files
        )
        if response.is_error:
            raise self._error_from(platform, response)
        try:
            return response.json()
        except ValueError as exc:
            raise PlatformError(
                platform.value, f"Invalid JSON response: {exc}", status=response.status_code
            ) from exc

    @staticmethod
    def _error_from(platform: Platform, response: httpx.Response) -> PlatformError:
        message = f"HTTP {response.status_code}"
        code = None
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            message = error.get("message") or message
            code = error.get("code")
        elif isinstance(body, dict) and body.get("message"):
            message = body["message"]

        logger.error(
            "Meta API error %d on %s (code=%s): %s",
            response.status_code,
            platform.value,
            code,
            message,
        )
        return PlatformError(
            platform.value,
            message,
            status=response.status_code,
            code=int(code) if isinstance(code, (int, str)) and str(code).isdigit() else None,
        )


__all__ = ["MetaGraphClient"]
