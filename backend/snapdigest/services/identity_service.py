"""
SnapDigest Backend — Telegram Identity Resolver
=================================================

What:  Turns the Telegram WebApp `initData` string into a user id, or the
       full user object (name, username, photo, premium flag).
Why:   Quotas and history are keyed by Telegram user id. The id must come
       from data Telegram signed, otherwise anyone could spend someone
       else's quota.
How:   Telegram's documented scheme:
         secret_key = HMAC_SHA256(key="WebAppData", msg=bot_token)
         check      = HMAC_SHA256(key=secret_key, msg=data_check_string)
       where data_check_string is every field except `hash`, as key=value,
       sorted by key, joined with newlines. check must equal `hash`.
Who:   SummaryService, via resolve_user_id() for quota and history keys and
       resolve_user() for the profile view.

Development Mode:
    With no bot token configured the signature cannot be checked. The user
    id is still extracted (so quotas work locally) and a warning is logged.

Reference: https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
"""

import hashlib
import hmac
import json
import logging
from typing import NamedTuple, Optional
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)


class TelegramUser(NamedTuple):
    """The `user` object Telegram puts in initData (fields the app uses)."""

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None
    is_premium: bool = False


class TelegramIdentityResolver:
    """
    resolve_user_id(raw_credential) -> user id string, or None when invalid.
    resolve_user(raw_credential) -> TelegramUser, or None when invalid.

    None is not an error: callers take the anonymous path.
    """

    def __init__(self, bot_token: str = ""):
        self.bot_token = bot_token

    def verify_signature(self, init_data: str) -> bool:
        """True when `init_data` carries a valid hash for this bot token."""
        params = dict(parse_qsl(init_data, keep_blank_values=True))
        received_hash = params.pop("hash", None)
        if not received_hash:
            logger.warning("No hash in initData")
            return False

        data_check_string = "\n".join(
            f"{key}={value}" for key, value in sorted(params.items())
        )
        secret_key = hmac.new(
            b"WebAppData", self.bot_token.encode("utf-8"), hashlib.sha256
        ).digest()
        expected = hmac.new(
            secret_key, data_check_string.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        if not hmac.compare_digest(expected, received_hash):
            logger.warning("Invalid Telegram signature")
            return False
        return True

    @staticmethod
    def extract_user(init_data: str) -> Optional[TelegramUser]:
        """Parse the `user` JSON field. No signature check."""
        params = dict(parse_qsl(init_data, keep_blank_values=True))
        user_param = params.get("user")
        if not user_param:
            logger.warning("No user data in initData")
            return None
        try:
            user = json.loads(user_param)
        except ValueError:
            logger.warning("Failed to parse Telegram user from initData")
            return None

        user_id = user.get("id") if isinstance(user, dict) else None
        if user_id is None or str(user_id) == "":
            logger.warning("User ID missing in Telegram initData")
            return None
        return TelegramUser(
            id=str(user_id),
            first_name=user.get("first_name"),
            last_name=user.get("last_name"),
            username=user.get("username"),
            photo_url=user.get("photo_url"),
            is_premium=bool(user.get("is_premium", False)),
        )

    @classmethod
    def extract_user_id(cls, init_data: str) -> Optional[str]:
        """Pull user.id out of the `user` JSON field, as a string."""
        user = cls.extract_user(init_data)
        return user.id if user else None

    def resolve_user(self, raw_credential: Optional[str]) -> Optional[TelegramUser]:
        """
        Verified Telegram user for `raw_credential` (initData), or None.

        Malformed, unsigned, or missing credentials all return None.
        """
        if not raw_credential:
            return None

        if not self.bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not set, skipping signature verification")
            return self.extract_user(raw_credential)

        if not self.verify_signature(raw_credential):
            return None
        return self.extract_user(raw_credential)

    def resolve_user_id(self, raw_credential: Optional[str]) -> Optional[str]:
        """Id of resolve_user(raw_credential), or None."""
        user = self.resolve_user(raw_credential)
        return user.id if user else None
