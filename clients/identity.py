"""Clerk Backend API client: the identity provider behind every lead."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from clients.http import ApiClient, response_body
from errors import ExternalServiceError

log = logging.getLogger("quizfunnel")


@dataclass
class EmailAddress:
    id: str
    email: str


@dataclass
class IdentityUser:
    id: str
    email_addresses: List[EmailAddress] = field(default_factory=list)
    primary_email_address_id: Optional[str] = None

    @property
    def primary_email(self) -> Optional[str]:
        for addr in self.email_addresses:
            if addr.id == self.primary_email_address_id:
                return addr.email
        return None

    def find_email(self, email: str) -> Optional[EmailAddress]:
        wanted = email.strip().casefold()
        for addr in self.email_addresses:
            if addr.email.strip().casefold() == wanted:
                return addr
        return None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IdentityUser":
        return cls(
            id=data["id"],
            email_addresses=[
                EmailAddress(id=e["id"], email=e["email_address"])
                for e in data.get("email_addresses") or []
            ],
            primary_email_address_id=data.get("primary_email_address_id"),
        )


def _error_codes(body: Any) -> List[str]:
    if not isinstance(body, dict):
        return []
    return [e.get("code") for e in body.get("errors") or [] if isinstance(e, dict)]


class IdentityClient(ApiClient):
    service = "identity"

    def __init__(self, base_url: str, api_key: str, *, sign_in_token_ttl_seconds: int = 604800, **kwargs):
        super().__init__(base_url, api_key, **kwargs)
        self.sign_in_token_ttl_seconds = sign_in_token_ttl_seconds

    async def find_user_by_email(self, email: str) -> Optional[IdentityUser]:
        r = await self.request("GET", "/users", params={"email_address": [email]})
        self.raise_for_status(r, "find user by email")
        users = r.json()
        if not isinstance(users, list) or not users:
            return None
        return IdentityUser.from_api(users[0])

    async def get_user(self, user_id: str) -> Optional[IdentityUser]:
        r = await self.request("GET", f"/users/{user_id}")
        if r.status_code == 404:
            return None
        self.raise_for_status(r, "get user")
        return IdentityUser.from_api(r.json())

    async def create_or_get_user(self, email: str) -> IdentityUser:
        """Return the user owning ``email``, creating it only if none exists."""
        existing = await self.find_user_by_email(email)
        if existing:
            log.info("IDENTITY_FOUND %s for %s", existing.id, email)
            return existing

        r = await self.request(
            "POST",
            "/users",
            json={"email_address": [email], "skip_password_requirement": True},
        )
        if 200 <= r.status_code < 300:
            user = IdentityUser.from_api(r.json())
            log.info("IDENTITY_CREATED %s for %s", user.id, email)
            return user

        # Someone else created it between our lookup and create
        if "form_identifier_exists" in _error_codes(response_body(r)):
            existing = await self.find_user_by_email(email)
            if existing:
                return existing

        self.raise_for_status(r, "create user")
        raise ExternalServiceError(self.service, "create user returned no user")

    async def add_primary_email(self, user_id: str, email: str) -> EmailAddress:
        r = await self.request(
            "POST",
            "/email_addresses",
            json={"user_id": user_id, "email_address": email, "verified": True, "primary": True},
        )
        self.raise_for_status(r, "add email address")
        data = r.json()
        return EmailAddress(id=data["id"], email=data["email_address"])

    async def set_primary_email(self, email_address_id: str) -> None:
        r = await self.request(
            "PATCH",
            f"/email_addresses/{email_address_id}",
            json={"primary": True, "verified": True},
        )
        self.raise_for_status(r, "set primary email")

    async def delete_email_address(self, email_address_id: str) -> None:
        r = await self.request("DELETE", f"/email_addresses/{email_address_id}")
        if r.status_code == 404:
            return
        self.raise_for_status(r, "delete email address")

    async def change_primary_email(self, user_id: str, old_email: str, new_email: str) -> IdentityUser:
        """Make ``new_email`` the user's primary address and detach ``old_email``.

        The new address is added (or promoted) first so the user is never
        left without a primary email.
        """
        user = await self.get_user(user_id)
        if user is None:
            raise ExternalServiceError(self.service, f"user {user_id} not found", upstream_status=404)

        current = user.find_email(new_email)
        if current:
            if current.id != user.primary_email_address_id:
                await self.set_primary_email(current.id)
            new_id = current.id
        else:
            new_id = (await self.add_primary_email(user_id, new_email)).id

        for addr in user.email_addresses:
            if addr.id != new_id and addr.email.strip().casefold() == old_email.strip().casefold():
                await self.delete_email_address(addr.id)

        log.info("IDENTITY_EMAIL_CHANGED %s -> %s", user_id, new_email)
        return await self.get_user(user_id) or user

    async def create_sign_in_token(self, user_id: str) -> str:
        r = await self.request(
            "POST",
            "/sign_in_tokens",
            json={"user_id": user_id, "expires_in_seconds": self.sign_in_token_ttl_seconds},
        )
        self.raise_for_status(r, "create sign-in token")
        return r.json()["token"]
