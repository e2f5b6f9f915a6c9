"""Registry authentication headers for engine pull and push requests."""

from __future__ import annotations

import base64
import json

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Engines reject pushes without an X-Registry-Auth header, even an empty one
EMPTY_AUTH_HEADER = base64.urlsafe_b64encode(b"{}").decode("ascii")


class RegistryAuthentication(BaseModel):
    """Credentials for a single registry.

    Either user credentials or an identity token must be supplied.

    Attributes:
        username: Registry user name.
        password: Registry password.
        server_address: Registry address the credentials belong to.
        email: Optional e-mail address.
        token: Identity token used instead of user credentials.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    username: str | None = Field(default=None)
    password: str | None = Field(default=None)
    server_address: str | None = Field(default=None)
    email: str | None = Field(default=None)
    token: str | None = Field(default=None)

    @model_validator(mode="after")
    def validate_credentials(self) -> RegistryAuthentication:
        """Require a token or a username/password pair."""
        if self.token is None and (self.username is None or self.password is None):
            raise ValueError("registry authentication requires a token or username and password")
        return self

    @property
    def auth_header(self) -> str:
        """The base64url encoded ``X-Registry-Auth`` header value."""
        if self.token is not None:
            payload: dict[str, str] = {"identitytoken": self.token}
        else:
            payload = {
                "username": self.username or "",
                "password": self.password or "",
                "serveraddress": self.server_address or "",
                "email": self.email or "",
            }
        encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(encoded).decode("ascii")

    def lifecycle_auth(self, domain: str) -> str:
        """Render the ``CNB_REGISTRY_AUTH`` value read by lifecycle phases.

        Args:
            domain: Registry the credentials apply to when no server
                address is configured.
        """
        if self.token is not None:
            credential = f"Bearer {self.token}"
        else:
            basic = f"{self.username}:{self.password}".encode()
            credential = "Basic " + base64.b64encode(basic).decode("ascii")
        registry = self.server_address or domain
        return json.dumps({registry: credential}, separators=(",", ":"))


__all__ = ["EMPTY_AUTH_HEADER", "RegistryAuthentication"]
