"""Session authentication helpers for the billing API."""

from __future__ import annotations

from dataclasses import dataclass

from billing_client.constants import SESSION_COOKIE_NAME


@dataclass(frozen=True)
class SessionCredentials:
    session_token: str
    cookie_name: str = SESSION_COOKIE_NAME

    def __post_init__(self) -> None:
        if not self.session_token or not self.session_token.strip():
            raise ValueError("session_token must be a non-empty string")

    def __repr__(self) -> str:
        return (
            f"SessionCredentials(session_token=[REDACTED - "
            f"{len(self.session_token)} chars], cookie_name={self.cookie_name!r})"
        )


def build_session_headers(credentials: SessionCredentials | None) -> dict[str, str]:
    """Return the headers that authenticate a request with the session cookie."""
    if credentials is None:
        return {}
    token = credentials.session_token.strip()
    return {"Cookie": f"{credentials.cookie_name}={token}"}
