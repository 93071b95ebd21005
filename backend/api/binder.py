"""Session identity binding via cookie.

The binder only reads and writes the cookie. It never decides whether a
session is live; that stays with the SessionManager.
"""

import re
from typing import Literal

from fastapi import Response
from starlette.requests import HTTPConnection

# Matches ids produced by SessionManager._generate_session_id.
SESSION_ID_PATTERN = re.compile(r"^sess_[0-9a-f]{32}$")


def is_valid_session_id(value: str | None) -> bool:
    """Return True if ``value`` looks like a gateway session id."""
    return bool(value) and SESSION_ID_PATTERN.fullmatch(value or "") is not None


class SessionBinder:
    """Reads the session cookie from requests and sets it on responses.

    Attributes:
        cookie_name: Name of the session cookie.
        samesite: SameSite policy written on every cookie.
        secure: Whether the cookie is marked Secure.
    """

    def __init__(
        self,
        cookie_name: str = "sandbox_session",
        samesite: Literal["lax", "strict", "none"] = "lax",
        secure: bool = False,
    ) -> None:
        self.cookie_name = cookie_name
        self.samesite = samesite
        # Browsers reject SameSite=None without Secure.
        self.secure = secure or samesite == "none"

    def read(self, request: HTTPConnection) -> str | None:
        """Return the session id from the cookie, or None if absent or malformed."""
        value = request.cookies.get(self.cookie_name)
        return value if is_valid_session_id(value) else None

    def attach(self, response: Response, session_id: str, max_age: int) -> None:
        """Set the session cookie on ``response``.

        Args:
            response: Outgoing response.
            session_id: Session to bind the client to.
            max_age: Cookie lifetime in seconds.
        """
        response.set_cookie(
            key=self.cookie_name,
            value=session_id,
            max_age=max_age,
            path="/",
            httponly=True,
            samesite=self.samesite,
            secure=self.secure,
        )
