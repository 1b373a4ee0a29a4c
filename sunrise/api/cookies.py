from __future__ import annotations

from starlette.responses import Response

from sunrise.core.settings import Settings

SECURE_PREFIX = "__Secure-"


def set_session_cookie(response: Response, settings: Settings, refresh_token: str, max_age: int) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        refresh_token,
        max_age=max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    # Browsers may hold either variant depending on how the session was created.
    response.delete_cookie(settings.session_cookie_name, path="/")
    response.delete_cookie(SECURE_PREFIX + settings.session_cookie_name, path="/", secure=True)
