import hashlib
import hmac

from flask import current_app, g, jsonify, redirect, request

from security.services import get_security_services
from security.settings import RedirectTarget

LOGIN_PATH = "/auth/login"
LOGIN_ENDPOINT = "auth.login"


def access_cookie_value(secret_key: str, slug: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), slug.encode("utf-8"), hashlib.sha256).hexdigest()


def _has_access_cookie(slug: str) -> bool:
    cookie_name = current_app.config.get("LOGIN_ACCESS_COOKIE_NAME", "loginguard_login_access")
    presented = request.cookies.get(cookie_name) or ""
    expected = access_cookie_value(current_app.config["SECRET_KEY"], slug)
    return hmac.compare_digest(presented, expected)


def _redirect_away(target: RedirectTarget):
    if target is RedirectTarget.HOME:
        return redirect("/", code=302)
    # same body as the app's own 404 so the endpoint looks absent
    return jsonify(error="Not found"), 404


def hide_login_guard():
    """
    before_request hook. With hide-login on, the real login endpoint only
    answers clients that first visited /<login_slug> (which sets a short
    access cookie) or that already have a session.

    Requests routed to any other endpoint return before the settings are
    read, so /health keeps answering while the database is down. Only
    the login endpoint and unrouted paths (a possible slug) need them.
    """
    if request.url_rule is not None and request.endpoint != LOGIN_ENDPOINT:
        return None

    config = get_security_services().config
    if not config.hide_login_enabled:
        return None

    path = request.path.rstrip("/") or "/"

    if path == "/" + config.login_slug:
        resp = redirect(LOGIN_PATH, code=302)
        resp.set_cookie(
            current_app.config.get("LOGIN_ACCESS_COOKIE_NAME", "loginguard_login_access"),
            access_cookie_value(current_app.config["SECRET_KEY"], config.login_slug),
            max_age=current_app.config.get("LOGIN_ACCESS_COOKIE_SECONDS", 300),
            httponly=True,
            secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
            samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
            path="/",
        )
        return resp

    if path != LOGIN_PATH:
        return None
    if getattr(g, "user", None) is not None:
        return None
    if _has_access_cookie(config.login_slug):
        return None
    return _redirect_away(config.redirect_target)
