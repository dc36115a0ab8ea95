"""HTTP client for the optical terminal web interface."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from linkwatch.onu.parsers import extract_token, session_expired

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
TOKEN_PATH = "/asp/GetRandCount.asp"
LOGIN_PATH = "/login.cgi"
OPTICAL_PAGE_PATH = "/html/amp/opticinfo/opticinfo.asp"
PRE_LOGIN_COOKIE = "Cookie=body:Language:english:id=-1"
SESSION_COOKIE = "Cookie"


class OnuClientError(RuntimeError):
    """Base exception for optical terminal client errors."""


class OnuLoginError(OnuClientError):
    """Raised when the login exchange fails at the HTTP level."""


class OnuSessionError(OnuClientError):
    """Raised when the telemetry page shows an unauthenticated session."""


class OnuPageError(OnuClientError):
    """Raised when the telemetry page cannot be retrieved."""


def parse_cookies(set_cookie_headers: list[str]) -> dict[str, str]:
    """Map cookie names to values from ``Set-Cookie`` headers."""

    cookies: dict[str, str] = {}
    for header in set_cookie_headers:
        name, separator, value = header.split(";", 1)[0].partition("=")
        if separator and name.strip():
            cookies[name.strip()] = value
    return cookies


def format_cookies(cookies: dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


@dataclass(slots=True)
class OnuWebClient:
    """Log in to an optical terminal and fetch its telemetry page."""

    host: str
    username: str
    password: str = field(repr=False)
    timeout: float = 10.0
    transport: httpx.BaseTransport | None = field(default=None, repr=False)

    def fetch_optical_page(self, log_extra: dict[str, Any] | None = None) -> str:
        """Authenticate and return the body of the optical info page."""

        log_extra = log_extra or {}
        try:
            with httpx.Client(
                base_url=f"http://{self.host}",
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                cookies = self._login(client, log_extra)
                return self._optical_page(client, cookies, log_extra)
        except httpx.TimeoutException as exc:
            raise OnuClientError(f"Connection timeout to {self.host}") from exc
        except httpx.HTTPError as exc:
            raise OnuClientError(f"HTTP request to {self.host} failed: {exc}") from exc

    def _login(self, client: httpx.Client, log_extra: dict[str, Any]) -> dict[str, str]:
        landing = client.get("/", headers={"User-Agent": USER_AGENT})
        if landing.status_code >= 500:
            raise OnuLoginError(f"Login page returned status {landing.status_code}")
        cookies = parse_cookies(landing.headers.get_list("set-cookie"))

        token = extract_token(landing.text)
        if token is None:
            token = self._fetch_token(client, log_extra)
        else:
            logger.debug("token found in login page", extra=log_extra)

        form = {"UserName": self.username, "PassWord": base64.b64encode(self.password.encode("utf-8")).decode("ascii")}
        if token:
            form["x.X_HW_Token"] = token

        response = client.post(
            LOGIN_PATH,
            data=form,
            headers={
                "Cookie": PRE_LOGIN_COOKIE,
                "Referer": f"http://{self.host}/",
                "User-Agent": USER_AGENT,
            },
        )
        if response.status_code >= 500:
            raise OnuLoginError(f"Login returned status {response.status_code}")

        login_cookies = parse_cookies(response.headers.get_list("set-cookie"))
        session_cookie = login_cookies.get(SESSION_COOKIE)
        if session_cookie is not None:
            cookies[SESSION_COOKIE] = session_cookie
            if "sid=" in session_cookie:
                logger.debug("login ok, session id received", extra=log_extra)
        return cookies

    def _fetch_token(self, client: httpx.Client, log_extra: dict[str, Any]) -> str | None:
        try:
            response = client.post(
                TOKEN_PATH,
                content=b"",
                headers={"User-Agent": USER_AGENT, "Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.debug("token endpoint request failed error=%s", exc, extra=log_extra)
            return None
        if response.status_code >= 400:
            return None
        token = response.text.strip()
        if token:
            logger.debug("token received from token endpoint", extra=log_extra)
        return token or None

    def _optical_page(self, client: httpx.Client, cookies: dict[str, str], log_extra: dict[str, Any]) -> str:
        response = client.get(
            OPTICAL_PAGE_PATH,
            headers={
                "Cookie": format_cookies(cookies),
                "User-Agent": USER_AGENT,
                "Referer": f"http://{self.host}/index.asp",
            },
        )
        if response.status_code != 200:
            raise OnuPageError(f"Failed to access optical information page (status {response.status_code})")

        body = response.text
        if session_expired(body):
            logger.debug("optical page looks like a login redirect length=%d", len(body), extra=log_extra)
            raise OnuSessionError("Session expired or not authenticated")
        return body

    def check_connectivity(self) -> bool:
        try:
            with httpx.Client(
                base_url=f"http://{self.host}", timeout=min(self.timeout, 5.0), transport=self.transport
            ) as client:
                return client.get("/").status_code == 200
        except httpx.HTTPError:
            return False
