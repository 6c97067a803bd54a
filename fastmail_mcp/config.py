"""
Configuration from environment variables.

A ``.env`` file next to the project is loaded first.  Nothing here raises
for missing credentials; the handle that needs them raises
:class:`~fastmail_mcp.errors.AuthError` when it is first used.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import quote

from dotenv import load_dotenv

DEFAULT_BASE_URL = "https://api.fastmail.com"
DEFAULT_CALDAV_URL = "https://caldav.fastmail.com"
DEFAULT_CARDDAV_URL = "https://carddav.fastmail.com"

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_PLACEHOLDER_RE = re.compile(r"\$\{[^}]+\}")


def load_env_file() -> None:
    load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")


def env_value(name: str, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Read ``name``, treating blanks and unexpanded ``${VAR}`` placeholders as unset."""
    source = os.environ if environ is None else environ
    value = source.get(name)
    if value is None:
        return None
    value = value.strip()
    if not value or _PLACEHOLDER_RE.search(value):
        return None
    return value


def normalize_url(value: Optional[str], default: str) -> str:
    url = value or default
    if not _SCHEME_RE.match(url):
        url = f"https://{url}"
    return url.rstrip("/")


def principal_url(base: str, username: Optional[str]) -> str:
    """Expand a bare DAV host into the user's principal URL."""
    if "/dav/" in base or not username:
        url = base
    else:
        url = f"{base}/dav/principals/user/{quote(username, safe='@')}"
    return url if url.endswith("/") else f"{url}/"


@dataclass
class Settings:
    api_token: Optional[str] = None
    username: Optional[str] = None
    app_password: Optional[str] = None
    dav_username: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    caldav_url: str = DEFAULT_CALDAV_URL
    carddav_url: str = DEFAULT_CARDDAV_URL
    organizer_email: Optional[str] = None
    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        def get(name: str) -> Optional[str]:
            return env_value(name, environ)

        username = get("FASTMAIL_USERNAME")
        dav_username = get("FASTMAIL_DAV_USERNAME") or username
        return cls(
            api_token=get("FASTMAIL_API_TOKEN"),
            username=username,
            app_password=get("FASTMAIL_APP_PASSWORD"),
            dav_username=dav_username,
            base_url=normalize_url(get("FASTMAIL_BASE_URL"), DEFAULT_BASE_URL),
            caldav_url=principal_url(normalize_url(get("FASTMAIL_CALDAV_URL"), DEFAULT_CALDAV_URL), dav_username),
            carddav_url=principal_url(normalize_url(get("FASTMAIL_CARDDAV_URL"), DEFAULT_CARDDAV_URL), dav_username),
            organizer_email=get("FASTMAIL_ORGANIZER_EMAIL") or username or dav_username,
            transport=(get("MCP_TRANSPORT") or "stdio").lower(),
            host=get("HOST") or "127.0.0.1",
            port=int(get("PORT") or "8000"),
            log_level=(get("LOG_LEVEL") or "INFO").upper(),
        )
