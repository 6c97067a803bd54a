"""Long-lived client handles, created on first use."""

from __future__ import annotations

from typing import Optional

from .config import Settings
from .dav import CalDavClient, CardDavClient, caldav_client, carddav_client
from .errors import AuthError
from .jmap import JmapClient


class FastmailContext:
    """
    Holds the JMAP client and the CalDAV/CardDAV adapters for one account.

    Each accessor builds its handle the first time it is called and returns
    the same object afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        jmap: Optional[JmapClient] = None,
        caldav: Optional[CalDavClient] = None,
        carddav: Optional[CardDavClient] = None,
    ) -> None:
        self.settings = settings
        self._jmap = jmap
        self._caldav = caldav
        self._carddav = carddav

    def jmap(self) -> JmapClient:
        if self._jmap is None:
            s = self.settings
            self._jmap = JmapClient(s.base_url, api_token=s.api_token, username=s.username, password=s.app_password)
        return self._jmap

    def _dav_credentials(self) -> tuple[str, str]:
        s = self.settings
        if not s.dav_username or not s.app_password:
            raise AuthError("Missing DAV credentials. Provide FASTMAIL_USERNAME + FASTMAIL_APP_PASSWORD.")
        return s.dav_username, s.app_password

    def caldav(self) -> CalDavClient:
        if self._caldav is None:
            username, password = self._dav_credentials()
            self._caldav = caldav_client(self.settings.caldav_url, username, password)
        return self._caldav

    def carddav(self) -> CardDavClient:
        if self._carddav is None:
            username, password = self._dav_credentials()
            self._carddav = carddav_client(self.settings.carddav_url, username, password)
        return self._carddav

    @property
    def organizer_email(self) -> Optional[str]:
        return self.settings.organizer_email
