"""
WebDAV elements caldav does not ship: the privilege set and the CardDAV
vocabulary (RFC 6352).  They compose with ``caldav.elements`` the same way
``dav.Prop() + [...]`` does.
"""

from caldav.elements.base import BaseElement, NamedBaseElement
from caldav.lib.namespace import ns

CARDDAV = "urn:ietf:params:xml:ns:carddav"


def _card(tag: str) -> str:
    return f"{{{CARDDAV}}}{tag}"


class CurrentUserPrivilegeSet(BaseElement):
    tag = ns("D", "current-user-privilege-set")


class Privilege(BaseElement):
    tag = ns("D", "privilege")


class AddressbookHomeSet(BaseElement):
    tag = _card("addressbook-home-set")


class Addressbook(BaseElement):
    tag = _card("addressbook")


class AddressData(BaseElement):
    tag = _card("address-data")


class AddressbookQuery(BaseElement):
    tag = _card("addressbook-query")


class AddressbookMultiGet(BaseElement):
    tag = _card("addressbook-multiget")


class Filter(BaseElement):
    tag = _card("filter")

    def __init__(self, test: str = "anyof") -> None:
        super().__init__()
        self.attributes["test"] = test


class PropFilter(NamedBaseElement):
    tag = _card("prop-filter")
