import asyncio
import xml.etree.ElementTree as ET
from typing import Any, Optional

import pytest

from fastmail_mcp.errors import ProtocolError, ReadOnly
from fastmail_mcp.rights import compute_rights, get_rights, normalize_privileges, require_writable

PRIVILEGE_SET = """<d:current-user-privilege-set xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav">
  <d:privilege><d:read/></d:privilege>
  <d:privilege><d:write-content/></d:privilege>
  <d:privilege><d:write-properties/></d:privilege>
  <d:privilege><cal:read-free-busy/></d:privilege>
  <d:privilege><d:read/></d:privilege>
</d:current-user-privilege-set>"""


class FakeDav:
    def __init__(self, result: Any = None, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.urls: list = []

    async def fetch_privileges(self, url: str) -> Any:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.result


def test_normalize_privileges_from_xml() -> None:
    element = ET.fromstring(PRIVILEGE_SET)
    assert normalize_privileges(element) == ["read", "writeContent", "writeProperties", "readFreeBusy"]


def test_normalize_privileges_from_tag_strings() -> None:
    tags = ["{DAV:}read", "{DAV:}write-content", "{urn:ietf:params:xml:ns:caldav}read-free-busy"]
    assert normalize_privileges(tags) == ["read", "writeContent", "readFreeBusy"]


def test_normalize_privileges_from_mapping_list() -> None:
    source = {"privilege": [{"read": {}}, {"write-content": {}, "_attributes": {"x": "1"}}, {"@ns": "DAV:", "bind": {}}]}
    assert normalize_privileges(source) == ["read", "writeContent", "bind"]


def test_normalize_privileges_from_mapping_single_item() -> None:
    assert normalize_privileges({"privilege": {"all": {}}}) == ["all"]


def test_normalize_privileges_from_strings() -> None:
    assert normalize_privileges(["read", "write-properties", "read"]) == ["read", "writeProperties"]


@pytest.mark.parametrize("source", [None, {}, {"privilege": None}, []])
def test_normalize_privileges_empty(source: Any) -> None:
    assert normalize_privileges(source) == []


@pytest.mark.parametrize(
    "tokens, can_read, can_write",
    [
        (["read"], True, False),
        (["read", "writeContent"], True, True),
        (["writeProperties"], False, True),
        (["write"], False, True),
        (["all"], True, True),
        (["readFreeBusy"], False, False),
    ],
)
def test_compute_rights(tokens: list, can_read: bool, can_write: bool) -> None:
    rights = compute_rights(tokens)
    assert rights.privileges == tokens
    assert rights.can_read is can_read
    assert rights.can_write is can_write


def test_get_rights_from_server() -> None:
    dav = FakeDav(ET.fromstring(PRIVILEGE_SET))
    rights = asyncio.run(get_rights(dav, "https://dav.example.com/cal/"))
    assert rights is not None
    assert rights.can_write
    assert dav.urls == ["https://dav.example.com/cal/"]


def test_get_rights_unknown_on_failure() -> None:
    dav = FakeDav(error=ProtocolError("PROPFIND failed", status=500))
    assert asyncio.run(get_rights(dav, "https://dav.example.com/cal/")) is None


def test_get_rights_unknown_on_empty_set() -> None:
    assert asyncio.run(get_rights(FakeDav(None), "https://dav.example.com/cal/")) is None
    empty = ET.fromstring('<d:current-user-privilege-set xmlns:d="DAV:"/>')
    assert asyncio.run(get_rights(FakeDav(empty), "https://dav.example.com/cal/")) is None


def test_require_writable_refuses_read_only() -> None:
    dav = FakeDav(["read"])
    with pytest.raises(ReadOnly, match="canWrite=true"):
        asyncio.run(require_writable(dav, "https://dav.example.com/shared/"))


def test_require_writable_allows_unknown() -> None:
    dav = FakeDav(error=ProtocolError("PROPFIND failed", status=403))
    assert asyncio.run(require_writable(dav, "https://dav.example.com/cal/")) is None
