import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from fastmail_mcp import mail
from fastmail_mcp.errors import (
    AuthError,
    MailboxNotFound,
    MissingBody,
    NotFound,
    ProtectedResourceError,
    ProtocolError,
    SubmissionFailed,
)
from fastmail_mcp.jmap import MAIL, JmapClient, MethodBatch, ResultReference

BASE = "https://api.fastmail.com"
API_URL = BASE + "/jmap/api/"

SESSION = {
    "apiUrl": API_URL,
    "downloadUrl": BASE + "/jmap/download/{accountId}/{blobId}/{name}?type={type}",
    "primaryAccounts": {MAIL: "u123"},
    "accounts": {"u999": {}, "u123": {}},
}

MAILBOXES = [
    {"id": "mb-inbox", "name": "Inbox", "role": "inbox"},
    {"id": "mb-drafts", "name": "Drafts", "role": "drafts"},
    {"id": "mb-sent", "name": "Sent", "role": "sent"},
    {"id": "mb-trash", "name": "Trash", "role": "trash"},
    {"id": "mb-projects", "name": "Projects", "role": None},
]

IDENTITIES = [
    {"id": "id-alias", "email": "alias@example.com", "name": "Alias", "mayDelete": True},
    {"id": "id-main", "email": "me@example.com", "name": "Me", "mayDelete": False},
]

Handler = Callable[[str, Dict[str, Any]], Dict[str, Any]]


class FakeJmapServer:
    """Answers JMAP session and API requests from per-method handlers."""

    def __init__(self, session: Optional[Dict[str, Any]] = None, session_status: int = 200) -> None:
        self.session = session if session is not None else SESSION
        self.session_status = session_status
        self.session_requests = 0
        self.requests: List[Dict[str, Any]] = []
        self.handlers: Dict[str, Handler] = {
            "Mailbox/get": lambda call_id, args: {"list": MAILBOXES},
            "Identity/get": lambda call_id, args: {"list": IDENTITIES},
        }

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/jmap/session":
            self.session_requests += 1
            return httpx.Response(self.session_status, json=self.session)
        body = json.loads(request.content)
        self.requests.append(body)
        responses = []
        for name, args, call_id in body["methodCalls"]:
            handler = self.handlers.get(name)
            if handler is None:
                responses.append(["error", {"type": "unknownMethod"}, call_id])
            else:
                responses.append([name, handler(call_id, args), call_id])
        return httpx.Response(200, json={"methodResponses": responses})

    def client(self) -> JmapClient:
        return JmapClient(BASE, api_token="token", transport=httpx.MockTransport(self.handle))

    def calls(self, name: str) -> List[Dict[str, Any]]:
        return [args for body in self.requests for method, args, _ in body["methodCalls"] if method == name]


def _sent_ok(server: FakeJmapServer) -> None:
    server.handlers["Email/set"] = lambda call_id, args: {"created": {"draft": {"id": "M1"}}}
    server.handlers["EmailSubmission/set"] = lambda call_id, args: {"created": {"submission": {"id": "S1"}}}


# ---------------------------------------------------------------------------
#  Session
# ---------------------------------------------------------------------------

def test_session_uses_primary_mail_account_and_is_cached() -> None:
    server = FakeJmapServer()
    client = server.client()
    asyncio.run(client.get_session())
    asyncio.run(client.get_session())
    assert client.account_id == "u123"
    assert server.session_requests == 1


def test_session_falls_back_to_first_account() -> None:
    server = FakeJmapServer(session={"apiUrl": API_URL, "accounts": {"u999": {}}})
    client = server.client()
    asyncio.run(client.get_session())
    assert client.account_id == "u999"


def test_session_rejected_credentials() -> None:
    server = FakeJmapServer(session_status=401)
    with pytest.raises(AuthError):
        asyncio.run(server.client().get_session())


def test_session_server_error() -> None:
    server = FakeJmapServer(session_status=503)
    with pytest.raises(ProtocolError) as info:
        asyncio.run(server.client().get_session())
    assert info.value.status == 503


def test_client_requires_credentials() -> None:
    with pytest.raises(AuthError):
        JmapClient(BASE)


def test_client_sends_basic_auth_for_app_passwords() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json=SESSION)

    client = JmapClient(BASE, username="me@example.com", password="app-pw", transport=httpx.MockTransport(handler))
    asyncio.run(client.get_session())
    assert seen[0].startswith("Basic ")


def test_method_batch_writes_back_references() -> None:
    batch = MethodBatch(["urn:ietf:params:jmap:core"])
    batch.add("Email/query", {"accountId": "a"}, "q")
    batch.add("Email/get", {"accountId": "a", "ids": None}, "g")
    batch.refer("g", "ids", ResultReference("q", "Email/query", "/ids"))
    request = batch.to_request()
    get_args = request["methodCalls"][1][1]
    assert "ids" not in get_args
    assert get_args["#ids"] == {"resultOf": "q", "name": "Email/query", "path": "/ids"}


# ---------------------------------------------------------------------------
#  Sending
# ---------------------------------------------------------------------------

def test_send_email_builds_one_chained_request() -> None:
    server = FakeJmapServer()
    _sent_ok(server)
    result = asyncio.run(mail.send_email(
        server.client(), ["a@example.com"], "Hello",
        cc=["b@example.com"], bcc=["A@example.com", "c@example.com"], text_body="Hi",
    ))
    assert result == {"submissionId": "S1", "emailId": "M1"}

    body = server.requests[-1]
    assert [call[0] for call in body["methodCalls"]] == ["Email/set", "EmailSubmission/set"]
    assert "urn:ietf:params:jmap:submission" in body["using"]

    draft = body["methodCalls"][0][1]["create"]["draft"]
    assert draft["mailboxIds"] == {"mb-drafts": True}
    assert draft["keywords"] == {"$draft": True}
    assert draft["from"] == [{"email": "me@example.com", "name": "Me"}]
    assert draft["bodyValues"] == {"text": {"value": "Hi"}}
    assert "htmlBody" not in draft

    submission_args = body["methodCalls"][1][1]
    submission = submission_args["create"]["submission"]
    assert submission["emailId"] == "#draft"
    assert submission["identityId"] == "id-main"
    assert submission["envelope"]["mailFrom"] == {"email": "me@example.com"}
    assert submission["envelope"]["rcptTo"] == [
        {"email": "a@example.com"}, {"email": "b@example.com"}, {"email": "c@example.com"},
    ]
    assert submission_args["onSuccessUpdateEmail"] == {
        "#submission": {"mailboxIds": {"mb-sent": True}, "keywords": {"$seen": True}},
    }


def test_send_email_uses_matching_identity() -> None:
    server = FakeJmapServer()
    _sent_ok(server)
    asyncio.run(mail.send_email(
        server.client(), ["a@example.com"], "Hi", from_address="ALIAS@example.com", html_body="<p>Hi</p>"
    ))
    submission = server.calls("EmailSubmission/set")[0]["create"]["submission"]
    assert submission["identityId"] == "id-alias"
    draft = server.calls("Email/set")[0]["create"]["draft"]
    assert draft["htmlBody"] == [{"partId": "html", "type": "text/html"}]


def test_send_email_unknown_from_falls_back_to_primary() -> None:
    server = FakeJmapServer()
    _sent_ok(server)
    asyncio.run(mail.send_email(server.client(), ["a@example.com"], "Hi", from_address="x@y.z", text_body="x"))
    assert server.calls("EmailSubmission/set")[0]["create"]["submission"]["identityId"] == "id-main"


def test_send_email_finds_mailboxes_by_name() -> None:
    server = FakeJmapServer()
    _sent_ok(server)
    server.handlers["Mailbox/get"] = lambda call_id, args: {"list": [
        {"id": "d", "name": "My Drafts", "role": None},
        {"id": "s", "name": "Sent Items", "role": None},
    ]}
    asyncio.run(mail.send_email(server.client(), ["a@example.com"], "Hi", text_body="x"))
    draft = server.calls("Email/set")[0]["create"]["draft"]
    assert draft["mailboxIds"] == {"d": True}
    update = server.calls("EmailSubmission/set")[0]["onSuccessUpdateEmail"]["#submission"]
    assert update["mailboxIds"] == {"s": True}


def test_send_email_requires_a_body() -> None:
    server = FakeJmapServer()
    with pytest.raises(MissingBody):
        asyncio.run(mail.send_email(server.client(), ["a@example.com"], "Hi"))
    assert server.session_requests == 0


def test_send_email_refuses_both_bodies() -> None:
    server = FakeJmapServer()
    with pytest.raises(MissingBody, match="exactly one"):
        asyncio.run(mail.send_email(
            server.client(), ["a@example.com"], "Hi", text_body="t", html_body="<p>h</p>"
        ))
    assert server.session_requests == 0
    assert server.requests == []


def test_send_email_without_drafts_mailbox() -> None:
    server = FakeJmapServer()
    server.handlers["Mailbox/get"] = lambda call_id, args: {"list": [{"id": "s", "name": "Sent", "role": "sent"}]}
    with pytest.raises(MailboxNotFound, match="Drafts"):
        asyncio.run(mail.send_email(server.client(), ["a@example.com"], "Hi", text_body="x"))


def test_send_email_reports_submission_failure() -> None:
    server = FakeJmapServer()
    server.handlers["Email/set"] = lambda call_id, args: {"created": {"draft": {"id": "M1"}}}
    server.handlers["EmailSubmission/set"] = lambda call_id, args: {
        "notCreated": {"submission": {"type": "forbiddenFrom", "description": "not allowed"}},
    }
    with pytest.raises(SubmissionFailed, match="forbiddenFrom: not allowed"):
        asyncio.run(mail.send_email(server.client(), ["a@example.com"], "Hi", text_body="x"))


def test_send_email_reports_method_error() -> None:
    server = FakeJmapServer()
    server.handlers["Email/set"] = lambda call_id, args: {"created": {"draft": {"id": "M1"}}}
    with pytest.raises(ProtocolError, match="unknownMethod"):
        asyncio.run(mail.send_email(server.client(), ["a@example.com"], "Hi", text_body="x"))


def test_select_identity_without_identities() -> None:
    with pytest.raises(Exception, match="No sending identities"):
        mail.select_identity([])


def test_select_identity_first_when_all_deletable() -> None:
    identities = [{"id": "1", "email": "a@x", "mayDelete": True}, {"id": "2", "email": "b@x", "mayDelete": True}]
    assert mail.select_identity(identities)["id"] == "1"


# ---------------------------------------------------------------------------
#  Reading
# ---------------------------------------------------------------------------

def test_list_emails_chains_query_into_get() -> None:
    server = FakeJmapServer()
    server.handlers["Email/query"] = lambda call_id, args: {"ids": ["e1"]}
    server.handlers["Email/get"] = lambda call_id, args: {"list": [{"id": "e1", "subject": "Hi"}]}
    emails = asyncio.run(mail.list_emails(server.client(), mailbox_id="mb-inbox", limit=5))
    assert emails == [{"id": "e1", "subject": "Hi"}]

    (query_name, query, query_id), (get_name, get, _) = server.requests[-1]["methodCalls"]
    assert query["filter"] == {"inMailbox": "mb-inbox"}
    assert query["limit"] == 5
    assert query["sort"] == [{"property": "receivedAt", "isAscending": False}]
    assert get["#ids"] == {"resultOf": query_id, "name": "Email/query", "path": "/ids"}


def test_search_emails_uses_text_filter() -> None:
    server = FakeJmapServer()
    server.handlers["Email/query"] = lambda call_id, args: {"ids": []}
    server.handlers["Email/get"] = lambda call_id, args: {"list": []}
    assert asyncio.run(mail.search_emails(server.client(), "invoice")) == []
    assert server.calls("Email/query")[0]["filter"] == {"text": "invoice"}


def test_get_email_not_found() -> None:
    server = FakeJmapServer()
    server.handlers["Email/get"] = lambda call_id, args: {"list": [], "notFound": args["ids"]}
    with pytest.raises(NotFound):
        asyncio.run(mail.get_email(server.client(), "missing"))


def test_attachment_download_url() -> None:
    server = FakeJmapServer()
    server.handlers["Email/get"] = lambda call_id, args: {"list": [{
        "id": "e1",
        "attachments": [
            {"partId": "2", "blobId": "B/1", "type": "application/pdf", "name": "report q1.pdf"},
            {"partId": "3", "blobId": "B2"},
        ],
    }]}
    client = server.client()
    url = asyncio.run(mail.attachment_download_url(client, "e1", "2"))
    assert url == BASE + "/jmap/download/u123/B%2F1/report%20q1.pdf?type=application%2Fpdf"
    url = asyncio.run(mail.attachment_download_url(client, "e1", "B2"))
    assert "/B2/attachment?type=application%2Foctet-stream" in url
    with pytest.raises(NotFound):
        asyncio.run(mail.attachment_download_url(client, "e1", "nope"))


# ---------------------------------------------------------------------------
#  Updating and mailboxes
# ---------------------------------------------------------------------------

def test_mark_email_read_and_unread_patch_seen_keyword() -> None:
    server = FakeJmapServer()
    server.handlers["Email/set"] = lambda call_id, args: {"updated": {"e1": None}}
    client = server.client()
    asyncio.run(mail.mark_email_read(client, "e1"))
    asyncio.run(mail.mark_email_read(client, "e1", read=False))
    first, second = server.calls("Email/set")
    assert first["update"] == {"e1": {"keywords/$seen": True}}
    assert second["update"] == {"e1": {"keywords/$seen": None}}


def test_delete_email_moves_to_trash() -> None:
    server = FakeJmapServer()
    server.handlers["Email/set"] = lambda call_id, args: {"updated": {"e1": None}}
    assert asyncio.run(mail.delete_email(server.client(), "e1")) == {"status": "OK"}
    assert server.calls("Email/set")[0]["update"] == {"e1": {"mailboxIds": {"mb-trash": True}}}


def test_move_email_failure() -> None:
    server = FakeJmapServer()
    server.handlers["Email/set"] = lambda call_id, args: {"notUpdated": {"e1": {"type": "notFound"}}}
    with pytest.raises(Exception, match="notFound"):
        asyncio.run(mail.move_email(server.client(), "e1", "mb-projects"))


def test_create_mailbox() -> None:
    server = FakeJmapServer()
    server.handlers["Mailbox/set"] = lambda call_id, args: {"created": {"mbox": {"id": "new"}}}
    result = asyncio.run(mail.create_mailbox(server.client(), "Receipts", parent_id="mb-projects"))
    assert result == {"name": "Receipts", "id": "new"}
    assert server.calls("Mailbox/set")[0]["create"] == {"mbox": {"name": "Receipts", "parentId": "mb-projects"}}


@pytest.mark.parametrize(
    "mailbox",
    [
        {"id": "x", "name": "Whatever", "role": "inbox"},
        {"id": "x", "name": "Trash", "role": None},
        {"id": "x", "name": " ARCHIVE ", "role": ""},
    ],
)
def test_protected_mailboxes_cannot_be_deleted(mailbox: Dict[str, Any]) -> None:
    with pytest.raises(ProtectedResourceError):
        mail.assert_mailbox_can_be_deleted([mailbox], "x")


def test_delete_user_mailbox() -> None:
    server = FakeJmapServer()
    server.handlers["Mailbox/set"] = lambda call_id, args: {"destroyed": args["destroy"]}
    assert asyncio.run(mail.delete_mailbox(server.client(), "mb-projects")) == {"status": "OK"}
    assert server.calls("Mailbox/set")[0]["destroy"] == ["mb-projects"]


def test_delete_system_mailbox_is_refused_before_destroy() -> None:
    server = FakeJmapServer()
    with pytest.raises(ProtectedResourceError):
        asyncio.run(mail.delete_mailbox(server.client(), "mb-inbox"))
    assert server.calls("Mailbox/set") == []


def test_delete_unknown_mailbox() -> None:
    with pytest.raises(NotFound):
        mail.assert_mailbox_can_be_deleted(MAILBOXES, "nope")
