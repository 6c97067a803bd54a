"""
Mail operations over JMAP.

``send_email`` is the only multi-step operation: it resolves a sending
identity and the Drafts/Sent mailboxes, then issues a single request that
creates the draft, submits it and (only if the submission succeeds) files
the message in Sent.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .errors import (
    FastmailError,
    InvalidFormat,
    MailboxNotFound,
    MissingBody,
    NotFound,
    ProtectedResourceError,
    SubmissionFailed,
)
from .jmap import CORE, MAIL, SUBMISSION, JmapClient, MethodBatch, ResultReference, creation_ref, method_result, set_error

logger = logging.getLogger(__name__)

PROTECTED_MAILBOXES = frozenset({"inbox", "spam", "junk", "trash", "sent", "drafts", "archive"})

SUMMARY_PROPERTIES = [
    "id", "subject", "from", "to", "receivedAt", "preview", "hasAttachment", "keywords", "threadId",
]
DETAIL_PROPERTIES = [
    "id", "subject", "from", "to", "cc", "bcc", "receivedAt", "preview", "keywords",
    "textBody", "htmlBody", "attachments", "bodyValues",
]


# ---------------------------------------------------------------------------
#  Identity and mailbox resolution
# ---------------------------------------------------------------------------

def select_identity(identities: List[Dict[str, Any]], from_address: Optional[str] = None) -> Dict[str, Any]:
    """
    Pick the sending identity: the one matching ``from_address``
    (case-insensitively), else the account's primary (non-deletable)
    identity, else the first.
    """
    if not identities:
        raise FastmailError("No sending identities found")
    if from_address:
        wanted = from_address.lower()
        for identity in identities:
            if (identity.get("email") or "").lower() == wanted:
                return identity
        logger.warning("from address %s is not a known identity, using the primary identity", from_address)
    for identity in identities:
        if identity.get("mayDelete") is False:
            return identity
    return identities[0]


def find_mailbox(mailboxes: Iterable[Dict[str, Any]], role: str) -> Optional[Dict[str, Any]]:
    """Find a mailbox by exact role, falling back to a name containing the role."""
    mailboxes = list(mailboxes)
    for mailbox in mailboxes:
        if mailbox.get("role") == role:
            return mailbox
    needle = role.rstrip("s").lower()
    for mailbox in mailboxes:
        if needle in (mailbox.get("name") or "").lower():
            return mailbox
    return None


def assert_mailbox_can_be_deleted(mailboxes: Iterable[Dict[str, Any]], mailbox_id: str) -> Dict[str, Any]:
    mailbox = next((m for m in mailboxes if m.get("id") == mailbox_id), None)
    if mailbox is None:
        raise NotFound(f"Mailbox not found: {mailbox_id}")

    role = (mailbox.get("role") or "").strip().lower()
    if role:
        if role in PROTECTED_MAILBOXES:
            raise ProtectedResourceError(f'Refusing to delete protected system mailbox with role "{mailbox["role"]}"')
        return mailbox
    name = (mailbox.get("name") or "").strip().lower()
    if name in PROTECTED_MAILBOXES:
        raise ProtectedResourceError(f'Refusing to delete protected mailbox "{mailbox["name"]}"')
    return mailbox


# ---------------------------------------------------------------------------
#  Mailboxes
# ---------------------------------------------------------------------------

async def list_mailboxes(jmap: JmapClient) -> List[Dict[str, Any]]:
    result = await jmap.call_one("Mailbox/get", {})
    return result.get("list", [])


async def create_mailbox(
    jmap: JmapClient,
    name: str,
    parent_id: Optional[str] = None,
    role: Optional[str] = None,
    sort_order: Optional[int] = None,
    is_subscribed: Optional[bool] = None,
) -> Dict[str, Any]:
    create: Dict[str, Any] = {"name": name}
    if parent_id is not None:
        create["parentId"] = parent_id
    if role is not None:
        create["role"] = role
    if sort_order is not None:
        create["sortOrder"] = sort_order
    if is_subscribed is not None:
        create["isSubscribed"] = is_subscribed

    result = await jmap.call_one("Mailbox/set", {"create": {"mbox": create}})
    failed = (result.get("notCreated") or {}).get("mbox")
    if failed:
        raise FastmailError(f"Failed to create mailbox: {set_error(failed)}")
    created = (result.get("created") or {}).get("mbox")
    if not created or not created.get("id"):
        raise FastmailError("Mailbox creation did not return an id")
    return {"name": name, **created}


async def update_mailbox(jmap: JmapClient, mailbox_id: str, update: Dict[str, Any]) -> Dict[str, Any]:
    if not update:
        raise InvalidFormat("At least one mailbox field must be provided")
    result = await jmap.call_one("Mailbox/set", {"update": {mailbox_id: update}})
    failed = (result.get("notUpdated") or {}).get(mailbox_id)
    if failed:
        raise FastmailError(f"Failed to update mailbox {mailbox_id}: {set_error(failed)}")
    return {"id": mailbox_id, **((result.get("updated") or {}).get(mailbox_id) or {})}


async def delete_mailbox(jmap: JmapClient, mailbox_id: str) -> Dict[str, Any]:
    assert_mailbox_can_be_deleted(await list_mailboxes(jmap), mailbox_id)
    result = await jmap.call_one("Mailbox/set", {"destroy": [mailbox_id]})
    failed = (result.get("notDestroyed") or {}).get(mailbox_id)
    if failed:
        raise FastmailError(f"Failed to delete mailbox {mailbox_id}: {set_error(failed)}")
    return {"status": "OK"}


# ---------------------------------------------------------------------------
#  Reading
# ---------------------------------------------------------------------------

async def _query_and_get(jmap: JmapClient, query_filter: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
    await jmap.get_session()
    batch = MethodBatch([CORE, MAIL])
    query_id = batch.add("Email/query", {
        "accountId": jmap.account_id,
        "filter": query_filter,
        "sort": [{"property": "receivedAt", "isAscending": False}],
        "limit": limit,
    }, "q")
    get_id = batch.add("Email/get", {"accountId": jmap.account_id, "properties": SUMMARY_PROPERTIES}, "g")
    batch.refer(get_id, "ids", ResultReference(result_of=query_id, name="Email/query", path="/ids"))

    response = await jmap.call(batch)
    method_result(response, query_id, "Email/query")
    return method_result(response, get_id, "Email/get").get("list", [])


async def list_emails(jmap: JmapClient, mailbox_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    """Newest first; every mailbox when ``mailbox_id`` is omitted."""
    return await _query_and_get(jmap, {"inMailbox": mailbox_id} if mailbox_id else {}, limit)


async def search_emails(jmap: JmapClient, query: str, limit: int = 20) -> List[Dict[str, Any]]:
    return await _query_and_get(jmap, {"text": query}, limit)


async def get_email(jmap: JmapClient, email_id: str) -> Dict[str, Any]:
    result = await jmap.call_one("Email/get", {
        "ids": [email_id],
        "properties": DETAIL_PROPERTIES,
        "bodyProperties": ["partId", "blobId", "type", "size", "name"],
        "fetchTextBodyValues": True,
        "fetchHTMLBodyValues": True,
    })
    emails = result.get("list") or []
    if not emails:
        raise NotFound(f"Email not found: {email_id}")
    return emails[0]


async def get_email_attachments(jmap: JmapClient, email_id: str) -> List[Dict[str, Any]]:
    return (await get_email(jmap, email_id)).get("attachments") or []


async def attachment_download_url(jmap: JmapClient, email_id: str, attachment_id: str) -> str:
    """
    Build the download URL for an attachment, matched by ``partId`` or
    ``blobId``, or by its position when ``attachment_id`` is an index.
    """
    attachments = await get_email_attachments(jmap, email_id)
    attachment = next(
        (a for a in attachments if attachment_id in (a.get("partId"), a.get("blobId"))),
        None,
    )
    if attachment is None and attachment_id.isdigit() and int(attachment_id) < len(attachments):
        attachment = attachments[int(attachment_id)]
    if attachment is None:
        raise NotFound(f"Attachment not found: {attachment_id}")
    return await jmap.download_url(
        attachment["blobId"],
        attachment.get("type") or "application/octet-stream",
        attachment.get("name") or "attachment",
    )


# ---------------------------------------------------------------------------
#  Updating
# ---------------------------------------------------------------------------

async def _update_email(jmap: JmapClient, email_id: str, patch: Dict[str, Any], what: str) -> None:
    result = await jmap.call_one("Email/set", {"update": {email_id: patch}})
    failed = (result.get("notUpdated") or {}).get(email_id)
    if failed:
        raise FastmailError(f"Failed to {what} email {email_id}: {set_error(failed)}")


async def mark_email_read(jmap: JmapClient, email_id: str, read: bool = True) -> Dict[str, Any]:
    await _update_email(jmap, email_id, {"keywords/$seen": True if read else None}, "update")
    return {"status": "OK", "read": read}


async def move_email(jmap: JmapClient, email_id: str, target_mailbox_id: str) -> Dict[str, Any]:
    await _update_email(jmap, email_id, {"mailboxIds": {target_mailbox_id: True}}, "move")
    return {"status": "OK"}


async def delete_email(jmap: JmapClient, email_id: str) -> Dict[str, Any]:
    """Move an email to Trash."""
    trash = find_mailbox(await list_mailboxes(jmap), "trash")
    if trash is None:
        raise MailboxNotFound("Trash mailbox not found")
    return await move_email(jmap, email_id, trash["id"])


# ---------------------------------------------------------------------------
#  Sending
# ---------------------------------------------------------------------------

async def get_identities(jmap: JmapClient) -> List[Dict[str, Any]]:
    result = await jmap.call_one("Identity/get", {}, using=(CORE, SUBMISSION))
    return result.get("list", [])


def _addresses(emails: Optional[Iterable[str]]) -> List[Dict[str, str]]:
    return [{"email": address} for address in emails or []]


def build_send_batch(
    account_id: str,
    identity: Dict[str, Any],
    drafts_id: str,
    sent_id: str,
    to: List[str],
    subject: str,
    cc: Optional[List[str]] = None,
    bcc: Optional[List[str]] = None,
    text_body: Optional[str] = None,
    html_body: Optional[str] = None,
) -> MethodBatch:
    """
    Draft creation and submission in one request.  The submission refers
    to the draft through its creation id, and the move to Sent is keyed by
    the submission's creation id so it only happens once submission
    succeeds.
    """
    sender: Dict[str, Any] = {"email": identity["email"]}
    if identity.get("name"):
        sender["name"] = identity["name"]

    email: Dict[str, Any] = {
        "mailboxIds": {drafts_id: True},
        "keywords": {"$draft": True},
        "from": [sender],
        "to": _addresses(to),
        "cc": _addresses(cc),
        "bcc": _addresses(bcc),
        "subject": subject,
        "bodyValues": {},
    }
    if text_body:
        email["textBody"] = [{"partId": "text", "type": "text/plain"}]
        email["bodyValues"]["text"] = {"value": text_body}
    if html_body:
        email["htmlBody"] = [{"partId": "html", "type": "text/html"}]
        email["bodyValues"]["html"] = {"value": html_body}

    recipients: List[str] = []
    for address in [*to, *(cc or []), *(bcc or [])]:
        if address.lower() not in (r.lower() for r in recipients):
            recipients.append(address)

    batch = MethodBatch([CORE, MAIL, SUBMISSION])
    batch.add("Email/set", {"accountId": account_id, "create": {"draft": email}}, "createEmail")
    batch.add("EmailSubmission/set", {
        "accountId": account_id,
        "create": {
            "submission": {
                "emailId": creation_ref("draft"),
                "identityId": identity["id"],
                "envelope": {
                    "mailFrom": {"email": identity["email"]},
                    "rcptTo": _addresses(recipients),
                },
            },
        },
        "onSuccessUpdateEmail": {
            creation_ref("submission"): {
                "mailboxIds": {sent_id: True},
                "keywords": {"$seen": True},
            },
        },
    }, "submitEmail")
    return batch


async def send_email(
    jmap: JmapClient,
    to: List[str],
    subject: str,
    cc: Optional[List[str]] = None,
    bcc: Optional[List[str]] = None,
    from_address: Optional[str] = None,
    text_body: Optional[str] = None,
    html_body: Optional[str] = None,
) -> Dict[str, Any]:
    if not text_body and not html_body:
        raise MissingBody("Either textBody or htmlBody is required")
    if text_body and html_body:
        raise MissingBody("Give exactly one of textBody or htmlBody, not both")

    await jmap.get_session()
    identity = select_identity(await get_identities(jmap), from_address)

    mailboxes = await list_mailboxes(jmap)
    drafts = find_mailbox(mailboxes, "drafts")
    if drafts is None:
        raise MailboxNotFound("Drafts mailbox not found")
    sent = find_mailbox(mailboxes, "sent")
    if sent is None:
        raise MailboxNotFound("Sent mailbox not found")

    batch = build_send_batch(
        jmap.account_id, identity, drafts["id"], sent["id"], to, subject,
        cc=cc, bcc=bcc, text_body=text_body, html_body=html_body,
    )
    response = await jmap.call(batch)

    created = method_result(response, "createEmail", "Email/set")
    not_created = (created.get("notCreated") or {}).get("draft")
    if not_created:
        raise SubmissionFailed(f"Email submission failed: draft not created ({set_error(not_created)})")
    submitted = method_result(response, "submitEmail", "EmailSubmission/set")
    submission_id = ((submitted.get("created") or {}).get("submission") or {}).get("id")
    if not submission_id:
        reason = (submitted.get("notCreated") or {}).get("submission")
        detail = f" ({set_error(reason)})" if reason else ""
        raise SubmissionFailed(f"Email submission failed{detail}")

    email_id = ((created.get("created") or {}).get("draft") or {}).get("id")
    logger.info("sent email submission %s", submission_id)
    return {"submissionId": submission_id, "emailId": email_id}
