"""Gmail API calls behind the MCP tools.

Every function takes an authorised Gmail ``Resource`` (as returned by
``googleapiclient.discovery.build("gmail", "v1", ...)``) and returns
JSON-friendly dicts. Message bodies go through gmail_codec.
"""
import logging
import os

from gmail_codec import (
    ComposeRequest,
    Part,
    b64url_decode,
    decode_body,
    derive_reply_headers,
    encode_message,
    get_header,
    list_attachments,
)

logger = logging.getLogger(__name__)

USER_ID = "me"
SUMMARY_HEADERS = ["Subject", "From", "Date"]
REPLY_HEADERS = ["Subject", "From", "Message-ID", "References"]


def list_messages(service, query: str | None = None, max_results: int = 20,
                  page_token: str | None = None, label_ids: list | None = None) -> dict:
    """Search messages and summarize each hit.

    Args:
        service: Gmail API resource
        query: Gmail search query (e.g. "from:alice is:unread")
        max_results: page size
        page_token: token from a previous call's nextPageToken
        label_ids: only messages carrying all of these labels

    Return:
        { 'messages': [...], 'nextPageToken': str | None, 'resultSizeEstimate': int }
    """
    res = service.users().messages().list(
        userId=USER_ID,
        q=query,
        maxResults=max_results,
        pageToken=page_token,
        labelIds=label_ids,
    ).execute()

    summaries = []
    for msg in res.get("messages", []):
        detail = service.users().messages().get(
            userId=USER_ID,
            id=msg["id"],
            format="metadata",
            metadataHeaders=SUMMARY_HEADERS,
        ).execute()
        root = Part.from_api(detail.get("payload"))
        headers = root.headers if root else ()
        summaries.append({
            "id": msg["id"],
            "threadId": msg.get("threadId"),
            "snippet": detail.get("snippet"),
            "subject": get_header(headers, "Subject"),
            "from": get_header(headers, "From"),
            "date": get_header(headers, "Date"),
            "labelIds": detail.get("labelIds"),
        })

    return {
        "messages": summaries,
        "nextPageToken": res.get("nextPageToken"),
        "resultSizeEstimate": res.get("resultSizeEstimate"),
    }


def get_message(service, message_id: str) -> dict:
    """Fetch one message with its decoded body and attachment metadata."""
    res = service.users().messages().get(userId=USER_ID, id=message_id, format="full").execute()

    root = Part.from_api(res.get("payload"))
    headers = root.headers if root else ()
    return {
        "id": res.get("id"),
        "threadId": res.get("threadId"),
        "subject": get_header(headers, "Subject"),
        "from": get_header(headers, "From"),
        "to": get_header(headers, "To"),
        "cc": get_header(headers, "Cc"),
        "date": get_header(headers, "Date"),
        "body": decode_body(root),
        "labelIds": res.get("labelIds"),
        "attachments": [a.to_dict() for a in list_attachments(root)],
    }


def get_attachment(service, message_id: str, attachment_id: str, filename: str,
                   save_path: str | None = None, download_dir: str = "/tmp") -> dict:
    """Download an attachment to disk.

    Args:
        service: Gmail API resource
        message_id: message holding the attachment
        attachment_id: reference from get_message()'s attachments
        filename: name used when save_path is not given
        save_path: full destination path, defaults to download_dir/filename
        download_dir: directory for the default destination

    Return:
        { 'filePath': str, 'filename': str, 'size': int }
    """
    output_path = save_path or os.path.join(download_dir, os.path.basename(filename))

    res = service.users().messages().attachments().get(
        userId=USER_ID,
        messageId=message_id,
        id=attachment_id,
    ).execute()

    data = res.get("data")
    if not data:
        raise ValueError("Attachment data is empty")

    content = b64url_decode(data)
    with open(output_path, "wb") as f:
        f.write(content)
    logger.info("Saved attachment %s (%d bytes) to %s", filename, len(content), output_path)

    return {"filePath": output_path, "filename": filename, "size": len(content)}


def list_labels(service) -> list:
    res = service.users().labels().list(userId=USER_ID).execute()
    return [
        {"id": label.get("id"), "name": label.get("name"), "type": label.get("type")}
        for label in res.get("labels", [])
    ]


def get_profile(service) -> dict:
    res = service.users().getProfile(userId=USER_ID).execute()
    return {
        "emailAddress": res.get("emailAddress"),
        "messagesTotal": res.get("messagesTotal"),
        "threadsTotal": res.get("threadsTotal"),
    }


def send_message(service, request: ComposeRequest, thread_id: str | None = None) -> dict:
    body = {"raw": encode_message(request)}
    if thread_id:
        body["threadId"] = thread_id

    res = service.users().messages().send(userId=USER_ID, body=body).execute()
    logger.info("Sent message %s to %s", res.get("id"), request.to)
    return {"id": res.get("id"), "threadId": res.get("threadId"), "labelIds": res.get("labelIds")}


def create_draft(service, request: ComposeRequest) -> dict:
    raw = encode_message(request)
    res = service.users().drafts().create(userId=USER_ID, body={"message": {"raw": raw}}).execute()
    return {"id": res.get("id"), "messageId": (res.get("message") or {}).get("id")}


def reply_to_message(service, message_id: str, body: str, attachments: list | None = None) -> dict:
    """Reply to the sender of message_id inside the same thread.

    In-Reply-To, References and the "Re:" subject come from the original
    message's headers.
    """
    original = service.users().messages().get(
        userId=USER_ID,
        id=message_id,
        format="metadata",
        metadataHeaders=REPLY_HEADERS,
    ).execute()

    root = Part.from_api(original.get("payload"))
    reply = derive_reply_headers(root.headers if root else ())

    request = ComposeRequest(
        to=reply.to,
        subject=reply.thread_subject,
        body=body,
        attachments=tuple(attachments or ()),
        in_reply_to=reply.in_reply_to,
        references=reply.references,
        thread_subject=reply.thread_subject,
    )
    return send_message(service, request, thread_id=original.get("threadId"))
