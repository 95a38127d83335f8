#!/usr/bin/env python3
import asyncio
import logging
import os
import sys
from typing import Annotated

from dotenv import load_dotenv
from fastmcp import FastMCP
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from pydantic import Field

import gmail_service
from gmail_codec import ComposeRequest

load_dotenv()

logger = logging.getLogger(__name__)

GMAIL_CLIENT_ID = os.getenv("GMAIL_CLIENT_ID")
GMAIL_CLIENT_SECRET = os.getenv("GMAIL_CLIENT_SECRET")
GMAIL_REFRESH_TOKEN = os.getenv("GMAIL_REFRESH_TOKEN")

missing_env = [name for name, value in {
    "GMAIL_CLIENT_ID": GMAIL_CLIENT_ID,
    "GMAIL_CLIENT_SECRET": GMAIL_CLIENT_SECRET,
    "GMAIL_REFRESH_TOKEN": GMAIL_REFRESH_TOKEN,
}.items() if not value]

if missing_env:
    sys.exit(f"Missing required environment variables: {', '.join(missing_env)}")

GMAIL_DOWNLOAD_DIR = os.getenv("GMAIL_DOWNLOAD_DIR", "/tmp")
GMAIL_LOG_LEVEL = os.getenv("GMAIL_LOG_LEVEL", "INFO")

TOKEN_URL = "https://oauth2.googleapis.com/token"

mcp = FastMCP("gmail")

gmail = None


def connect_gmail():
    """Build a Gmail API client from the refresh token.

    google-auth exchanges the refresh token for an access token on the
    first request and again whenever it expires.
    """
    creds = Credentials(
        token=None,
        refresh_token=GMAIL_REFRESH_TOKEN,
        client_id=GMAIL_CLIENT_ID,
        client_secret=GMAIL_CLIENT_SECRET,
        token_uri=TOKEN_URL,
    )
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def client():
    global gmail
    if gmail is None:
        logger.info("Connecting to the Gmail API")
        gmail = connect_gmail()
    return gmail


@mcp.prompt
def reply_in_thread(message_id: str) -> str:
    """Generates a user message to answer a given message in its conversation"""
    return (f'Read message {message_id} with gmail_get_message, draft a short answer to its sender, '
            'show it to me, then send it with gmail_reply_to_message so it stays in the same thread')


@mcp.prompt
def triage_inbox() -> str:
    """Generates a user message to sort unread mail by urgency"""
    return ('List unread messages in the inbox with gmail_list_messages and query "is:unread in:inbox". '
            'Group them as "needs an answer", "to read" and "can be archived", one line per message '
            'with sender and subject')


@mcp.tool
async def gmail_whoami() -> dict:
    """Returns the address of the authenticated Gmail account.
       Use it to confirm which mailbox the other commands will operate on

    Return a profile like:
        { 'emailAddress': 'me@example.com', 'messagesTotal': 1234, 'threadsTotal': 987 }
    """
    return await asyncio.to_thread(gmail_service.get_profile, client())


@mcp.tool
async def gmail_list_messages(query: str | None = None,
                              max_results: Annotated[int, Field(ge=1, le=100)] = 20,
                              page_token: str | None = None,
                              label_ids: list[str] | None = None) -> dict:
    """List/search Gmail messages.

    Args:
        query: Gmail search query, same syntax as the Gmail search box
        max_results: messages to return, 1 to 100 (default 20)
        page_token: nextPageToken of a previous response, to get the next page
        label_ids: only return messages carrying these labels (e.g. ['INBOX', 'UNREAD'])

        Useful query operators:
            from:alice              sender contains alice
            to:bob                  recipient contains bob
            subject:meeting         subject contains meeting
            is:unread / is:read     unread / read messages
            is:starred              starred messages
            has:attachment          messages with attachments
            filename:pdf            attachment name or type
            in:inbox / in:sent      mailbox location
            label:work              carries the "work" label
            after:2025/01/31        received after the date
            before:2025/02/28       received before the date
            newer_than:7d           received in the last 7 days
            larger:5M               bigger than 5 MB
            "exact phrase"          phrase match
            -term                   exclude term
            OR, { }                 either term

    Return:
        { 'messages': [ { 'id', 'threadId', 'snippet', 'subject', 'from', 'date', 'labelIds' } ],
          'nextPageToken': ..., 'resultSizeEstimate': ... }

    Notes:
        Use the message id with gmail_get_message to read the body
    """
    return await asyncio.to_thread(gmail_service.list_messages, client(), query=query,
                                   max_results=max_results, page_token=page_token,
                                   label_ids=label_ids)


@mcp.tool
async def gmail_get_message(message_id: str) -> dict:
    """Get a full email message by ID

    Args:
        message_id: id from gmail_list_messages

    Return:
        subject, from, to, cc, date, decoded plain text body, labels and
        attachments metadata (filename, mimeType, size, attachmentId)

    Notes:
        HTML-only messages are converted to plain text
    """
    return await asyncio.to_thread(gmail_service.get_message, client(), message_id)


@mcp.tool
async def gmail_download_attachment(message_id: str, attachment_id: str, filename: str,
                                    save_path: str | None = None) -> dict:
    """Download an email attachment to disk

    Args:
        message_id: message containing the attachment
        attachment_id: attachmentId from gmail_get_message
        filename: file name for the saved attachment
        save_path: absolute path to save the file (defaults to the download directory)

    Return:
        { 'filePath': ..., 'filename': ..., 'size': ... }
    """
    return await asyncio.to_thread(gmail_service.get_attachment, client(), message_id, attachment_id,
                                   filename, save_path=save_path, download_dir=GMAIL_DOWNLOAD_DIR)


@mcp.tool
async def gmail_list_labels() -> list:
    """List all Gmail labels (INBOX, SENT, custom labels)

    Return a list like:
        [ { 'id': 'INBOX', 'name': 'INBOX', 'type': 'system' },
          { 'id': 'Label_12', 'name': 'work', 'type': 'user' } ]
    """
    return await asyncio.to_thread(gmail_service.list_labels, client())


@mcp.tool
async def gmail_send_message(to: str, subject: str, body: str,
                             cc: str | None = None, bcc: str | None = None,
                             attachments: list[str] | None = None) -> dict:
    """Send an email

    Args:
        to: recipient address(es), comma-separated for multiple
        subject: subject line
        body: plain text body
        cc: CC recipients, comma-separated
        bcc: BCC recipients, comma-separated
        attachments: local file paths to attach

    Return:
        { 'id': ..., 'threadId': ..., 'labelIds': [...] }
    """
    request = ComposeRequest(to=to, subject=subject, body=body, cc=cc, bcc=bcc,
                             attachments=tuple(attachments or ()))
    return await asyncio.to_thread(gmail_service.send_message, client(), request)


@mcp.tool
async def gmail_create_draft(to: str, subject: str, body: str,
                             cc: str | None = None, bcc: str | None = None,
                             attachments: list[str] | None = None) -> dict:
    """Create a draft email, to be reviewed and sent from Gmail

    Args:
        to: recipient address(es), comma-separated for multiple
        subject: subject line
        body: plain text body
        cc: CC recipients, comma-separated
        bcc: BCC recipients, comma-separated
        attachments: local file paths to attach

    Return:
        { 'id': draft id, 'messageId': ... }
    """
    request = ComposeRequest(to=to, subject=subject, body=body, cc=cc, bcc=bcc,
                             attachments=tuple(attachments or ()))
    return await asyncio.to_thread(gmail_service.create_draft, client(), request)


@mcp.tool
async def gmail_reply_to_message(message_id: str, body: str,
                                 attachments: list[str] | None = None) -> dict:
    """Reply to the sender of an existing message

    Args:
        message_id: message to reply to (from gmail_list_messages or gmail_get_message)
        body: plain text reply
        attachments: local file paths to attach

    Notes:
        The reply is sent in the same thread, with In-Reply-To and References
        set from the original message and the subject prefixed with "Re: "
    """
    return await asyncio.to_thread(gmail_service.reply_to_message, client(), message_id, body,
                                   attachments=attachments)


def configure_logging():
    """Send log records to stderr; stdout carries the stdio transport."""
    logging.basicConfig(
        level=GMAIL_LOG_LEVEL.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    configure_logging()
    mcp.run(transport='stdio')
