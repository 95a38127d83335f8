"""Tests for the FastMCP server: startup configuration and tool wiring."""

import asyncio
import importlib
import logging
import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

from gmail_codec import b64url_decode, b64url_encode

ROOT = Path(__file__).resolve().parent.parent
REQUIRED_ENV = ("GMAIL_CLIENT_ID", "GMAIL_CLIENT_SECRET", "GMAIL_REFRESH_TOKEN")


@pytest.fixture
def server(monkeypatch):
    for name in REQUIRED_ENV:
        monkeypatch.setenv(name, f"test-{name.lower()}")
    module = importlib.import_module("gmail_mcp_server")
    monkeypatch.setattr(module, "gmail", MagicMock())
    return module


@pytest.fixture
def messages(server):
    return server.gmail.users.return_value.messages.return_value


def call_tool(server, name: str, arguments: dict):
    async def run():
        async with Client(server.mcp) as client:
            return await client.call_tool(name, arguments)

    return asyncio.run(run())


def sent_raw(messages) -> str:
    return b64url_decode(messages.send.call_args.kwargs["body"]["raw"]).decode("utf-8")


class TestStartup:
    def test_exits_when_credentials_missing(self, tmp_path):
        env = dict(os.environ, PYTHONPATH=str(ROOT))
        # empty values are not overridden by a .env file
        env.update({name: "" for name in REQUIRED_ENV})

        proc = subprocess.run(
            [sys.executable, "-c", "import gmail_mcp_server"],
            cwd=tmp_path, env=env, capture_output=True, text=True, timeout=60,
        )

        assert proc.returncode != 0
        assert "Missing required environment variables" in proc.stderr
        for name in REQUIRED_ENV:
            assert name in proc.stderr

    def test_configure_logging_sends_info_to_stderr(self, server, monkeypatch):
        basic_config = MagicMock()
        monkeypatch.setattr(logging, "basicConfig", basic_config)

        server.configure_logging()

        kwargs = basic_config.call_args.kwargs
        assert logging.getLevelName(kwargs["level"]) == logging.INFO
        assert kwargs["stream"] is sys.stderr

    def test_log_level_from_environment(self, server, monkeypatch):
        basic_config = MagicMock()
        monkeypatch.setattr(logging, "basicConfig", basic_config)
        monkeypatch.setattr(server, "GMAIL_LOG_LEVEL", "debug")

        server.configure_logging()

        assert basic_config.call_args.kwargs["level"] == "DEBUG"


class TestListMessagesTool:
    @pytest.mark.parametrize("max_results", [0, 101])
    def test_max_results_out_of_range(self, server, messages, max_results):
        with pytest.raises(ToolError):
            call_tool(server, "gmail_list_messages", {"max_results": max_results})

        messages.list.assert_not_called()

    def test_forwards_arguments(self, server, messages):
        messages.list.return_value.execute.return_value = {"resultSizeEstimate": 0}

        call_tool(server, "gmail_list_messages",
                  {"query": "is:unread", "max_results": 100, "label_ids": ["INBOX"]})

        messages.list.assert_called_once_with(userId="me", q="is:unread", maxResults=100,
                                              pageToken=None, labelIds=["INBOX"])


class TestReadTools:
    def test_whoami(self, server):
        server.gmail.users.return_value.getProfile.return_value.execute.return_value = {
            "emailAddress": "me@b.com", "messagesTotal": 1, "threadsTotal": 1,
        }

        call_tool(server, "gmail_whoami", {})

        server.gmail.users.return_value.getProfile.assert_called_once_with(userId="me")

    def test_get_message(self, server, messages):
        messages.get.return_value.execute.return_value = {"id": "m1", "threadId": "t1", "payload": {}}

        call_tool(server, "gmail_get_message", {"message_id": "m1"})

        messages.get.assert_called_once_with(userId="me", id="m1", format="full")

    def test_download_uses_configured_directory(self, server, messages, monkeypatch, tmp_path):
        monkeypatch.setattr(server, "GMAIL_DOWNLOAD_DIR", str(tmp_path))
        messages.attachments.return_value.get.return_value.execute.return_value = {
            "data": b64url_encode(b"payload"),
        }

        call_tool(server, "gmail_download_attachment",
                  {"message_id": "m1", "attachment_id": "a1", "filename": "f.bin"})

        assert (tmp_path / "f.bin").read_bytes() == b"payload"


class TestComposeTools:
    def test_send_message(self, server, messages):
        messages.send.return_value.execute.return_value = {"id": "s1", "threadId": "t1", "labelIds": []}

        call_tool(server, "gmail_send_message",
                  {"to": "a@b.com", "subject": "Hi", "body": "Hello", "cc": "c@b.com"})

        assert sent_raw(messages) == ("To: a@b.com\r\nCc: c@b.com\r\nSubject: Hi\r\n"
                                      "Content-Type: text/plain; charset=utf-8\r\n\r\nHello")

    def test_send_message_with_attachment(self, server, messages, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("attached")
        messages.send.return_value.execute.return_value = {"id": "s1", "threadId": "t1", "labelIds": []}

        call_tool(server, "gmail_send_message",
                  {"to": "a@b.com", "subject": "Hi", "body": "Hello", "attachments": [str(path)]})

        raw = sent_raw(messages)
        assert "Content-Type: multipart/mixed" in raw
        assert 'Content-Disposition: attachment; filename="notes.txt"' in raw

    def test_create_draft(self, server):
        drafts = server.gmail.users.return_value.drafts.return_value
        drafts.create.return_value.execute.return_value = {"id": "d1", "message": {"id": "m5"}}

        call_tool(server, "gmail_create_draft", {"to": "a@b.com", "subject": "Hi", "body": "Hello"})

        raw = b64url_decode(drafts.create.call_args.kwargs["body"]["message"]["raw"]).decode()
        assert raw.startswith("To: a@b.com\r\nSubject: Hi\r\n")
        assert raw.endswith("\r\n\r\nHello")

    def test_reply_to_message(self, server, messages):
        messages.get.return_value.execute.return_value = {
            "threadId": "t1",
            "payload": {"headers": [
                {"name": "Message-ID", "value": "<abc@x>"},
                {"name": "Subject", "value": "Meeting"},
                {"name": "From", "value": "a@b.com"},
            ]},
        }
        messages.send.return_value.execute.return_value = {"id": "r1", "threadId": "t1", "labelIds": []}

        call_tool(server, "gmail_reply_to_message", {"message_id": "m1", "body": "Yes"})

        assert messages.send.call_args.kwargs["body"]["threadId"] == "t1"
        raw = sent_raw(messages)
        assert raw.startswith("To: a@b.com\r\nSubject: Re: Meeting\r\n")
        assert "In-Reply-To: <abc@x>\r\nReferences: <abc@x>\r\n" in raw
