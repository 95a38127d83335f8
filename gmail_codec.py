"""Email message codec for the Gmail MCP server.

Decodes Gmail message part trees into readable text and attachment
metadata, and encodes outgoing messages (optionally multipart with file
attachments and reply threading headers) into the base64url ``raw`` form
accepted by the Gmail API.
"""
import base64
import binascii
import email
import email.policy
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CRLF = "\r\n"
BASE64_LINE_LENGTH = 76
DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    # documents
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".odt": "application/vnd.oasis.opendocument.text",
    ".rtf": "application/rtf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".html": "text/html",
    ".htm": "text/html",
    ".ics": "text/calendar",
    ".json": "application/json",
    ".xml": "application/xml",
    # images
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    # audio
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
    # video
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    # archives
    ".zip": "application/zip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".7z": "application/x-7z-compressed",
}

_BR_RE = re.compile(r"<br\b[^>]*>", re.IGNORECASE)
_P_CLOSE_RE = re.compile(r"</p\s*>", re.IGNORECASE)
_DIV_CLOSE_RE = re.compile(r"</div\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")

# order matters: &amp; is decoded before the entities it could produce
_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


class CodecError(ValueError):
    """Raised when a base64url payload cannot be decoded."""


class AttachmentReadError(OSError):
    """Raised when an attachment file cannot be read while composing."""


@dataclass(frozen=True)
class Header:
    name: str
    value: str


@dataclass(frozen=True)
class Part:
    """One node of a received message's MIME tree.

    Leaves carry either an inline base64url ``payload`` or an
    ``attachment_reference``; containers carry ``parts``.
    """

    mime_type: str = ""
    headers: tuple = ()
    payload: str | None = None
    filename: str = ""
    attachment_reference: str | None = None
    size: int = 0
    parts: tuple = ()

    @classmethod
    def from_api(cls, data) -> "Part | None":
        """Build a part tree from a Gmail API ``MessagePart`` dict.

        Missing or malformed keys degrade to empty values, so a partial
        API response still yields a usable (possibly empty) tree.
        """
        if not isinstance(data, dict):
            return None

        body = data.get("body")
        if not isinstance(body, dict):
            body = {}

        headers = []
        for h in _as_list(data.get("headers")):
            if isinstance(h, dict) and h.get("name"):
                headers.append(Header(str(h["name"]), str(h.get("value") or "")))

        children = []
        for child in _as_list(data.get("parts")):
            node = cls.from_api(child)
            if node is not None:
                children.append(node)

        try:
            size = int(body.get("size") or 0)
        except (TypeError, ValueError):
            size = 0

        payload = body.get("data")
        reference = body.get("attachmentId")

        return cls(
            mime_type=str(data.get("mimeType") or ""),
            headers=tuple(headers),
            payload=payload if isinstance(payload, str) and payload else None,
            filename=str(data.get("filename") or ""),
            attachment_reference=reference if isinstance(reference, str) and reference else None,
            size=size,
            parts=tuple(children),
        )

    @classmethod
    def from_mime(cls, message) -> "Part":
        """Build a part tree from a parsed ``email.message.Message``."""
        headers = tuple(Header(name, str(value)) for name, value in message.items())
        filename = message.get_filename() or ""

        if message.is_multipart():
            children = tuple(cls.from_mime(sub) for sub in message.get_payload())
            return cls(
                mime_type=message.get_content_type(),
                headers=headers,
                filename=filename,
                parts=children,
            )

        raw = message.get_payload(decode=True) or b""
        return cls(
            mime_type=message.get_content_type(),
            headers=headers,
            payload=b64url_encode(raw) if raw else None,
            filename=filename,
            size=len(raw),
        )


@dataclass(frozen=True)
class AttachmentDescriptor:
    filename: str
    mime_type: str
    size: int
    attachment_reference: str | None = None

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "attachmentId": self.attachment_reference,
        }


@dataclass(frozen=True)
class ComposeRequest:
    """Everything needed to build one outgoing message.

    ``to``, ``cc`` and ``bcc`` are comma-joined address lists,
    ``references`` is a space-joined list of Message-IDs and
    ``thread_subject`` overrides ``subject`` when replying.
    """

    to: str
    subject: str
    body: str
    cc: str | None = None
    bcc: str | None = None
    attachments: tuple = ()
    in_reply_to: str | None = None
    references: str | None = None
    thread_subject: str | None = None


@dataclass(frozen=True)
class ReplyHeaders:
    to: str
    in_reply_to: str
    references: str
    thread_subject: str


def b64url_encode(data: bytes) -> str:
    """Encode bytes with the URL-safe base64 alphabet, without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """Decode URL-safe base64, padded or not.

    Raises:
        CodecError: the input is not valid base64url
    """
    if isinstance(data, bytes):
        data = data.decode("ascii", errors="replace")
    data = data.strip()
    try:
        return base64.b64decode(data + "=" * (-len(data) % 4), altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise CodecError(f"Invalid base64url data: {e}") from e


def wrap_base64(data: bytes, width: int = BASE64_LINE_LENGTH) -> list[str]:
    """Standard padded base64 of data, split into lines of at most width chars."""
    encoded = base64.b64encode(data).decode("ascii")
    return [encoded[i:i + width] for i in range(0, len(encoded), width)]


def html_to_text(html: str) -> str:
    """Degrade HTML to readable text.

    This is a handful of substitutions, not an HTML parser: line breaks for
    <br>, </p> and </div>, every other tag dropped, six entities decoded.
    """
    text = _BR_RE.sub("\n", html)
    text = _P_CLOSE_RE.sub("\n\n", text)
    text = _DIV_CLOSE_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    for entity, replacement in _ENTITIES:
        text = text.replace(entity, replacement)
    return text.strip()


def get_header(headers, name: str) -> str:
    """Value of the first header named name (case-insensitive), or ''."""
    wanted = name.lower()
    for header in headers or ():
        if header.name.lower() == wanted:
            return header.value
    return ""


def _decode_payload(part: Part) -> str:
    text = b64url_decode(part.payload).decode("utf-8", errors="replace")
    if part.mime_type == "text/html":
        return html_to_text(text)
    return text


def decode_body(root: Part | None) -> str:
    """Best available plain-text rendering of a message.

    A text/plain child wins over a text/html sibling at the same level;
    nested containers are only searched when neither exists.

    Raises:
        CodecError: a selected payload is not valid base64url
    """
    if root is None:
        return ""

    if root.payload and not root.parts:
        return _decode_payload(root)

    if not root.parts:
        return ""

    for mime_type in ("text/plain", "text/html"):
        for child in root.parts:
            if child.mime_type == mime_type and child.payload:
                return _decode_payload(child)

    for child in root.parts:
        body = decode_body(child)
        if body:
            return body

    return ""


def list_attachments(root: Part | None, track_references: bool = True) -> list[AttachmentDescriptor]:
    """Describe every part carrying a filename, in pre-order.

    Args:
        root: top of the part tree
        track_references: when False, descriptors never carry an
                          attachment reference

    Return:
        list of AttachmentDescriptor, parents before children
    """
    attachments = []
    if root is None:
        return attachments

    stack = [root]
    while stack:
        part = stack.pop()
        if part.filename:
            attachments.append(AttachmentDescriptor(
                filename=part.filename,
                mime_type=part.mime_type or DEFAULT_MIME_TYPE,
                size=part.size,
                attachment_reference=part.attachment_reference if track_references else None,
            ))
        stack.extend(reversed(part.parts))

    return attachments


def guess_mime_type(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def _read_attachment(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise AttachmentReadError(e.errno, f"Cannot read attachment: {e.strerror}", path) from e


def _address_headers(request: ComposeRequest) -> list[str]:
    lines = [f"To: {request.to}"]
    if request.cc:
        lines.append(f"Cc: {request.cc}")
    if request.bcc:
        lines.append(f"Bcc: {request.bcc}")
    lines.append(f"Subject: {request.thread_subject or request.subject}")
    return lines


def _threading_headers(request: ComposeRequest) -> list[str]:
    if not request.in_reply_to:
        return []
    return [
        f"In-Reply-To: {request.in_reply_to}",
        f"References: {request.references or request.in_reply_to}",
    ]


def new_boundary() -> str:
    return f"boundary_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def build_raw_message(request: ComposeRequest) -> str:
    """Assemble the RFC 2822 text of a message, CRLF separated.

    Without attachments the message is a single text/plain part, otherwise
    a multipart/mixed with the body first and one base64 part per file, in
    the order given.

    Raises:
        AttachmentReadError: an attachment path could not be read
    """
    if not request.attachments:
        lines = _address_headers(request)
        lines.append("Content-Type: text/plain; charset=utf-8")
        lines.extend(_threading_headers(request))
        lines.append("")
        lines.append(request.body)
        return CRLF.join(lines)

    # read everything up front so a bad path fails before anything is built
    files = [(os.path.basename(path), _read_attachment(path)) for path in request.attachments]

    boundary = new_boundary()
    lines = _address_headers(request)
    lines.append("MIME-Version: 1.0")
    lines.extend(_threading_headers(request))
    lines.append(f'Content-Type: multipart/mixed; boundary="{boundary}"')
    lines.append("")

    lines.append(f"--{boundary}")
    lines.append("Content-Type: text/plain; charset=utf-8")
    lines.append("")
    lines.append(request.body)
    lines.append("")

    for filename, content in files:
        lines.append(f"--{boundary}")
        lines.append(f'Content-Type: {guess_mime_type(filename)}; name="{filename}"')
        lines.append("Content-Transfer-Encoding: base64")
        lines.append(f'Content-Disposition: attachment; filename="{filename}"')
        lines.append("")
        lines.extend(wrap_base64(content))
        lines.append("")
        logger.debug("Attached %s (%d bytes)", filename, len(content))

    lines.append(f"--{boundary}--")
    return CRLF.join(lines)


def encode_message(request: ComposeRequest) -> str:
    """Build a message and encode it for the Gmail API ``raw`` field."""
    return b64url_encode(build_raw_message(request).encode("utf-8"))


def parse_raw_message(raw: str) -> Part:
    """Parse a base64url encoded RFC 2822 message into a part tree."""
    message = email.message_from_bytes(b64url_decode(raw), policy=email.policy.compat32)
    return Part.from_mime(message)


def derive_reply_headers(headers) -> ReplyHeaders:
    """Threading inputs for a reply to the message carrying headers.

    The reply goes to the original sender only, cites its Message-ID in
    In-Reply-To and appends it to References, and prefixes the subject
    with "Re: " unless it already starts with "Re:".
    """
    message_id = get_header(headers, "Message-ID")
    references = get_header(headers, "References")
    subject = get_header(headers, "Subject")

    return ReplyHeaders(
        to=get_header(headers, "From"),
        in_reply_to=message_id,
        references=" ".join(filter(None, (references, message_id))),
        thread_subject=subject if subject.startswith("Re:") else f"Re: {subject}",
    )
