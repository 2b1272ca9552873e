"""Gmail channel over the Gmail REST API.

Unread mail matching a query (by label, recipient address or subject) is
polled, marked read and delivered as inbound messages. Which chat an email
lands in depends on the context mode:

- ``thread``: one chat per Gmail thread
- ``sender``: one chat per sender address
- ``single``: every email shares one chat

JIDs look like ``email:<context>``. Replies go back to the most recent email
seen in that chat, threaded with ``In-Reply-To``/``References``.

The OAuth access token is supplied through config; obtaining and refreshing
it happens outside juniper.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any, Literal

import aiohttp

from juniper.logger import logger
from juniper.types import NewMessage, OnChatMetadata, OnInboundMessage, RegisteredGroup
from juniper.utils import create_background_task

JID_PREFIX = "email:"

TriggerMode = Literal["label", "address", "subject"]
ContextMode = Literal["thread", "sender", "single"]

_QUERY_OPERATORS = {"label": "label", "address": "to", "subject": "subject"}
_TAG_RE = re.compile(r"<[^>]+>")


class GmailApiError(RuntimeError):
    """A Gmail API call failed."""


@dataclass
class InboundEmail:
    id: str
    thread_id: str
    from_: str
    subject: str
    body: str
    date: str


def build_query(mode: TriggerMode, value: str) -> str:
    """Gmail search query for unread mail matching the trigger."""
    return f"{_QUERY_OPERATORS[mode]}:{value} is:unread"


def _decode(data: str) -> str:
    # Gmail uses the URL-safe alphabet; accept the standard one too
    normalized = data.translate(str.maketrans("+/", "-_"))
    raw = base64.urlsafe_b64decode(normalized + "=" * (-len(normalized) % 4))
    return raw.decode("utf-8", errors="replace")


def _part_data(part: dict[str, Any], mime_type: str) -> str | None:
    if part.get("mimeType") != mime_type:
        return None
    return (part.get("body") or {}).get("data") or None


def extract_body(payload: dict[str, Any]) -> str:
    """Best-effort plain-text body of a Gmail message payload.

    A top-level ``text/plain`` body wins. Otherwise the first plain part,
    then the first HTML part with tags stripped, then nested multiparts.
    """
    data = _part_data(payload, "text/plain")
    if data:
        return _decode(data)
    parts = payload.get("parts") or []
    for part in parts:
        data = _part_data(part, "text/plain")
        if data:
            return _decode(data)
    for part in parts:
        data = _part_data(part, "text/html")
        if data:
            return _TAG_RE.sub("", _decode(data)).replace("&nbsp;", " ").strip()
    for part in parts:
        body = extract_body(part)
        if body:
            return body
    return ""


def get_context_key(email: InboundEmail, mode: ContextMode) -> str:
    if mode == "thread":
        return f"email-{email.thread_id}"
    if mode == "sender":
        return "email-" + re.sub(r"[^a-z0-9]", "-", email.from_.lower())
    return "email-main"


def jid_for(email: InboundEmail, mode: ContextMode) -> str:
    return JID_PREFIX + get_context_key(email, mode).removeprefix("email-")


def _header(headers: list[dict[str, Any]], name: str) -> str | None:
    for h in headers:
        if (h.get("name") or "").lower() == name:
            return h.get("value")
    return None


def _timestamp(date_header: str) -> str:
    try:
        return parsedate_to_datetime(date_header).isoformat()
    except (TypeError, ValueError):
        return datetime.now(UTC).isoformat()


class GmailChannel:
    name = "gmail"

    def __init__(
        self,
        access_token: str,
        *,
        api_base: str = "https://gmail.googleapis.com/gmail/v1",
        trigger_mode: TriggerMode = "label",
        trigger_value: str = "Juniper",
        context_mode: ContextMode = "single",
        poll_interval_s: float = 60.0,
        max_results: int = 10,
        request_timeout_s: float = 30.0,
        on_message: OnInboundMessage | None = None,
        on_chat_metadata: OnChatMetadata | None = None,
        registered_groups: Callable[[], dict[str, RegisteredGroup]] | None = None,
    ) -> None:
        self._token = access_token
        self._base = f"{api_base.rstrip('/')}/users/me"
        self._trigger_mode = trigger_mode
        self._trigger_value = trigger_value
        self._context_mode = context_mode
        self._poll_interval_s = poll_interval_s
        self._max_results = max_results
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self._registered_groups = registered_groups or dict
        self._session: aiohttp.ClientSession | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._last_email: dict[str, InboundEmail] = {}
        self.processed_ids: set[str] = set()
        self.address: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession(
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {self._token}"},
        )
        try:
            profile = await self._request("GET", "profile")
        except Exception:
            await self._session.close()
            self._session = None
            raise
        self.address = profile.get("emailAddress")
        logger.info(
            "Gmail channel connected",
            address=self.address,
            query=build_query(self._trigger_mode, self._trigger_value),
        )
        if self._on_message is not None:
            self._poll_task = create_background_task(self._poll_loop(), name="gmail-poll")

    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(JID_PREFIX)

    async def disconnect(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
            logger.info("Gmail channel stopped")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self._session is None:
            raise GmailApiError("Gmail channel is not connected")
        async with self._session.request(
            method, f"{self._base}/{path}", params=params, json=json
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError as exc:
                raise GmailApiError(f"{path}: non-JSON response ({resp.status})") from exc
        if resp.status >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise GmailApiError(f"{method} {path} failed: {message or resp.status}")
        return body if isinstance(body, dict) else {}

    # ------------------------------------------------------------------
    # Gmail operations
    # ------------------------------------------------------------------

    async def check_for_new_emails(self) -> list[InboundEmail]:
        """Fetch unread matching emails not yet processed by this channel."""
        listing = await self._request(
            "GET",
            "messages",
            params={
                "q": build_query(self._trigger_mode, self._trigger_value),
                "maxResults": str(self._max_results),
            },
        )
        emails: list[InboundEmail] = []
        for ref in listing.get("messages") or []:
            msg_id, thread_id = ref.get("id"), ref.get("threadId")
            if not msg_id or not thread_id or msg_id in self.processed_ids:
                continue
            msg = await self._request("GET", f"messages/{msg_id}", params={"format": "full"})
            payload = msg.get("payload") or {}
            headers = payload.get("headers") or []
            emails.append(
                InboundEmail(
                    id=msg_id,
                    thread_id=thread_id,
                    from_=_header(headers, "from") or "unknown",
                    subject=_header(headers, "subject") or "(no subject)",
                    body=extract_body(payload),
                    date=_header(headers, "date") or "",
                )
            )
        return emails

    async def send_email_reply(
        self,
        thread_id: str,
        to: str,
        subject: str,
        body: str,
        in_reply_to_id: str,
    ) -> None:
        original = await self._request(
            "GET",
            f"messages/{in_reply_to_id}",
            params={"format": "metadata", "metadataHeaders": "Message-ID"},
        )
        message_id = _header((original.get("payload") or {}).get("headers") or [], "message-id")

        reply = EmailMessage()
        reply["To"] = to
        reply["Subject"] = subject if subject.startswith("Re:") else f"Re: {subject}"
        if message_id:
            reply["In-Reply-To"] = message_id
            reply["References"] = message_id
        reply.set_content(body)

        raw = base64.urlsafe_b64encode(reply.as_bytes(policy=policy.SMTP)).rstrip(b"=")
        await self._request(
            "POST",
            "messages/send",
            json={"raw": raw.decode("ascii"), "threadId": thread_id},
        )

    async def mark_as_read(self, message_id: str) -> None:
        await self._request(
            "POST",
            f"messages/{message_id}/modify",
            json={"removeLabelIds": ["UNREAD"]},
        )

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    async def send_message(self, jid: str, text: str) -> None:
        email = self._last_email.get(jid)
        if email is None:
            raise GmailApiError(f"No email thread to reply to for {jid}")
        try:
            await self.send_email_reply(email.thread_id, email.from_, email.subject, text, email.id)
        except (aiohttp.ClientError, TimeoutError, GmailApiError) as exc:
            logger.error("Failed to send email reply", jid=jid, err=str(exc))
            raise
        logger.info("Email reply sent", jid=jid, to=email.from_, length=len(text))

    async def poll_once(self) -> int:
        """Process one batch of new emails. Returns how many were delivered."""
        delivered = 0
        for email in await self.check_for_new_emails():
            self.processed_ids.add(email.id)
            await self.mark_as_read(email.id)

            jid = jid_for(email, self._context_mode)
            timestamp = _timestamp(email.date)
            if self._on_chat_metadata is not None:
                self._on_chat_metadata(jid, timestamp, f"Email: {email.from_}")
            if jid not in self._registered_groups():
                logger.debug("Email for unregistered chat", jid=jid, sender=email.from_)
                continue

            self._last_email[jid] = email
            if self._on_message is not None:
                self._on_message(
                    jid,
                    NewMessage(
                        id=email.id,
                        chat_jid=jid,
                        sender=email.from_,
                        sender_name=email.from_,
                        content=f"Subject: {email.subject}\n\n{email.body}",
                        timestamp=timestamp,
                    ),
                )
            delivered += 1
            logger.info("Email received", jid=jid, sender=email.from_, subject=email.subject)
        return delivered

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except (aiohttp.ClientError, TimeoutError, GmailApiError) as exc:
                logger.error("Gmail polling failed", err=str(exc))
            await asyncio.sleep(self._poll_interval_s)
