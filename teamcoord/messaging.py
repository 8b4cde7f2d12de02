"""
Message Bus Module for Team Coordination

Typed messages between workers and the lead, delivered through per-recipient
JSONL inboxes, plus the correlated shutdown handshake:

    requester                               responder
    request_shutdown(recipient)  --->  shutdown_request {request_id}
                                 <---  respond_to_shutdown(request, approve)
    resolve_shutdown_response(response)    echoes request_id verbatim

A response whose request_id does not match an outstanding request is never
treated as approval.
"""

import glob
import json
import os
import re
import uuid
import logging
from typing import Any, Dict, List, Literal, Optional, TypedDict, Union

from .errors import HandshakeMismatch, MessageValidationError
from .state_store import StateStore
from .timestamps import now_iso

logger = logging.getLogger(__name__)

MESSAGE_KIND = "message"
SHUTDOWN_REQUEST_KIND = "shutdown_request"
SHUTDOWN_RESPONSE_KIND = "shutdown_response"
MESSAGE_KINDS = frozenset({MESSAGE_KIND, SHUTDOWN_REQUEST_KIND, SHUTDOWN_RESPONSE_KIND})

__all__ = [
    'MESSAGE_KIND',
    'SHUTDOWN_REQUEST_KIND',
    'SHUTDOWN_RESPONSE_KIND',
    'MESSAGE_KINDS',
    'PlainMessage',
    'ShutdownRequest',
    'ShutdownResponse',
    'validate_message',
    'InboxTransport',
    'MessageBus',
]


# ============================================================================
# MESSAGE SCHEMAS
# ============================================================================

class PlainMessage(TypedDict):
    """Fire-and-forget message; no reply is expected."""
    kind: Literal["message"]
    recipient: str
    content: str
    summary: str


class ShutdownRequest(TypedDict):
    """Asks the recipient to shut down. request_id is generated by the requester."""
    kind: Literal["shutdown_request"]
    recipient: str
    request_id: str


class ShutdownResponse(TypedDict):
    """Answer to a shutdown request. request_id must be echoed byte-for-byte."""
    kind: Literal["shutdown_response"]
    recipient: str
    request_id: str
    approve: bool


Message = Union[PlainMessage, ShutdownRequest, ShutdownResponse]


def _require_text(message: Dict[str, Any], field: str, allow_empty: bool = False) -> None:
    value = message.get(field)
    if not isinstance(value, str):
        raise MessageValidationError(field, f"expected a string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        raise MessageValidationError(field, "must not be empty")


def validate_message(message: Dict[str, Any]) -> None:
    """
    Check a message payload against its declared kind.

    Raises:
        MessageValidationError: On unknown kind, missing or mistyped fields
    """
    if not isinstance(message, dict):
        raise MessageValidationError('message', f"expected an object, got {type(message).__name__}")

    kind = message.get('kind')
    if kind not in MESSAGE_KINDS:
        raise MessageValidationError('kind', f"must be one of {sorted(MESSAGE_KINDS)}, got {kind!r}")

    _require_text(message, 'recipient')

    if kind == MESSAGE_KIND:
        _require_text(message, 'content')
        _require_text(message, 'summary', allow_empty=True)
    else:
        _require_text(message, 'request_id')
        if kind == SHUTDOWN_RESPONSE_KIND and not isinstance(message.get('approve'), bool):
            raise MessageValidationError('approve', "must be a boolean")


# ============================================================================
# TRANSPORT
# ============================================================================

class InboxTransport:
    """
    File transport: one append-only JSONL inbox per recipient.

    Delivery is best-effort and at-least-once. Each envelope is written as a
    single line with one append call.
    """

    def __init__(self, inbox_dir: str):
        self.inbox_dir = inbox_dir

    def _inbox_path(self, recipient: str) -> str:
        safe_name = re.sub(r'[^A-Za-z0-9._-]', '_', recipient)
        return os.path.join(self.inbox_dir, f"{safe_name}.jsonl")

    def deliver(self, recipient: str, envelope: Dict[str, Any]) -> None:
        os.makedirs(self.inbox_dir, exist_ok=True)
        with open(self._inbox_path(recipient), 'a', encoding='utf-8') as f:
            f.write(json.dumps(envelope) + '\n')
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _parse_lines(path: str) -> List[Dict[str, Any]]:
        """
        Parse a JSONL inbox. Lines that are not UTF-8, not JSON, or not a
        JSON object are logged and skipped; the rest of the inbox survives.
        """
        messages = []
        with open(path, 'rb') as f:
            for line_number, raw_line in enumerate(f, start=1):
                try:
                    line = raw_line.decode('utf-8').strip()
                except UnicodeDecodeError as e:
                    logger.warning(f"Skipping undecodable inbox line {line_number} in {path}: {e}")
                    continue
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed inbox line {line_number} in {path}: {e}")
                    continue
                if not isinstance(message, dict):
                    logger.warning(
                        f"Skipping inbox line {line_number} in {path}: "
                        f"expected an object, got {type(message).__name__}"
                    )
                    continue
                messages.append(message)
        return messages

    def peek(self, recipient: str) -> List[Dict[str, Any]]:
        """Read an inbox without consuming it."""
        path = self._inbox_path(recipient)
        if not os.path.exists(path):
            return []
        return self._parse_lines(path)

    def drain(self, recipient: str) -> List[Dict[str, Any]]:
        """
        Read and consume an inbox.

        The inbox is first moved aside with os.replace so messages delivered
        while it is being read land in a fresh inbox. A moved-aside file is
        removed only after it has been parsed; one left behind by a failed
        drain is picked up again, oldest first, on the next drain.
        """
        path = self._inbox_path(recipient)
        pending = sorted(glob.glob(f"{glob.escape(path)}.*.draining"), key=os.path.getmtime)

        if os.path.exists(path):
            draining_path = f"{path}.{os.getpid()}.{uuid.uuid4().hex[:8]}.draining"
            try:
                os.replace(path, draining_path)
                pending.append(draining_path)
            except FileNotFoundError:
                # Another reader drained it first.
                pass

        messages: List[Dict[str, Any]] = []
        for draining_path in pending:
            try:
                messages.extend(self._parse_lines(draining_path))
            except FileNotFoundError:
                continue
            try:
                os.unlink(draining_path)
            except FileNotFoundError:
                pass
        return messages


# ============================================================================
# MESSAGE BUS
# ============================================================================

class MessageBus:
    """
    Message endpoint for one participant (a worker or the lead).

    Outstanding shutdown requests are kept in memory on the requester's bus;
    they are transient and never persisted.

    Usage:
        lead = MessageBus(directory, "team-lead")
        request = lead.request_shutdown("worker-1")

        worker = MessageBus(directory, "worker-1")
        for msg in worker.read_inbox():
            if msg['kind'] == 'shutdown_request':
                worker.respond_to_shutdown(msg, approve=True)

        for msg in lead.read_inbox():
            approved = lead.resolve_shutdown_response(msg)
    """

    def __init__(self, directory: str, participant: str, transport: Optional[InboxTransport] = None):
        if not participant or not participant.strip():
            raise ValueError("participant must be a non-empty string")
        self.participant = participant
        if transport is None:
            transport = InboxTransport(os.path.join(StateStore(directory).state_dir, 'inbox'))
        self.transport = transport
        self._outstanding: Dict[str, Dict[str, Any]] = {}

    @property
    def outstanding_requests(self) -> List[str]:
        return list(self._outstanding)

    def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and deliver a message.

        Returns:
            The delivered envelope (the message plus sender, sent_at, message_id)

        Raises:
            MessageValidationError: If the payload is malformed
        """
        validate_message(message)
        envelope = dict(message)
        envelope['sender'] = self.participant
        envelope['sent_at'] = now_iso()
        envelope['message_id'] = f"msg-{uuid.uuid4().hex[:12]}"
        self.transport.deliver(message['recipient'], envelope)
        logger.debug(f"{self.participant} sent {message['kind']} to {message['recipient']}")
        return envelope

    def send_text(self, recipient: str, content: str, summary: str = "") -> Dict[str, Any]:
        message: PlainMessage = {
            'kind': MESSAGE_KIND,
            'recipient': recipient,
            'content': content,
            'summary': summary,
        }
        return self.send(message)

    def read_inbox(self) -> List[Dict[str, Any]]:
        """Drain and return this participant's inbox."""
        return self.transport.drain(self.participant)

    # ------------------------------------------------------------------------
    # Shutdown handshake
    # ------------------------------------------------------------------------

    def request_shutdown(self, recipient: str) -> Dict[str, Any]:
        """
        Send a shutdown_request and remember it as outstanding.

        Returns:
            The delivered request envelope
        """
        request_id = f"shutdown-{uuid.uuid4().hex}"
        request: ShutdownRequest = {
            'kind': SHUTDOWN_REQUEST_KIND,
            'recipient': recipient,
            'request_id': request_id,
        }
        envelope = self.send(request)
        self._outstanding[request_id] = {'recipient': recipient, 'sent_at': envelope['sent_at']}
        logger.info(f"{self.participant} requested shutdown of {recipient} ({request_id})")
        return envelope

    def respond_to_shutdown(self, request: Dict[str, Any], approve: bool) -> Dict[str, Any]:
        """
        Answer a received shutdown_request, echoing its request_id verbatim.

        Raises:
            MessageValidationError: If request is not a shutdown_request or has no sender
        """
        if request.get('kind') != SHUTDOWN_REQUEST_KIND:
            raise MessageValidationError('kind', f"expected {SHUTDOWN_REQUEST_KIND}, got {request.get('kind')!r}")
        _require_text(request, 'request_id')
        _require_text(request, 'sender')

        response: ShutdownResponse = {
            'kind': SHUTDOWN_RESPONSE_KIND,
            'recipient': request['sender'],
            'request_id': request['request_id'],
            'approve': bool(approve),
        }
        logger.info(
            f"{self.participant} {'approved' if approve else 'denied'} shutdown "
            f"request {request['request_id']} from {request['sender']}"
        )
        return self.send(response)

    def resolve_shutdown_response(self, response: Dict[str, Any]) -> bool:
        """
        Correlate a shutdown_response with an outstanding request.

        The request is retired on a successful match, approved or not.

        Returns:
            True if the responder approved, False if it denied

        Raises:
            MessageValidationError: If response is not a well-formed shutdown_response
            HandshakeMismatch: If request_id matches no outstanding request, or
                the response came from someone other than the request's recipient
        """
        if response.get('kind') != SHUTDOWN_RESPONSE_KIND:
            raise MessageValidationError('kind', f"expected {SHUTDOWN_RESPONSE_KIND}, got {response.get('kind')!r}")
        validate_message(response)

        request_id = response['request_id']
        outstanding = self._outstanding.get(request_id)
        if outstanding is None:
            logger.warning(f"{self.participant} got shutdown response for unknown request {request_id!r}")
            raise HandshakeMismatch(request_id)

        sender = response.get('sender')
        if sender != outstanding['recipient']:
            logger.warning(
                f"Shutdown response {request_id} came from {sender}, expected {outstanding['recipient']}"
            )
            raise HandshakeMismatch(request_id, reason=f"response sent by {sender}, not {outstanding['recipient']}")

        del self._outstanding[request_id]
        return response['approve']
