"""
Test suite for messaging.py.

Tests cover:
- Message validation per kind
- Inbox delivery, peek and drain
- Malformed inbox lines
- The shutdown handshake and its mismatch cases
"""

import json
import os
import shutil
import sys
import tempfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from teamcoord.errors import HandshakeMismatch, MessageValidationError
from teamcoord.messaging import InboxTransport, MessageBus, validate_message


@pytest.fixture
def temp_dir():
    temp_dir = tempfile.mkdtemp(prefix="test_messaging_")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def lead(temp_dir):
    return MessageBus(temp_dir, 'team-lead')


@pytest.fixture
def worker(temp_dir):
    return MessageBus(temp_dir, 'worker-1')


class TestValidation:

    def test_valid_messages(self):
        validate_message({'kind': 'message', 'recipient': 'a', 'content': 'hi', 'summary': ''})
        validate_message({'kind': 'shutdown_request', 'recipient': 'a', 'request_id': 'r1'})
        validate_message({'kind': 'shutdown_response', 'recipient': 'a', 'request_id': 'r1', 'approve': False})

    @pytest.mark.parametrize('message,field', [
        ({'kind': 'shout', 'recipient': 'a'}, 'kind'),
        ({'kind': 'message', 'content': 'hi', 'summary': ''}, 'recipient'),
        ({'kind': 'message', 'recipient': 'a', 'content': '', 'summary': ''}, 'content'),
        ({'kind': 'message', 'recipient': 'a', 'content': 'hi'}, 'summary'),
        ({'kind': 'shutdown_request', 'recipient': 'a'}, 'request_id'),
        ({'kind': 'shutdown_response', 'recipient': 'a', 'request_id': 'r1', 'approve': 'yes'}, 'approve'),
    ])
    def test_invalid_messages(self, message, field):
        with pytest.raises(MessageValidationError) as excinfo:
            validate_message(message)
        assert excinfo.value.field == field

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_message('not a dict')

    def test_bus_requires_participant(self, temp_dir):
        with pytest.raises(ValueError):
            MessageBus(temp_dir, '  ')


class TestInbox:

    def test_send_and_read(self, lead, worker):
        envelope = worker.send_text('team-lead', 'Completed task #1', summary='Task #1 complete')
        assert envelope['sender'] == 'worker-1'
        assert envelope['message_id'].startswith('msg-')

        messages = lead.read_inbox()
        assert len(messages) == 1
        assert messages[0]['content'] == 'Completed task #1'
        assert messages[0]['sender'] == 'worker-1'

    def test_drain_consumes_inbox(self, lead, worker):
        worker.send_text('team-lead', 'one')
        worker.send_text('team-lead', 'two')

        assert [m['content'] for m in lead.read_inbox()] == ['one', 'two']
        assert lead.read_inbox() == []

    def test_peek_does_not_consume(self, temp_dir, lead, worker):
        worker.send_text('team-lead', 'hello')
        assert len(lead.transport.peek('team-lead')) == 1
        assert len(lead.read_inbox()) == 1

    def test_drain_leaves_no_files(self, lead, worker):
        worker.send_text('team-lead', 'hello')
        lead.read_inbox()
        assert os.listdir(lead.transport.inbox_dir) == []

    def test_invalid_message_not_delivered(self, lead, worker):
        with pytest.raises(MessageValidationError):
            worker.send({'kind': 'message', 'recipient': 'team-lead', 'content': '', 'summary': ''})
        assert lead.read_inbox() == []

    def test_malformed_lines_are_skipped(self, temp_dir):
        transport = InboxTransport(os.path.join(temp_dir, 'inbox'))
        transport.deliver('worker-1', {'kind': 'message', 'content': 'first'})
        with open(transport._inbox_path('worker-1'), 'a', encoding='utf-8') as f:
            f.write('{"broken json\n\n')
        transport.deliver('worker-1', {'kind': 'message', 'content': 'second'})

        assert [m['content'] for m in transport.drain('worker-1')] == ['first', 'second']

    def test_undecodable_line_does_not_lose_inbox(self, temp_dir):
        transport = InboxTransport(os.path.join(temp_dir, 'inbox'))
        transport.deliver('worker-1', {'kind': 'message', 'content': 'first'})
        with open(transport._inbox_path('worker-1'), 'ab') as f:
            f.write(b'\xff\xfe garbage\n')
        transport.deliver('worker-1', {'kind': 'message', 'content': 'second'})

        assert [m['content'] for m in transport.drain('worker-1')] == ['first', 'second']
        assert transport.drain('worker-1') == []

    def test_non_object_lines_are_skipped(self, temp_dir):
        transport = InboxTransport(os.path.join(temp_dir, 'inbox'))
        os.makedirs(transport.inbox_dir, exist_ok=True)
        with open(transport._inbox_path('worker-1'), 'w', encoding='utf-8') as f:
            f.write('42\n"text"\n[1, 2]\nnull\n')
        transport.deliver('worker-1', {'kind': 'message', 'content': 'kept'})

        messages = transport.drain('worker-1')
        assert messages == [{'kind': 'message', 'content': 'kept'}]

    def test_leftover_draining_file_is_recovered(self, temp_dir):
        transport = InboxTransport(os.path.join(temp_dir, 'inbox'))
        transport.deliver('worker-1', {'kind': 'message', 'content': 'stranded'})
        path = transport._inbox_path('worker-1')
        os.replace(path, f"{path}.999.deadbeef.draining")
        transport.deliver('worker-1', {'kind': 'message', 'content': 'fresh'})

        assert [m['content'] for m in transport.drain('worker-1')] == ['stranded', 'fresh']
        assert os.listdir(transport.inbox_dir) == []

    def test_recipient_names_are_sanitized(self, temp_dir):
        transport = InboxTransport(os.path.join(temp_dir, 'inbox'))
        path = transport._inbox_path('../evil/name')
        assert os.path.dirname(path) == transport.inbox_dir

    def test_empty_inbox(self, worker):
        assert worker.read_inbox() == []


class TestShutdownHandshake:

    def test_round_trip_approval(self, lead, worker):
        request = worker.request_shutdown('team-lead')
        assert worker.outstanding_requests == [request['request_id']]

        received = lead.read_inbox()[0]
        assert received['kind'] == 'shutdown_request'
        response = lead.respond_to_shutdown(received, approve=True)
        assert response['request_id'] == request['request_id']
        assert response['recipient'] == 'worker-1'

        reply = worker.read_inbox()[0]
        assert worker.resolve_shutdown_response(reply) is True
        assert worker.outstanding_requests == []

    def test_denial_retires_request(self, lead, worker):
        worker.request_shutdown('team-lead')
        lead.respond_to_shutdown(lead.read_inbox()[0], approve=False)
        assert worker.resolve_shutdown_response(worker.read_inbox()[0]) is False
        assert worker.outstanding_requests == []

    def test_mismatched_request_id_is_not_approval(self, lead, worker):
        request = worker.request_shutdown('team-lead')
        forged = dict(lead.read_inbox()[0], request_id='shutdown-somethingelse')
        lead.respond_to_shutdown(forged, approve=True)

        with pytest.raises(HandshakeMismatch) as excinfo:
            worker.resolve_shutdown_response(worker.read_inbox()[0])
        assert excinfo.value.request_id == 'shutdown-somethingelse'
        assert worker.outstanding_requests == [request['request_id']]

    def test_response_from_wrong_participant(self, temp_dir, lead, worker):
        request = worker.request_shutdown('team-lead')
        intruder = MessageBus(temp_dir, 'worker-2')
        intruder.respond_to_shutdown(
            {'kind': 'shutdown_request', 'request_id': request['request_id'], 'sender': 'worker-1'},
            approve=True,
        )

        with pytest.raises(HandshakeMismatch):
            worker.resolve_shutdown_response(worker.read_inbox()[0])
        assert worker.outstanding_requests == [request['request_id']]

    def test_response_without_sender_is_mismatch(self, worker):
        request = worker.request_shutdown('team-lead')
        anonymous = {
            'kind': 'shutdown_response',
            'recipient': 'worker-1',
            'request_id': request['request_id'],
            'approve': True,
        }

        with pytest.raises(HandshakeMismatch):
            worker.resolve_shutdown_response(anonymous)
        assert worker.outstanding_requests == [request['request_id']]

    def test_resolved_request_cannot_be_resolved_twice(self, lead, worker):
        worker.request_shutdown('team-lead')
        lead.respond_to_shutdown(lead.read_inbox()[0], approve=True)
        reply = worker.read_inbox()[0]

        assert worker.resolve_shutdown_response(reply) is True
        with pytest.raises(HandshakeMismatch):
            worker.resolve_shutdown_response(reply)

    def test_respond_requires_a_shutdown_request(self, lead):
        with pytest.raises(MessageValidationError):
            lead.respond_to_shutdown({'kind': 'message', 'sender': 'worker-1'}, approve=True)
        with pytest.raises(MessageValidationError):
            lead.respond_to_shutdown({'kind': 'shutdown_request', 'request_id': 'r1'}, approve=True)

    def test_resolve_requires_a_shutdown_response(self, worker):
        with pytest.raises(MessageValidationError):
            worker.resolve_shutdown_response({'kind': 'message', 'recipient': 'worker-1'})

    def test_request_id_echoed_verbatim_on_disk(self, lead, worker):
        request = worker.request_shutdown('team-lead')
        lead.respond_to_shutdown(lead.read_inbox()[0], approve=True)

        raw = worker.transport.peek('worker-1')[0]
        assert raw['request_id'] == request['request_id']
        assert json.loads(json.dumps(raw))['approve'] is True
