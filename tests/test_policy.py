"""
Test suite for policy.py.

All functions here are pure, so tests build state dicts directly.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from teamcoord.policy import (
    claim_block_reason,
    find_stale_agents,
    may_claim,
    review_shutdown_request,
    should_self_terminate,
    summarize_tasks,
    unresolved_dependencies,
)
from teamcoord.schemas import empty_state


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _task(task_id, status='pending', owner=None, blocked_by=None):
    return {
        'task_id': task_id,
        'status': status,
        'owner': owner,
        'blocked_by': blocked_by or [],
        'description': f"task {task_id}",
    }


def _state(*tasks):
    state = empty_state()
    state['tasks'] = list(tasks)
    return state


class TestShouldSelfTerminate:

    @pytest.mark.parametrize('summary,expected', [
        ({'pending': 0, 'in_progress': 0, 'completed': 3, 'failed': 0}, True),
        ({'pending': 0, 'in_progress': 0, 'completed': 2, 'failed': 1}, True),
        ({'pending': 1, 'in_progress': 0, 'completed': 2, 'failed': 0}, False),
        ({'pending': 0, 'in_progress': 1, 'completed': 2, 'failed': 0}, False),
        ({}, True),
    ])
    def test_summaries(self, summary, expected):
        assert should_self_terminate(summary) is expected

    def test_blocked_pending_work_keeps_worker_alive(self):
        state = _state(
            _task('1', status='failed'),
            _task('2', blocked_by=['1']),
        )
        assert should_self_terminate(summarize_tasks(state)) is False


class TestClaimGate:

    def test_unresolved_dependencies(self):
        status_by_id = {'1': 'completed', '2': 'in_progress'}
        task = _task('3', blocked_by=['1', '2', '9'])
        assert unresolved_dependencies(task, status_by_id) == ['2', '9']

    def test_reason_order(self):
        status_by_id = {'1': 'pending'}
        assert 'only pending' in claim_block_reason(_task('2', status='completed'), status_by_id, 'w')
        assert 'blocked' in claim_block_reason(_task('2', blocked_by=['1'], owner='x'), status_by_id, 'w')
        assert 'assigned to x' in claim_block_reason(_task('2', owner='x'), status_by_id, 'w')
        assert claim_block_reason(_task('2', owner='w'), status_by_id, 'w') is None

    def test_may_claim(self):
        state = _state(
            _task('1', status='completed'),
            _task('2', blocked_by=['1']),
            _task('3', blocked_by=['2']),
            _task('4', owner='other'),
        )
        assert may_claim(state, '2', 'w') is True
        assert may_claim(state, '3', 'w') is False
        assert may_claim(state, '4', 'w') is False
        assert may_claim(state, '4', 'other') is True
        assert may_claim(state, 'missing', 'w') is False


class TestShutdownReview:

    def test_approves_drained_board(self):
        state = _state(_task('1', status='completed'), _task('2', status='failed'))
        assert review_shutdown_request(state) is True

    def test_denies_when_new_work_appeared(self):
        state = _state(_task('1', status='completed'))
        assert review_shutdown_request(state) is True
        state['tasks'].append(_task('2'))
        assert review_shutdown_request(state) is False

    def test_empty_board_approves(self):
        assert review_shutdown_request(empty_state()) is True


class TestStaleAgents:

    def test_find_stale_agents_returns_ids(self):
        state = empty_state()
        state['agents'] = [
            {'agent_id': 'new', 'status': 'running',
             'started_at': (NOW - timedelta(seconds=30)).isoformat()},
            {'agent_id': 'old', 'status': 'running',
             'started_at': (NOW - timedelta(minutes=10)).isoformat()},
            {'agent_id': 'done', 'status': 'completed',
             'started_at': (NOW - timedelta(hours=2)).isoformat()},
        ]
        assert find_stale_agents(state, threshold_ms=60_000, now=NOW) == ['old']
