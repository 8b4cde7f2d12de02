"""
Test suite for state_store.py.

Tests cover:
- Missing / corrupt / schema-invalid documents reading as empty state
- Default filling for partial documents
- Atomic replacement (no temp files, no lock files left behind)
- Preservation of unknown fields across writes
- Revision stamping and the opt-in revision guard
- Explicit reset
"""

import glob
import json
import os
import shutil
import sys
import tempfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from teamcoord.errors import StaleRevision
from teamcoord.schemas import empty_state
from teamcoord.state_store import STATE_FILE_NAME, StateStore, get_state_path


REQUIRED_KEYS = {'agents', 'tasks', 'totals', 'last_updated', 'revision', 'task_sequence'}


class TestStateStore:
    """Test suite for StateStore."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary working directory."""
        temp_dir = tempfile.mkdtemp(prefix="test_state_store_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def store(self, temp_dir):
        return StateStore(temp_dir)

    def _write_raw(self, store: StateStore, content: str) -> None:
        os.makedirs(store.state_dir, exist_ok=True)
        with open(store.path, 'w', encoding='utf-8') as f:
            f.write(content)

    def test_state_path_layout(self, temp_dir, store):
        assert store.path == get_state_path(temp_dir)
        assert store.path.endswith(STATE_FILE_NAME)
        assert store.path.startswith(os.path.abspath(temp_dir))

    def test_missing_file_reads_as_empty_state(self, store):
        assert not store.exists()
        state = store.read()
        assert REQUIRED_KEYS <= set(state)
        assert state['agents'] == []
        assert state['tasks'] == []
        assert state['totals'] == {'spawned': 0, 'completed': 0, 'failed': 0}

    def test_invalid_json_reads_as_empty_state(self, store):
        self._write_raw(store, '{"agents": [ this is not json')
        assert store.read() == empty_state()

    def test_read_does_not_modify_corrupt_file(self, store):
        self._write_raw(store, 'garbage')
        store.read()
        with open(store.path, encoding='utf-8') as f:
            assert f.read() == 'garbage'

    def test_non_object_document_reads_as_empty_state(self, store):
        self._write_raw(store, '[1, 2, 3]')
        assert store.read() == empty_state()

    def test_schema_invalid_document_reads_as_empty_state(self, store):
        self._write_raw(store, json.dumps({'agents': 'not-a-list'}))
        assert store.read() == empty_state()

    def test_agent_with_unknown_status_is_corrupt(self, store):
        self._write_raw(store, json.dumps({
            'agents': [{'agent_id': 'a', 'started_at': '2026-01-01T00:00:00+00:00', 'status': 'zombie'}]
        }))
        assert store.read()['agents'] == []

    def test_partial_document_gets_defaults(self, store):
        self._write_raw(store, json.dumps({'agents': [
            {'agent_id': 'a1', 'started_at': '2026-01-01T00:00:00+00:00'}
        ]}))
        state = store.read()
        assert REQUIRED_KEYS <= set(state)
        agent = state['agents'][0]
        assert agent['status'] == 'running'
        assert agent['tool_usage'] == []
        assert agent['parent_mode'] == 'none'

    def test_update_persists_and_stamps(self, store):
        def add_task(state):
            state['tasks'].append({'task_id': '1', 'description': 'x'})
            return state

        written = store.update(add_task)
        assert written['revision'] == 1
        assert written['last_updated'] is not None

        reread = store.read()
        assert reread['tasks'][0]['task_id'] == '1'
        assert reread['revision'] == 1

        store.update(lambda s: s)
        assert store.read()['revision'] == 2

    def test_update_leaves_no_temp_or_lock_files(self, store):
        store.update(lambda s: s)
        store.update(lambda s: s)
        assert sorted(os.listdir(store.state_dir)) == [STATE_FILE_NAME]

    def test_unknown_fields_survive_update(self, store):
        self._write_raw(store, json.dumps({
            'agents': [{
                'agent_id': 'a1',
                'started_at': '2026-01-01T00:00:00+00:00',
                'model_hint': 'fast',
            }],
            'tasks': [],
            'future_section': {'nested': [1, 2]},
        }))

        def noop(state):
            return state

        store.update(noop)
        with open(store.path, encoding='utf-8') as f:
            on_disk = json.load(f)
        assert on_disk['future_section'] == {'nested': [1, 2]}
        assert on_disk['agents'][0]['model_hint'] == 'fast'

    def test_update_over_corrupt_file_backs_it_up(self, store):
        self._write_raw(store, 'not json at all')
        store.update(lambda s: s)

        backups = glob.glob(f"{store.path}.corrupt.*")
        assert len(backups) == 1
        with open(backups[0], encoding='utf-8') as f:
            assert f.read() == 'not json at all'
        assert store.read()['revision'] == 1

    def test_repeated_corruption_keeps_every_backup(self, store):
        self._write_raw(store, 'first corruption')
        store.update(lambda s: s)
        self._write_raw(store, 'second corruption')
        store.update(lambda s: s)

        backups = sorted(glob.glob(f"{store.path}.corrupt.*"))
        assert len(backups) == 2
        contents = set()
        for backup in backups:
            with open(backup, encoding='utf-8') as f:
                contents.add(f.read())
        assert contents == {'first corruption', 'second corruption'}

    def test_updater_exception_leaves_document_unchanged(self, store):
        store.update(lambda s: s)
        with open(store.path, 'rb') as f:
            before = f.read()

        def boom(state):
            state['tasks'].append({'task_id': '9'})
            raise RuntimeError("updater failed")

        with pytest.raises(RuntimeError):
            store.update(boom)

        with open(store.path, 'rb') as f:
            assert f.read() == before

    def test_updater_must_return_state(self, store):
        with pytest.raises(TypeError):
            store.update(lambda s: None)

    def test_revision_guard(self, store):
        store.update(lambda s: s)
        revision = store.read()['revision']

        store.update(lambda s: s, expected_revision=revision)

        with pytest.raises(StaleRevision) as excinfo:
            store.update(lambda s: s, expected_revision=revision)
        assert excinfo.value.expected == revision
        assert excinfo.value.actual == revision + 1
        assert store.read()['revision'] == revision + 1

    def test_write_replaces_whole_document(self, store):
        state = empty_state()
        state['tasks'] = [{'task_id': '1', 'description': 'first'}]
        written = store.write(state)
        assert written['revision'] == 1
        assert store.read()['tasks'][0]['description'] == 'first'

    def test_clear_resets_records_but_not_revision(self, store):
        def add_agent(state):
            state['agents'].append({'agent_id': 'a1', 'started_at': '2026-01-01T00:00:00+00:00'})
            return state

        store.update(add_agent)
        store.update(add_agent)
        cleared = store.clear()

        assert cleared['agents'] == []
        assert cleared['revision'] == 3
        assert store.read()['agents'] == []
