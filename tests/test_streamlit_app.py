from __future__ import annotations

from next_track.storage import JsonStateStore

import streamlit_app


def test_cache_key_follows_journal_writes(state_path):
    assert streamlit_app._state_mtimes(state_path) == (0.0, 0.0)

    store = JsonStateStore(state_path)
    store.set("tracking_sessions", [])
    store.flush()
    snapshot_only = streamlit_app._state_mtimes(state_path)
    assert snapshot_only[0] > 0.0
    assert snapshot_only[1] == 0.0

    # a write that has not been flushed yet only touches the journal
    store.set("was_tracking_before_termination", True)
    with_journal = streamlit_app._state_mtimes(state_path)
    assert with_journal[0] == snapshot_only[0]
    assert with_journal[1] > 0.0
