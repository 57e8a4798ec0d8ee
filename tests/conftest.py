from datetime import datetime, timedelta, timezone

import pytest

from action_ledger.crypto import create_key_pair
from action_ledger.models import Event
from action_ledger.store import HashChainStore

BASE_TIME = datetime(2026, 1, 13, 9, 0, 0, tzinfo=timezone.utc)


def make_draft(app_id="billing", session_id="s1", *, minutes=0, **fields):
    fields.setdefault("actor", "agent")
    fields.setdefault("input", {"prompt": f"step {minutes}"})
    return Event.draft(
        app_id=app_id,
        session_id=session_id,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        **fields,
    )


@pytest.fixture
def signer():
    return create_key_pair("ledger_test_key")


@pytest.fixture
def store(tmp_path, signer):
    return HashChainStore(str(tmp_path / "ledger.db"), signer=signer)
