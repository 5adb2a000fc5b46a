import hashlib

import pytest

from charge_agent.core.exceptions import MissingConfiguration
from charge_agent.infrastructure.identity.machine_id import resolve_machine_uid


def test_override_wins(tmp_path):
    assert resolve_machine_uid("  unit-42 ", paths=[tmp_path / "none"]) == "unit-42"


def test_machine_id_is_hashed(tmp_path):
    missing = tmp_path / "missing"
    machine_id = tmp_path / "machine-id"
    machine_id.write_text("abc123\n", encoding="utf-8")

    uid = resolve_machine_uid(None, paths=[missing, machine_id])

    assert uid == hashlib.sha256(b"abc123").hexdigest()


def test_missing_identity_is_fatal(tmp_path):
    empty = tmp_path / "machine-id"
    empty.write_text("", encoding="utf-8")

    with pytest.raises(MissingConfiguration):
        resolve_machine_uid(None, paths=[empty, tmp_path / "absent"])
