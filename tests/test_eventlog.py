"""SQLite journal: projections and replay after restart."""
import pytest

from services.api.eventlog import EventLog
from services.crypto_core.errors import DoubleSpendError
from services.crypto_core.merkle import MerkleTree
from services.crypto_core.nullifiers import NullifierSet
from services.crypto_core.zk_proof import ZKProofService

OPTS = {"nonce": "ab" * 32, "secret": "cd" * 32}


@pytest.fixture
def ev(tmp_path):
    return EventLog(tmp_path / "events.db")


class TestEventLog:
    def test_issue_projects_nullifier_and_leaf(self, ev):
        zk = ZKProofService(journal=ev)
        proof = zk.generate_zk_proof("tx-1", 1, 1, OPTS)
        assert ev.nullifier_entries() == [(proof["nullifier"], proof["commitment"])]
        assert ev.leaf_commitments() == [proof["commitment"]]
        assert ev.metrics_all()[0][1] == 1

    def test_restart_restores_double_spend_protection(self, tmp_path):
        path = tmp_path / "events.db"
        zk = ZKProofService(journal=EventLog(path))
        zk.generate_zk_proof("tx-1", 1, 1, OPTS)
        zk.generate_zk_proof("tx-2", 2, 2)
        root = zk.merkle_root

        ev = EventLog(path)
        assert ev.replay() == 2
        restored = ZKProofService(
            nullifiers=NullifierSet(ev.nullifier_entries()),
            tree=MerkleTree(ev.leaf_commitments()),
            journal=ev,
        )
        assert restored.merkle_root == root
        with pytest.raises(DoubleSpendError):
            restored.generate_zk_proof("tx-1", 1, 1, OPTS)

    def test_payment_events(self, ev):
        ev.append_event("PaymentVerified", signature="sig-1", payment_id="pay_1")
        ev.append_event("PaymentRefunded", payment_id="pay_1")
        ev.append_event("PaymentExpired", payment_id="pay_2")
        assert ev.claimed_signatures() == {"sig-1": "pay_1"}
        rows = ev.metrics_all()
        totals = tuple(sum(r[i] for r in rows) for i in (1, 2, 3))
        assert totals == (0, 1, 1)

    def test_duplicate_event_id_ignored(self, ev):
        ev.append_event("PaymentVerified", event_id="e1", signature="s", payment_id="p")
        ev.append_event("PaymentVerified", event_id="e1", signature="s", payment_id="p")
        assert sum(r[2] for r in ev.metrics_all()) == 1

    def test_unknown_kind(self, ev):
        with pytest.raises(ValueError):
            ev.append_event("Bogus")
